#!/usr/bin/env python3
"""
seed_db.py: populate MongoDB with sample noise reports for local development.

Reports go through the real IngestionService, so hotspots are built by
the aggregator exactly as they would be from the mobile app.

Usage:
    python scripts/seed_db.py

Requires:
    pip install -e .
    MongoDB running locally (or set MONGO_URI env var)

Safe to re-run: drops the reports and hotspots collections first.
"""

import asyncio
import logging

from motor.motor_asyncio import AsyncIOMotorClient

from noisemap.core.config import settings
from noisemap.services.aggregator import Aggregator
from noisemap.services.hotspot_store import MongoHotspotStore
from noisemap.services.ingestion import IngestionService
from noisemap.services.report_store import MongoReportStore

logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s")

# Delhi NCR readings; the first two land in one hotspot
SAMPLE_REPORTS = [
    {
        "reporter_id": "test-user",
        "latitude": 28.6139,
        "longitude": 77.2090,
        "decibels": 85.5,
        "noise_type": "traffic",
        "description": "Heavy traffic noise near Connaught Place",
    },
    {
        "reporter_id": "admin-user",
        "latitude": 28.6140,
        "longitude": 77.2091,
        "decibels": 90.0,
        "noise_type": "traffic",
        "description": "Horns at the Connaught Place outer circle",
    },
    {
        "reporter_id": "test-user",
        "latitude": 28.7041,
        "longitude": 77.1025,
        "decibels": 92.3,
        "noise_type": "construction",
        "description": "Construction work at India Gate area",
    },
    {
        "reporter_id": "admin-user",
        "latitude": 28.5355,
        "longitude": 77.3910,
        "decibels": 78.9,
        "noise_type": "industrial",
        "description": "Industrial area noise in Noida",
    },
    {
        "is_anonymous": True,
        "latitude": 28.5562,
        "longitude": 77.1000,
        "decibels": 58.0,
        "noise_type": "other",
        "description": "Aircraft on approach, intermittent",
    },
]


async def seed() -> None:
    print("Connecting to MongoDB...")
    client = AsyncIOMotorClient(settings.mongo_uri, tz_aware=True)
    db = client[settings.mongo_db_name]

    try:
        await client.admin.command("ping")
        print("Connected.")

        # ─── Clean up previous data ───────────────────────────────────────────
        await db.drop_collection("reports")
        await db.drop_collection("hotspots")
        print("Dropped reports and hotspots.")

        # ─── Ensure indexes exist ─────────────────────────────────────────────
        hotspots = MongoHotspotStore(db)
        reports = MongoReportStore(db)
        await hotspots.ensure_indexes()
        await reports.ensure_indexes()
        print("Indexes ensured.")

        # ─── Ingest sample reports ────────────────────────────────────────────
        ingestion = IngestionService(reports, Aggregator(hotspots))
        for payload in SAMPLE_REPORTS:
            result = await ingestion.submit(payload)
            print(
                f"  {payload['noise_type']:<13} {payload['decibels']:>5.1f} dB → hotspot "
                f"{result.hotspot.id} ({result.hotspot.report_count} reports)"
            )

        print("\nSeed complete! Hotspots by severity:")
        for h in await hotspots.list_by_severity_desc(10):
            print(f"  {h.average_decibels:6.2f} dB  n={h.report_count}  ({h.centroid.lat}, {h.centroid.lng})")

    finally:
        client.close()


if __name__ == "__main__":
    asyncio.run(seed())
