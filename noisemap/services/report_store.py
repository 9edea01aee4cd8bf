"""
report_store.py: append-only storage for noise reports.

Reports are written once by the ingestion service in two steps:

  1. insert()         stored with ingested=False (invisible to every read)
  2. mark_ingested()  after the aggregator absorbed it, records hotspot_id

If aggregation fails the pending row is discarded. A report that never
completed step 2 is never returned by get / list / radius queries, so an
ingested-but-unaggregated report cannot be observed.

The only later mutation is the external moderation workflow changing
`status`; the aggregator never touches reports.
"""

from __future__ import annotations

import logging
import math
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId

from noisemap.core.database import mongo_errors
from noisemap.core.errors import NotFoundError
from noisemap.models.hotspot import GeoPoint
from noisemap.models.report import Report
from noisemap.services.geo import bounding_box, rank_within

logger = logging.getLogger(__name__)

NearbyReport = tuple[float, Report]


@dataclass(frozen=True)
class ReportFilters:
    """Optional narrowing for radius queries; bounds are inclusive."""

    noise_types: Optional[frozenset[str]] = None
    min_decibels: Optional[float] = None
    max_decibels: Optional[float] = None
    status: Optional[str] = None

    def matches(self, report: Report) -> bool:
        if self.noise_types and report.noise_type not in self.noise_types:
            return False
        if self.min_decibels is not None and report.decibels < self.min_decibels:
            return False
        if self.max_decibels is not None and report.decibels > self.max_decibels:
            return False
        if self.status is not None and report.status != self.status:
            return False
        return True

    def to_query(self) -> dict:
        query: dict = {}
        if self.noise_types:
            query["noise_type"] = {"$in": sorted(self.noise_types)}
        bounds: dict = {}
        if self.min_decibels is not None:
            bounds["$gte"] = self.min_decibels
        if self.max_decibels is not None:
            bounds["$lte"] = self.max_decibels
        if bounds:
            query["decibels"] = bounds
        if self.status is not None:
            query["status"] = self.status
        return query


class ReportStore(ABC):
    """Append-only report collection with radius lookup."""

    @abstractmethod
    async def insert(
        self,
        *,
        reporter_id: Optional[str],
        is_anonymous: bool,
        position: GeoPoint,
        decibels: float,
        noise_type: str,
        description: Optional[str] = None,
        media_refs: Optional[list[str]] = None,
    ) -> Report:
        """Persist a pending report (status=pending, not yet ingested)."""

    @abstractmethod
    async def mark_ingested(self, report_id: str, hotspot_id: str) -> Report: ...

    @abstractmethod
    async def discard(self, report_id: str) -> None:
        """Remove a report that never finished ingestion."""

    @abstractmethod
    async def get(self, report_id: str) -> Optional[Report]: ...

    @abstractmethod
    async def find_within(
        self, point: GeoPoint, radius_km: float, filters: ReportFilters = ReportFilters()
    ) -> list[NearbyReport]: ...

    @abstractmethod
    async def list_recent(
        self,
        *,
        noise_type: Optional[str] = None,
        status: Optional[str] = None,
        reporter_id: Optional[str] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> tuple[list[Report], int]:
        """Newest first; returns (page, total matching)."""

    @abstractmethod
    async def update_status(self, report_id: str, status: str) -> Report: ...

    @abstractmethod
    async def summary(self, reporter_id: str) -> tuple[int, Optional[float]]:
        """(report count, mean decibels) for one reporter."""


def _mean(values: list[float]) -> Optional[float]:
    return math.fsum(values) / len(values) if values else None


# ── In-memory ─────────────────────────────────────────────────────────────────

class InMemoryReportStore(ReportStore):
    def __init__(self):
        self._reports: dict[str, Report] = {}
        self._ingested: set[str] = set()
        self._mutex = threading.Lock()

    def _visible(self) -> list[Report]:
        return [r for rid, r in self._reports.items() if rid in self._ingested]

    async def insert(self, *, reporter_id, is_anonymous, position, decibels, noise_type,
                     description=None, media_refs=None) -> Report:
        report = Report(
            id=str(ObjectId()),
            reporter_id=reporter_id,
            is_anonymous=is_anonymous,
            position=position,
            decibels=decibels,
            noise_type=noise_type,
            description=description,
            media_refs=list(media_refs or []),
            created_at=datetime.now(tz=timezone.utc),
        )
        with self._mutex:
            self._reports[report.id] = report
        return report

    async def mark_ingested(self, report_id: str, hotspot_id: str) -> Report:
        with self._mutex:
            report = self._reports.get(report_id)
            if report is None:
                raise NotFoundError(f"Report {report_id} not found")
            report = report.model_copy(update={"hotspot_id": hotspot_id})
            self._reports[report_id] = report
            self._ingested.add(report_id)
            return report

    async def discard(self, report_id: str) -> None:
        with self._mutex:
            if report_id not in self._ingested:
                self._reports.pop(report_id, None)

    async def get(self, report_id: str) -> Optional[Report]:
        with self._mutex:
            return self._reports.get(report_id) if report_id in self._ingested else None

    async def find_within(self, point, radius_km, filters=ReportFilters()) -> list[NearbyReport]:
        boxes = bounding_box(point, radius_km)
        with self._mutex:
            candidates = [
                r for r in self._visible()
                if filters.matches(r) and any(b.contains(r.position) for b in boxes)
            ]
        return rank_within(point, radius_km, candidates, lambda r: r.position)

    async def list_recent(self, *, noise_type=None, status=None, reporter_id=None, limit=10, offset=0):
        with self._mutex:
            matching = [
                r for r in self._visible()
                if (noise_type is None or r.noise_type == noise_type)
                and (status is None or r.status == status)
                and (reporter_id is None or r.reporter_id == reporter_id)
            ]
        matching.sort(key=lambda r: (r.created_at, r.id), reverse=True)
        return matching[offset: offset + limit], len(matching)

    async def update_status(self, report_id: str, status: str) -> Report:
        with self._mutex:
            report = self._reports.get(report_id)
            if report is None or report_id not in self._ingested:
                raise NotFoundError(f"Report {report_id} not found")
            report = report.model_copy(update={"status": status})
            self._reports[report_id] = report
            return report

    async def summary(self, reporter_id: str) -> tuple[int, Optional[float]]:
        with self._mutex:
            values = [r.decibels for r in self._visible() if r.reporter_id == reporter_id]
        return len(values), _mean(values)


# ── MongoDB ───────────────────────────────────────────────────────────────────

def _doc_to_report(doc: dict) -> Report:
    return Report(
        id=str(doc["_id"]),
        reporter_id=doc.get("reporter_id"),
        is_anonymous=doc.get("is_anonymous", False),
        position=GeoPoint(**doc["position"]),
        decibels=doc["decibels"],
        noise_type=doc["noise_type"],
        description=doc.get("description"),
        media_refs=doc.get("media_refs", []),
        created_at=doc["created_at"],
        status=doc.get("status", "pending"),
        hotspot_id=doc.get("hotspot_id"),
    )


def _to_oid(report_id: str) -> Optional[ObjectId]:
    try:
        return ObjectId(report_id)
    except (InvalidId, TypeError):
        return None


class MongoReportStore(ReportStore):
    def __init__(self, db, collection: str = "reports"):
        self._col = db[collection]

    async def ensure_indexes(self) -> None:
        with mongo_errors("report index creation"):
            await self._col.create_index([("position.lat", 1), ("position.lng", 1)])
            await self._col.create_index([("created_at", -1)])
            await self._col.create_index([("noise_type", 1)])
            await self._col.create_index([("reporter_id", 1)])
            await self._col.create_index([("status", 1)])

    async def insert(self, *, reporter_id, is_anonymous, position, decibels, noise_type,
                     description=None, media_refs=None) -> Report:
        doc = {
            "reporter_id": reporter_id,
            "is_anonymous": is_anonymous,
            "position": {"lat": position.lat, "lng": position.lng},
            "decibels": decibels,
            "noise_type": noise_type,
            "description": description,
            "media_refs": list(media_refs or []),
            "created_at": datetime.now(tz=timezone.utc),
            "status": "pending",
            "hotspot_id": None,
            "ingested": False,
        }
        with mongo_errors("report insert"):
            result = await self._col.insert_one(doc)
        doc["_id"] = result.inserted_id
        return _doc_to_report(doc)

    async def mark_ingested(self, report_id: str, hotspot_id: str) -> Report:
        oid = _to_oid(report_id)
        if oid is None:
            raise NotFoundError(f"Report {report_id} not found")
        with mongo_errors("report update"):
            result = await self._col.update_one(
                {"_id": oid}, {"$set": {"hotspot_id": hotspot_id, "ingested": True}}
            )
            if result.matched_count == 0:
                raise NotFoundError(f"Report {report_id} not found")
            doc = await self._col.find_one({"_id": oid})
        return _doc_to_report(doc)

    async def discard(self, report_id: str) -> None:
        oid = _to_oid(report_id)
        if oid is None:
            return
        with mongo_errors("report discard"):
            await self._col.delete_one({"_id": oid, "ingested": False})

    async def get(self, report_id: str) -> Optional[Report]:
        oid = _to_oid(report_id)
        if oid is None:
            return None
        with mongo_errors("report lookup"):
            doc = await self._col.find_one({"_id": oid, "ingested": True})
        return _doc_to_report(doc) if doc else None

    async def find_within(self, point, radius_km, filters=ReportFilters()) -> list[NearbyReport]:
        boxes = [
            {
                "position.lat": {"$gte": b.min_lat, "$lte": b.max_lat},
                "position.lng": {"$gte": b.min_lng, "$lte": b.max_lng},
            }
            for b in bounding_box(point, radius_km)
        ]
        query = {"ingested": True, **filters.to_query(), "$or": boxes}
        with mongo_errors("report radius query"):
            docs = [doc async for doc in self._col.find(query)]
        return rank_within(point, radius_km, [_doc_to_report(d) for d in docs], lambda r: r.position)

    async def list_recent(self, *, noise_type=None, status=None, reporter_id=None, limit=10, offset=0):
        query: dict = {"ingested": True}
        if noise_type is not None:
            query["noise_type"] = noise_type
        if status is not None:
            query["status"] = status
        if reporter_id is not None:
            query["reporter_id"] = reporter_id

        cursor = (
            self._col.find(query)
            .sort([("created_at", -1), ("_id", -1)])
            .skip(offset)
            .limit(limit)
        )
        with mongo_errors("report listing"):
            total = await self._col.count_documents(query)
            docs = [doc async for doc in cursor]

        items = []
        for doc in docs:
            try:
                items.append(_doc_to_report(doc))
            except Exception as exc:
                # Legacy rows that predate the strict schema are skipped, not fatal
                logger.warning("Skipping malformed report doc %s: %s", doc.get("_id"), exc)
        return items, total

    async def update_status(self, report_id: str, status: str) -> Report:
        oid = _to_oid(report_id)
        if oid is None:
            raise NotFoundError(f"Report {report_id} not found")
        with mongo_errors("report status update"):
            result = await self._col.update_one(
                {"_id": oid, "ingested": True}, {"$set": {"status": status}}
            )
            if result.matched_count == 0:
                raise NotFoundError(f"Report {report_id} not found")
            doc = await self._col.find_one({"_id": oid})
        return _doc_to_report(doc)

    async def summary(self, reporter_id: str) -> tuple[int, Optional[float]]:
        with mongo_errors("reporter summary"):
            values = [
                doc["decibels"]
                async for doc in self._col.find(
                    {"reporter_id": reporter_id, "ingested": True}, {"decibels": 1}
                )
            ]
        return len(values), _mean(values)
