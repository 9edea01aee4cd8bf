"""
hotspots.py: hotspot read routes and the live change stream.

Routes:
  GET  /api/v1/hotspots/near     hotspots within a radius, nearest first
  GET  /api/v1/hotspots/top      loudest hotspots (optionally only >= min_db)
  GET  /api/v1/hotspots/{id}     single hotspot
  WS   /api/v1/hotspots/stream   report_created / hotspot_updated frames

Hotspots are written only by the aggregator during report ingestion, so
this router has no POST/PUT/DELETE.

STREAM FRAMES
─────────────
  {
    "type":      "hotspot_updated",
    "payload":   {"hotspot_id": "...", "average_decibels": 87.75,
                  "report_count": 2, "lat": 28.6139, "lng": 77.209,
                  "created": false},
    "timestamp": "2026-02-21T18:00:00+00:00"
  }

    wscat -c ws://localhost:8000/api/v1/hotspots/stream
"""

import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from noisemap.core.config import settings
from noisemap.core.engine import get_events, get_queries
from noisemap.models.hotspot import GeoPoint, HotspotOut
from noisemap.services.noise_levels import assess_hotspot
from noisemap.services.query import QueryFacade

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/hotspots", tags=["hotspots"])

Queries = Annotated[QueryFacade, Depends(get_queries)]


@router.get("/near", response_model=list[HotspotOut])
async def hotspots_near(
    queries: Queries,
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius_km: float = Query(default=settings.default_search_radius_km, gt=0, le=500),
):
    ranked = await queries.hotspots_near_ranked(GeoPoint(lat=lat, lng=lng), radius_km)
    return [assess_hotspot(h, distance_km=round(d, 4)) for d, h in ranked]


@router.get("/top", response_model=list[HotspotOut])
async def top_hotspots(
    queries: Queries,
    limit: int = Query(default=settings.top_hotspots_limit, ge=1, le=500),
    min_db: Optional[float] = Query(default=None, ge=0, le=120, description="Only hotspots at or above this level"),
):
    """Loudest first; ties broken by report count, then id."""
    if min_db is not None:
        hotspots = await queries.high_noise_hotspots(threshold_db=min_db, limit=limit)
    else:
        hotspots = await queries.top_hotspots(limit)
    return [assess_hotspot(h) for h in hotspots]


@router.get("/{hotspot_id}", response_model=HotspotOut)
async def get_hotspot(hotspot_id: str, queries: Queries):
    return assess_hotspot(await queries.get_hotspot(hotspot_id))


@router.websocket("/stream")
async def hotspot_stream(websocket: WebSocket):
    """Forward every change event to the client as a JSON text frame."""
    events = get_events()
    async with events.subscribe() as queue:
        await websocket.accept()
        logger.info("Change-stream client connected (%d subscribers)", events.subscriber_count)
        try:
            while True:
                event = await queue.get()
                await websocket.send_text(event.model_dump_json())
        except WebSocketDisconnect:
            # Client closed the app or navigated away; this is normal
            logger.info("Change-stream client disconnected")
        except Exception as exc:
            logger.warning("Change-stream WebSocket error: %s", exc)
