"""
hotspot.py: Pydantic models for hotspots and the change stream.

GeoPoint      validated latitude / longitude pair (degrees)
Hotspot       immutable snapshot of a rolling noise aggregate
HotspotOut    API shape: snapshot + noise level / health risk enrichment
ChangeEvent   frame published after every successful ingestion

Hotspot snapshots are frozen. The only way to change a hotspot is through
the store's absorb / merge operations, which the Aggregator drives, so
callers holding a snapshot can never corrupt the running mean.

MongoDB document shape (collection `hotspots`)
──────────────────────────────────────────────
  {
    "_id": ObjectId,
    "centroid": { "lat": 28.6139, "lng": 77.2090 },
    "average_decibels": 87.75,
    "report_count": 2,
    "decibel_sum": 175.5,
    "decibel_compensation": 0.0,
    "version": 2,
    "merged_into": null,
    "created_at": ISODate, "updated_at": ISODate
  }
"""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class GeoPoint(BaseModel):
    """Lat/lng coordinates in decimal degrees."""

    model_config = ConfigDict(frozen=True)

    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class Hotspot(BaseModel):
    """A spatial cluster aggregating one or more reports."""

    model_config = ConfigDict(frozen=True)

    id: str
    centroid: GeoPoint              # position of the founding report
    average_decibels: float
    report_count: int = Field(ge=1)
    created_at: datetime
    updated_at: datetime
    version: int = 1                # bumped on every absorb / merge


NoiseLevel = Literal["low", "moderate", "high"]


class HotspotOut(BaseModel):
    """Hotspot as returned by the API."""

    id: str
    centroid: GeoPoint
    average_decibels: float
    report_count: int
    created_at: datetime
    updated_at: datetime

    noise_level: NoiseLevel
    health_risk: str
    distance_km: Optional[float] = None   # set by radius queries only


class ChangeEvent(BaseModel):
    """Single frame pushed to change-stream subscribers."""

    type: Literal["report_created", "hotspot_updated"]
    payload: dict[str, Any]
    timestamp: str            # ISO-8601
