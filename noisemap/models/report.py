"""
report.py: Pydantic schemas for noise reports.

ReportSubmission   what the client sends
Report             immutable stored observation
ReportOut          API shape (report + noise level enrichment)
IngestionResponse  response for a successful submission (report + hotspot)
ReportListResponse paginated archive listing
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from noisemap.models.hotspot import GeoPoint, HotspotOut, NoiseLevel


NoiseType = Literal["traffic", "construction", "events", "industrial", "other"]
ReportStatus = Literal["pending", "reviewed", "resolved"]

NOISE_TYPES: tuple[str, ...] = ("traffic", "construction", "events", "industrial", "other")
REPORT_STATUSES: tuple[str, ...] = ("pending", "reviewed", "resolved")


# ── Request ───────────────────────────────────────────────────────────────────

class ReportSubmission(BaseModel):
    """
    Payload for POST /api/v1/reports.

    Numeric fields are strict: "85" is rejected rather than coerced, and
    NaN / infinity never reach the aggregator. The reporter rule (a
    reporter id unless anonymous) is enforced by the ingestion service,
    because the id may also come from the bearer token.
    """
    reporter_id: Optional[str] = Field(default=None, min_length=1, max_length=128)
    latitude: float = Field(..., ge=-90, le=90, strict=True, allow_inf_nan=False)
    longitude: float = Field(..., ge=-180, le=180, strict=True, allow_inf_nan=False)
    decibels: float = Field(..., ge=0, le=120, strict=True, allow_inf_nan=False)
    noise_type: NoiseType
    description: Optional[str] = Field(default=None, max_length=2000)
    media_refs: list[str] = Field(default_factory=list, max_length=10)
    is_anonymous: bool = False


class StatusUpdateRequest(BaseModel):
    """Moderation workflow transition for PATCH /api/v1/reports/{id}/status."""
    status: ReportStatus


# ── Report ────────────────────────────────────────────────────────────────────

class Report(BaseModel):
    """A persisted noise observation. Never mutated by the aggregator."""

    model_config = ConfigDict(frozen=True)

    id: str
    reporter_id: Optional[str] = None
    is_anonymous: bool = False
    position: GeoPoint
    decibels: float
    noise_type: NoiseType
    description: Optional[str] = None
    media_refs: list[str] = Field(default_factory=list)
    created_at: datetime
    status: ReportStatus = "pending"
    hotspot_id: Optional[str] = None   # set once aggregation succeeded


class ReportOut(BaseModel):
    """A report as returned by the API."""
    id: str
    reporter_id: Optional[str] = None
    is_anonymous: bool = False
    position: GeoPoint
    decibels: float
    noise_type: NoiseType
    description: Optional[str] = None
    media_refs: list[str] = Field(default_factory=list)
    created_at: datetime
    status: ReportStatus
    hotspot_id: Optional[str] = None

    noise_level: NoiseLevel
    health_risk: str
    distance_km: Optional[float] = None


# ── Responses ─────────────────────────────────────────────────────────────────

class IngestionResponse(BaseModel):
    """Response body for POST /api/v1/reports."""
    report: ReportOut
    hotspot: HotspotOut
    hotspot_created: bool


class ReportListResponse(BaseModel):
    items: list[ReportOut]
    total: int
    page: int
    limit: int
    pages: int


class ReporterSummary(BaseModel):
    """Per-reporter totals shown on the profile screen."""
    reporter_id: str
    report_count: int
    average_decibels: Optional[float] = None
