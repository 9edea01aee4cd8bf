"""
reports.py: noise report routes.

Routes:
  POST  /api/v1/reports               submit a reading (rate-limited)
  GET   /api/v1/reports               paginated archive, newest first
  GET   /api/v1/reports/near          reports within a radius
  GET   /api/v1/reports/summary       per-reporter totals (profile screen)
  GET   /api/v1/reports/{id}          single report
  PATCH /api/v1/reports/{id}/status   moderation workflow transition

Submission takes an optional Bearer token; when present its subject is the
reporter id. Service errors (NoiseMapError) are turned into
{"detail": "..."} responses by the handler in main.py.

    curl -X POST http://localhost:8000/api/v1/reports \
      -H 'Content-Type: application/json' \
      -d '{"reporter_id": "u1", "latitude": 28.6139, "longitude": 77.2090,
           "decibels": 85.5, "noise_type": "traffic"}'
"""

import logging
import math
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Request, status

from noisemap.core.config import settings
from noisemap.core.engine import get_ingestion, get_queries
from noisemap.core.rate_limit import limiter
from noisemap.core.security import OptionalReporter
from noisemap.models.hotspot import GeoPoint
from noisemap.models.report import (
    IngestionResponse,
    NoiseType,
    ReporterSummary,
    ReportListResponse,
    ReportOut,
    ReportStatus,
    ReportSubmission,
    StatusUpdateRequest,
)
from noisemap.services.ingestion import IngestionService
from noisemap.services.noise_levels import assess_hotspot, assess_report
from noisemap.services.query import QueryFacade
from noisemap.services.report_store import ReportFilters

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/reports", tags=["reports"])

Ingestion = Annotated[IngestionService, Depends(get_ingestion)]
Queries = Annotated[QueryFacade, Depends(get_queries)]


@router.post("", response_model=IngestionResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.submit_rate_limit)
async def submit_report(
    request: Request,  # required by slowapi
    payload: ReportSubmission,
    ingestion: Ingestion,
    token_reporter: OptionalReporter,
):
    """Store a reading and fold it into its hotspot."""
    result = await ingestion.submit(payload, reporter_id=token_reporter)
    return IngestionResponse(
        report=assess_report(result.report),
        hotspot=assess_hotspot(result.hotspot),
        hotspot_created=result.hotspot_created,
    )


@router.get("", response_model=ReportListResponse)
async def list_reports(
    queries: Queries,
    noise_type: Optional[NoiseType] = Query(default=None),
    report_status: Optional[ReportStatus] = Query(default=None, alias="status"),
    reporter_id: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
):
    items, total = await queries.list_reports(
        noise_type=noise_type,
        status=report_status,
        reporter_id=reporter_id,
        limit=limit,
        offset=(page - 1) * limit,
    )
    return ReportListResponse(
        items=[assess_report(r) for r in items],
        total=total,
        page=page,
        limit=limit,
        pages=math.ceil(total / limit) if total else 0,
    )


@router.get("/near", response_model=list[ReportOut])
async def reports_near(
    queries: Queries,
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius_km: float = Query(default=settings.default_search_radius_km, gt=0, le=500),
    noise_type: Optional[list[NoiseType]] = Query(default=None),
    min_db: Optional[float] = Query(default=None, ge=0, le=120),
    max_db: Optional[float] = Query(default=None, ge=0, le=120),
    report_status: Optional[ReportStatus] = Query(default=None, alias="status"),
):
    """
    Reports within radius_km of (lat, lng), nearest first.

    noise_type may be repeated: ?noise_type=traffic&noise_type=construction
    """
    filters = ReportFilters(
        noise_types=frozenset(noise_type) if noise_type else None,
        min_decibels=min_db,
        max_decibels=max_db,
        status=report_status,
    )
    ranked = await queries.reports_near_ranked(GeoPoint(lat=lat, lng=lng), radius_km, filters)
    return [assess_report(r, distance_km=round(d, 4)) for d, r in ranked]


@router.get("/summary", response_model=ReporterSummary)
async def reporter_summary(
    queries: Queries,
    token_reporter: OptionalReporter,
    reporter_id: Optional[str] = Query(default=None),
):
    """Report count and mean level for a reporter (token subject by default)."""
    target = reporter_id or token_reporter or ""
    count, mean = await queries.reporter_summary(target)
    return ReporterSummary(
        reporter_id=target,
        report_count=count,
        average_decibels=round(mean, 2) if mean is not None else None,
    )


@router.get("/{report_id}", response_model=ReportOut)
async def get_report(report_id: str, queries: Queries):
    return assess_report(await queries.get_report(report_id))


@router.patch("/{report_id}/status", response_model=ReportOut)
async def update_status(report_id: str, payload: StatusUpdateRequest, ingestion: Ingestion):
    """Move a report through pending → reviewed → resolved."""
    report = await ingestion.set_status(report_id, payload.status)
    logger.info("Report %s marked %s", report_id, payload.status)
    return assess_report(report)
