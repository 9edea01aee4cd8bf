"""
query.py: read-only views over reports and hotspots.

Every radius filter goes through services/geo.within_radius (via the
stores' rank_within), the same predicate the aggregator clusters with, so
a report is always found near the hotspot that absorbed it.

The *_ranked variants also return the great-circle distance for each item;
the routes use them to fill `distance_km`.
"""

from typing import Optional

from noisemap.core.config import settings
from noisemap.core.errors import NotFoundError, ValidationError
from noisemap.models.hotspot import GeoPoint, Hotspot
from noisemap.models.report import Report
from noisemap.services.hotspot_store import HotspotStore, NearbyHotspot
from noisemap.services.report_store import NearbyReport, ReportFilters, ReportStore


def _check_radius(radius_km: float) -> None:
    if not radius_km > 0:
        raise ValidationError("radius_km must be greater than 0")


def _check_limit(limit: int) -> None:
    if limit < 1:
        raise ValidationError("limit must be at least 1")


class QueryFacade:
    def __init__(self, reports: ReportStore, hotspots: HotspotStore):
        self.reports = reports
        self.hotspots = hotspots

    # ── Radius queries ────────────────────────────────────────────────────────

    async def reports_near_ranked(
        self, point: GeoPoint, radius_km: float, filters: ReportFilters = ReportFilters()
    ) -> list[NearbyReport]:
        _check_radius(radius_km)
        if (
            filters.min_decibels is not None
            and filters.max_decibels is not None
            and filters.min_decibels > filters.max_decibels
        ):
            raise ValidationError("min_decibels must not exceed max_decibels")
        return await self.reports.find_within(point, radius_km, filters)

    async def reports_near(
        self, point: GeoPoint, radius_km: float, filters: ReportFilters = ReportFilters()
    ) -> list[Report]:
        """Reports within radius_km (inclusive), nearest first, ties by id."""
        return [r for _, r in await self.reports_near_ranked(point, radius_km, filters)]

    async def hotspots_near_ranked(self, point: GeoPoint, radius_km: float) -> list[NearbyHotspot]:
        _check_radius(radius_km)
        return await self.hotspots.find_within(point, radius_km)

    async def hotspots_near(self, point: GeoPoint, radius_km: float) -> list[Hotspot]:
        return [h for _, h in await self.hotspots_near_ranked(point, radius_km)]

    # ── Rankings ──────────────────────────────────────────────────────────────

    async def top_hotspots(self, limit: int) -> list[Hotspot]:
        """Loudest first; ties by report count, then id."""
        _check_limit(limit)
        return await self.hotspots.list_by_severity_desc(limit)

    async def high_noise_hotspots(
        self, threshold_db: Optional[float] = None, limit: Optional[int] = None
    ) -> list[Hotspot]:
        threshold = threshold_db if threshold_db is not None else settings.high_noise_threshold_db
        cap = limit if limit is not None else settings.top_hotspots_limit
        _check_limit(cap)
        # Severity order means everything at or above the threshold is a prefix.
        ranked = await self.hotspots.list_by_severity_desc(cap)
        return [h for h in ranked if h.average_decibels >= threshold]

    # ── Lookups ───────────────────────────────────────────────────────────────

    async def get_hotspot(self, hotspot_id: str) -> Hotspot:
        hotspot = await self.hotspots.get_by_id(hotspot_id)
        if hotspot is None:
            raise NotFoundError(f"Hotspot {hotspot_id} not found")
        return hotspot

    async def get_report(self, report_id: str) -> Report:
        report = await self.reports.get(report_id)
        if report is None:
            raise NotFoundError(f"Report {report_id} not found")
        return report

    async def list_reports(
        self,
        *,
        noise_type: Optional[str] = None,
        status: Optional[str] = None,
        reporter_id: Optional[str] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> tuple[list[Report], int]:
        _check_limit(limit)
        if offset < 0:
            raise ValidationError("offset must not be negative")
        return await self.reports.list_recent(
            noise_type=noise_type, status=status, reporter_id=reporter_id, limit=limit, offset=offset
        )

    async def reporter_summary(self, reporter_id: str) -> tuple[int, Optional[float]]:
        """(report count, mean decibels) for the profile screen."""
        if not reporter_id:
            raise ValidationError("reporter_id is required")
        return await self.reports.summary(reporter_id)
