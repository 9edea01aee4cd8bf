"""
noise_levels.py: read-time enrichment of hotspots and reports.

The mobile map colours markers by noise level and shows a health-risk line
under each reading. Both are derived from the decibel value alone, so they
are computed on the way out rather than stored:

    from noisemap.services.noise_levels import assess_hotspot

    out = assess_hotspot(hotspot, distance_km=0.42)
    # out.noise_level  → "high"
    # out.health_risk  → "Warning - Can lead to stress and hearing damage"

TESTING
───────
    pytest tests/test_noise_levels.py -v
"""

from __future__ import annotations

from typing import Optional

from noisemap.models.hotspot import Hotspot, HotspotOut, NoiseLevel
from noisemap.models.report import Report, ReportOut

# ── Thresholds (dB) ───────────────────────────────────────────────────────────

LOW_MAX_DB      = 60.0     # below → "low"
MODERATE_MAX_DB = 75.0     # below → "moderate", at or above → "high"

_HEALTH_RISKS = [
    (60.0, "Safe - No immediate health concerns"),
    (75.0, "Caution - May cause annoyance and sleep disturbance"),
    (90.0, "Warning - Can lead to stress and hearing damage"),
]
_DANGER = "Danger - Immediate risk of hearing loss and health issues"


def noise_level(decibels: float) -> NoiseLevel:
    if decibels < LOW_MAX_DB:
        return "low"
    if decibels < MODERATE_MAX_DB:
        return "moderate"
    return "high"


def health_risk(decibels: float) -> str:
    for upper, description in _HEALTH_RISKS:
        if decibels < upper:
            return description
    return _DANGER


def assess_hotspot(hotspot: Hotspot, distance_km: Optional[float] = None) -> HotspotOut:
    """API view of a hotspot snapshot, optionally with its query distance."""
    return HotspotOut(
        id=hotspot.id,
        centroid=hotspot.centroid,
        average_decibels=hotspot.average_decibels,
        report_count=hotspot.report_count,
        created_at=hotspot.created_at,
        updated_at=hotspot.updated_at,
        noise_level=noise_level(hotspot.average_decibels),
        health_risk=health_risk(hotspot.average_decibels),
        distance_km=distance_km,
    )


def assess_report(report: Report, distance_km: Optional[float] = None) -> ReportOut:
    return ReportOut(
        **report.model_dump(),
        noise_level=noise_level(report.decibels),
        health_risk=health_risk(report.decibels),
        distance_km=distance_km,
    )
