"""
ingestion.py: validate, persist and aggregate a single noise report.

FLOW
────
  submit(payload, reporter_id)
    1. validate          ReportSubmission (strict numbers, enumerated type)
    2. reporter rule     token id vs payload id, anonymous strips the id
    3. insert            report stored with ingested=False (invisible)
    4. absorb            Aggregator.absorb, exactly once
    5. mark_ingested     report becomes visible, linked to its hotspot
    6. publish           report_created, then hotspot_updated

Steps 3 and 5 each run under asyncio.wait_for(store_timeout_seconds). Step 4
is bounded inside the aggregator, per attempt and only once the
neighbourhood lock is held, so queueing behind other reports at the same
place does not count towards it. If anything after step 3 fails the
pending row is discarded and the original error is re-raised, so no
reader ever sees a report whose reading is not counted in a hotspot.

Known gap: a timeout can land after the store already counted the
reading. That happens when step 5 times out, or when an absorb attempt is
cancelled while its apply_absorb or create is in flight on MongoDB (the
server may still apply the write). The report is then discarded but the
hotspot keeps the reading, and a caller that retries counts it twice.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Mapping, Optional, TypeVar, Union

from pydantic import ValidationError as PydanticValidationError

from noisemap.core.config import settings
from noisemap.core.errors import NotFoundError, StoreUnavailableError, ValidationError
from noisemap.models.hotspot import GeoPoint, Hotspot
from noisemap.models.report import REPORT_STATUSES, Report, ReportSubmission
from noisemap.services.aggregator import Aggregator
from noisemap.services.events import EventBus
from noisemap.services.report_store import ReportStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class IngestionResult:
    report: Report
    hotspot: Hotspot
    hotspot_created: bool


def _describe(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        field = ".".join(str(loc) for loc in err["loc"]) or "payload"
        parts.append(f"{field}: {err['msg']}")
    return "; ".join(parts)


class IngestionService:
    def __init__(
        self,
        reports: ReportStore,
        aggregator: Aggregator,
        events: Optional[EventBus] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.reports = reports
        self.aggregator = aggregator
        self.events = events
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.store_timeout_seconds
        )

    @staticmethod
    def validate(
        payload: Union[ReportSubmission, Mapping[str, Any]],
        reporter_id: Optional[str] = None,
    ) -> ReportSubmission:
        """
        Return a checked submission with the reporter rule applied.

        reporter_id is the identity from the bearer token, when there is one.
        It must agree with any reporter_id in the payload.
        """
        if isinstance(payload, ReportSubmission):
            submission = payload
        else:
            try:
                submission = ReportSubmission.model_validate(dict(payload))
            except PydanticValidationError as exc:
                raise ValidationError(f"Invalid report: {_describe(exc)}") from exc
            except (TypeError, ValueError) as exc:
                raise ValidationError(f"Invalid report: {exc}") from exc

        if reporter_id and submission.reporter_id and submission.reporter_id != reporter_id:
            raise ValidationError("reporter_id does not match the authenticated user")
        effective = submission.reporter_id or reporter_id

        if submission.is_anonymous:
            return submission.model_copy(update={"reporter_id": None})
        if not effective:
            raise ValidationError("reporter_id is required unless the report is anonymous")
        return submission.model_copy(update={"reporter_id": effective})

    async def _bounded(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            logger.warning("Store %s exceeded %.1fs", operation, self.timeout_seconds)
            raise StoreUnavailableError(f"Store timed out during {operation}") from exc

    async def submit(
        self,
        payload: Union[ReportSubmission, Mapping[str, Any]],
        reporter_id: Optional[str] = None,
    ) -> IngestionResult:
        submission = self.validate(payload, reporter_id)

        pending = await self._bounded(
            "report insert",
            self.reports.insert(
                reporter_id=submission.reporter_id,
                is_anonymous=submission.is_anonymous,
                position=GeoPoint(lat=submission.latitude, lng=submission.longitude),
                decibels=submission.decibels,
                noise_type=submission.noise_type,
                description=submission.description,
                media_refs=submission.media_refs,
            ),
        )

        try:
            absorbed = await self.aggregator.absorb(pending)
            report = await self._bounded(
                "report commit", self.reports.mark_ingested(pending.id, absorbed.hotspot.id)
            )
        except Exception:
            await self._rollback(pending.id)
            raise

        logger.info(
            "Ingested report %s (%.1f dB %s) into hotspot %s (n=%d)",
            report.id, report.decibels, report.noise_type,
            absorbed.hotspot.id, absorbed.hotspot.report_count,
        )

        if self.events is not None:
            self.events.emit("report_created", {
                "report_id": report.id,
                "hotspot_id": absorbed.hotspot.id,
                "decibels": report.decibels,
                "noise_type": report.noise_type,
                "lat": report.position.lat,
                "lng": report.position.lng,
            })
            self.events.emit("hotspot_updated", {
                "hotspot_id": absorbed.hotspot.id,
                "average_decibels": absorbed.hotspot.average_decibels,
                "report_count": absorbed.hotspot.report_count,
                "lat": absorbed.hotspot.centroid.lat,
                "lng": absorbed.hotspot.centroid.lng,
                "created": absorbed.created,
            })

        return IngestionResult(report=report, hotspot=absorbed.hotspot, hotspot_created=absorbed.created)

    async def _rollback(self, report_id: str) -> None:
        try:
            await self._bounded("report discard", self.reports.discard(report_id))
        except Exception as exc:
            # The row stays ingested=False and is never read back.
            logger.error("Could not discard pending report %s: %s", report_id, exc)

    async def set_status(self, report_id: str, status: str) -> Report:
        """Moderation workflow transition; the aggregate is unaffected."""
        if status not in REPORT_STATUSES:
            raise ValidationError(f"Unknown status {status!r}")
        try:
            return await self.reports.update_status(report_id, status)
        except NotFoundError:
            logger.info("Status update for unknown report %s", report_id)
            raise
