"""
aggregator.py: incremental clustering of noise reports into hotspots.

This is the only writer of hotspots. For every accepted report:

  1. lock the report's neighbourhood (services/locks.py)
  2. find the nearest live hotspot within the cluster radius (inclusive)
  3. found     → absorb the reading into it (atomic compare-and-update)
     not found → found a new hotspot centred exactly on the report
  4. a newly founded hotspot is reconciled against any neighbour another
     process may have created concurrently (eventual de-duplication)

The new mean is (old_mean * old_count + d) / (old_count + 1); stores keep
it as a compensated sum so repeated absorption does not drift.

CLUSTER RADIUS
──────────────
A threshold of 0.001 degrees would be about 111 m north-south but only
~98 m east-west at Delhi, shrinking to nothing towards the poles.
settings.cluster_radius_km is a true great-circle distance (default
0.11 km) applied identically at every latitude.

CENTROID
────────
A hotspot's centroid is the position of its founding report and is never
recomputed. Off-centre absorptions can leave the centroid away from the
true centre of its reports (known limitation).

TIMEOUT
───────
Steps 2 to 4 of one attempt run under asyncio.wait_for(timeout_seconds)
once the neighbourhood lock is held. Waiting for the lock does not count,
so a burst of reports at one place queues instead of timing out.

FAILURES
────────
ConflictError  → the whole absorb is retried, up to max_attempts
NotFoundError, StoreUnavailableError (including a timeout) → propagate;
the caller must not mark the report as ingested.
A failed reconcile never fails the absorb: the result is whichever live
hotspot holds the founded hotspot's reading (store.resolve).
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from noisemap.core.config import settings
from noisemap.core.errors import ConflictError, NoiseMapError, NotFoundError, StoreUnavailableError
from noisemap.models.hotspot import Hotspot
from noisemap.models.report import Report
from noisemap.services.geo import within_radius
from noisemap.services.hotspot_store import HotspotStore
from noisemap.services.locks import NeighborhoodLocks

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AbsorbResult:
    hotspot: Hotspot
    created: bool     # True when the report founded the hotspot


class Aggregator:
    def __init__(
        self,
        store: HotspotStore,
        cluster_radius_km: Optional[float] = None,
        max_attempts: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.store = store
        self.cluster_radius_km = (
            cluster_radius_km if cluster_radius_km is not None else settings.cluster_radius_km
        )
        self.max_attempts = max_attempts if max_attempts is not None else settings.absorb_max_attempts
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.store_timeout_seconds
        )
        self.locks = NeighborhoodLocks(self.cluster_radius_km)

    async def absorb(self, report: Report) -> AbsorbResult:
        """Incorporate one report into its hotspot, founding one if needed."""
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self.locks.hold(report.position):
                    return await self._bounded(report)
            except ConflictError as exc:
                if attempt >= self.max_attempts:
                    logger.warning(
                        "Giving up on report %s after %d conflicting attempts: %s",
                        report.id, attempt, exc,
                    )
                    raise
                logger.info(
                    "Conflict absorbing report %s (attempt %d/%d): %s",
                    report.id, attempt, self.max_attempts, exc,
                )

    async def _bounded(self, report: Report) -> AbsorbResult:
        try:
            return await asyncio.wait_for(self._absorb_once(report), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            logger.warning("Absorbing report %s exceeded %.1fs", report.id, self.timeout_seconds)
            raise StoreUnavailableError(f"Store timed out while absorbing report {report.id}") from exc

    async def _absorb_once(self, report: Report) -> AbsorbResult:
        nearest = await self.store.find_nearest(report.position, self.cluster_radius_km)
        if nearest is not None:
            hotspot = await self.store.apply_absorb(nearest.id, report.decibels)
            logger.debug(
                "Report %s absorbed into hotspot %s (n=%d, avg=%.2f dB)",
                report.id, hotspot.id, hotspot.report_count, hotspot.average_decibels,
            )
            return AbsorbResult(hotspot=hotspot, created=False)

        founded = await self.store.create(report.position, report.decibels)
        logger.info(
            "Report %s founded hotspot %s at (%.6f, %.6f)",
            report.id, founded.id, founded.centroid.lat, founded.centroid.lng,
        )

        # The reading is already stored in `founded`. A failed merge must not
        # fail (and so retry) the absorb; the next reconcile picks it up.
        try:
            survivor = await self._reconcile(founded)
        except NoiseMapError as exc:
            logger.warning("Deferred de-duplication of hotspot %s: %s", founded.id, exc)
            survivor = await self.store.resolve(founded.id)
            if survivor is None:
                raise StoreUnavailableError(
                    f"Hotspot {founded.id} was lost during de-duplication"
                ) from exc
        return AbsorbResult(hotspot=survivor, created=survivor.id == founded.id)

    async def deduplicate(self, hotspot_id: str) -> Hotspot:
        """
        Merge hotspots overlapping hotspot_id's cluster radius.

        Public so an external sweeper can reconcile hotspots that separate
        API workers created for the same place at the same time.
        """
        hotspot = await self.store.get_by_id(hotspot_id)
        if hotspot is None:
            raise NotFoundError(f"Hotspot {hotspot_id} not found")
        async with self.locks.hold(hotspot.centroid):
            return await self._reconcile(hotspot)

    async def _reconcile(self, hotspot: Hotspot) -> Hotspot:
        """
        The oldest hotspot (created_at, then id) within the cluster radius
        survives; every other hotspot within the cluster radius of the
        survivor is folded into it. Returns the hotspot that now holds
        `hotspot`'s readings.
        """
        neighbours = [h for _, h in await self.store.find_within(hotspot.centroid, self.cluster_radius_km)]
        if not any(h.id != hotspot.id for h in neighbours):
            return hotspot

        group = {h.id: h for h in neighbours}
        group[hotspot.id] = hotspot
        survivor = min(group.values(), key=lambda h: (h.created_at, h.id))

        merged = survivor
        duplicates = [
            h for h in group.values()
            if h.id != survivor.id and within_radius(survivor.centroid, h.centroid, self.cluster_radius_km)
        ]
        for duplicate in duplicates:
            merged = await self.store.merge_into(survivor.id, duplicate.id)
            logger.warning(
                "Merged duplicate hotspot %s into %s (n=%d)",
                duplicate.id, merged.id, merged.report_count,
            )

        if hotspot.id == survivor.id or any(d.id == hotspot.id for d in duplicates):
            return merged
        return hotspot
