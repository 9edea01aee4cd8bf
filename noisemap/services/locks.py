"""
locks.py: per-neighbourhood serialisation for the aggregator.

The world is cut into a lat/lng grid whose cells are twice the cluster
radius tall. A report locks every cell that intersects the bounding box of
its cluster-radius circle. Two reports within the cluster radius of each
other therefore always share at least one cell (each one's home cell sits
inside the other's box), which is what stops two concurrent "no hotspot
found" decisions from founding overlapping hotspots.

Cells above POLAR_CUTOFF_DEG collapse into one key per hemisphere; near the
poles a handful of kilometres spans every longitude and per-cell locking
would mean thousands of keys.

Locks are taken in sorted key order (no deadlocks between overlapping
neighbourhoods) and are dropped from the table once nobody holds or waits
on them.
"""

from __future__ import annotations

import asyncio
import math
from contextlib import asynccontextmanager
from typing import AsyncIterator

from noisemap.models.hotspot import GeoPoint
from noisemap.services.geo import KM_PER_DEGREE, bounding_box

POLAR_CUTOFF_DEG = 85.0

_NORTH_POLE_KEY = "pole:north"
_SOUTH_POLE_KEY = "pole:south"


class NeighborhoodLocks:
    """Reference-counted asyncio locks keyed by grid cell."""

    def __init__(self, radius_km: float):
        self.radius_km = radius_km
        self.cell_deg = 2 * radius_km / KM_PER_DEGREE
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}

    def keys_for(self, point: GeoPoint) -> list[str]:
        """Sorted lock keys covering the cluster-radius neighbourhood of point."""
        if point.lat > POLAR_CUTOFF_DEG:
            return [_NORTH_POLE_KEY]
        if point.lat < -POLAR_CUTOFF_DEG:
            return [_SOUTH_POLE_KEY]

        keys: set[str] = set()
        for box in bounding_box(point, self.radius_km):
            if box.max_lat > POLAR_CUTOFF_DEG:
                keys.add(_NORTH_POLE_KEY)
            if box.min_lat < -POLAR_CUTOFF_DEG:
                keys.add(_SOUTH_POLE_KEY)

            lo_row = self._row(max(box.min_lat, -POLAR_CUTOFF_DEG))
            hi_row = self._row(min(box.max_lat, POLAR_CUTOFF_DEG))
            lo_col = self._col(box.min_lng)
            hi_col = self._col(box.max_lng)
            for row in range(lo_row, hi_row + 1):
                for col in range(lo_col, hi_col + 1):
                    keys.add(f"{row}:{col}")
        return sorted(keys)

    def _row(self, lat: float) -> int:
        return math.floor(lat / self.cell_deg)

    def _col(self, lng: float) -> int:
        return math.floor((lng + 180.0) / self.cell_deg)

    @property
    def active(self) -> int:
        """Number of cells currently held or awaited."""
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, point: GeoPoint) -> AsyncIterator[list[str]]:
        keys = self.keys_for(point)
        for key in keys:
            self._refs[key] = self._refs.get(key, 0) + 1
            self._locks.setdefault(key, asyncio.Lock())

        acquired: list[str] = []
        try:
            for key in keys:
                await self._locks[key].acquire()
                acquired.append(key)
            yield keys
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
            for key in keys:
                self._refs[key] -= 1
                if self._refs[key] == 0:
                    del self._refs[key]
                    del self._locks[key]
