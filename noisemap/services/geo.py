"""
geo.py: distance and containment math over latitude/longitude pairs.

Every radius decision in the service (clustering on the write path,
"near me" queries on the read path) goes through within_radius(), so a
report absorbed into a hotspot is always found when querying that
hotspot's neighbourhood.

APPROXIMATION
─────────────
within_radius() may use an equirectangular estimate, but only as a fast
accept / reject:
  - radius_km < 1 and both points more than 1° away from the poles
  - the estimate is outside a ±0.1 % band around the radius
Anything else, including every pair close to the boundary, is decided by
the exact Haversine formula. The planar error for sub-kilometre distances
at those latitudes is orders of magnitude below 0.1 %, so the result is
always identical to `haversine_distance_km(a, b) <= radius_km`.

USAGE
─────
    from noisemap.models.hotspot import GeoPoint
    from noisemap.services.geo import haversine_distance_km, within_radius

    a = GeoPoint(lat=28.6139, lng=77.2090)
    b = GeoPoint(lat=28.6140, lng=77.2091)
    haversine_distance_km(a, b)   # → 0.0148
    within_radius(a, b, 0.11)     # → True
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, Iterable, TypeVar

from noisemap.models.hotspot import GeoPoint

EARTH_RADIUS_KM = 6371.0
# Length of one degree of latitude on the Haversine sphere (~111.195 km).
KM_PER_DEGREE = EARTH_RADIUS_KM * math.pi / 180.0

_PLANAR_MAX_RADIUS_KM = 1.0
_PLANAR_MAX_ABS_LAT = 89.0
_PLANAR_MARGIN = 1e-3

# Boxes are padded so a point exactly on the radius is never cut by rounding.
_BOX_PADDING = 1e-6

T = TypeVar("T")


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned lat/lng box in degrees (min_lng <= max_lng, no wrap)."""

    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    def contains(self, point: GeoPoint) -> bool:
        return (
            self.min_lat <= point.lat <= self.max_lat
            and self.min_lng <= point.lng <= self.max_lng
        )


def haversine_distance_km(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance in kilometres (Earth radius 6371 km)."""
    lat1 = math.radians(a.lat)
    lat2 = math.radians(b.lat)
    dlat = lat2 - lat1
    dlng = math.radians(b.lng - a.lng)

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    # Rounding can push h a hair above 1 for antipodal pairs.
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(h)))


def _equirectangular_km(a: GeoPoint, b: GeoPoint) -> float:
    dlng = (b.lng - a.lng + 180.0) % 360.0 - 180.0   # shortest way round
    x = math.radians(dlng) * math.cos(math.radians((a.lat + b.lat) / 2))
    y = math.radians(b.lat - a.lat)
    return EARTH_RADIUS_KM * math.hypot(x, y)


def within_radius(a: GeoPoint, b: GeoPoint, radius_km: float) -> bool:
    """True when b lies within radius_km of a (inclusive boundary)."""
    if radius_km < 0:
        return False

    if (
        radius_km < _PLANAR_MAX_RADIUS_KM
        and abs(a.lat) < _PLANAR_MAX_ABS_LAT
        and abs(b.lat) < _PLANAR_MAX_ABS_LAT
    ):
        estimate = _equirectangular_km(a, b)
        if estimate > radius_km * (1 + _PLANAR_MARGIN):
            return False
        if estimate < radius_km * (1 - _PLANAR_MARGIN):
            return True

    return haversine_distance_km(a, b) <= radius_km


def bounding_box(center: GeoPoint, radius_km: float) -> list[BoundingBox]:
    """
    Lat/lng boxes covering every point within radius_km of center.

    Returns one box normally, two when the circle crosses the antimeridian,
    and a full-longitude band when it reaches a pole. Stores use these to
    prefilter candidates before the exact within_radius() check.
    """
    delta = radius_km / EARTH_RADIUS_KM * (1 + _BOX_PADDING) + 1e-12
    lat = math.radians(center.lat)
    lng = math.radians(center.lng)

    min_lat = lat - delta
    max_lat = lat + delta

    if min_lat <= -math.pi / 2 or max_lat >= math.pi / 2 or delta >= math.pi / 2:
        return [BoundingBox(
            min_lat=math.degrees(max(min_lat, -math.pi / 2)),
            max_lat=math.degrees(min(max_lat, math.pi / 2)),
            min_lng=-180.0,
            max_lng=180.0,
        )]

    dlng = math.asin(min(1.0, math.sin(delta) / math.cos(lat)))
    min_lng = math.degrees(lng - dlng)
    max_lng = math.degrees(lng + dlng)
    lo_lat, hi_lat = math.degrees(min_lat), math.degrees(max_lat)

    if max_lng - min_lng >= 360.0:
        return [BoundingBox(lo_lat, hi_lat, -180.0, 180.0)]
    if min_lng < -180.0:
        return [
            BoundingBox(lo_lat, hi_lat, min_lng + 360.0, 180.0),
            BoundingBox(lo_lat, hi_lat, -180.0, max_lng),
        ]
    if max_lng > 180.0:
        return [
            BoundingBox(lo_lat, hi_lat, min_lng, 180.0),
            BoundingBox(lo_lat, hi_lat, -180.0, max_lng - 360.0),
        ]
    return [BoundingBox(lo_lat, hi_lat, min_lng, max_lng)]


def rank_within(
    center: GeoPoint,
    radius_km: float,
    items: Iterable[T],
    position: Callable[[T], GeoPoint],
) -> list[tuple[float, T]]:
    """
    Keep the items whose position is within radius_km of center and return
    them as (distance_km, item) pairs, nearest first.

    Exact distance ties are broken by the item's `id` (ascending) so that
    results are deterministic.
    """
    ranked = [
        (haversine_distance_km(center, position(item)), item)
        for item in items
        if within_radius(center, position(item), radius_km)
    ]
    ranked.sort(key=lambda pair: (pair[0], pair[1].id))
    return ranked
