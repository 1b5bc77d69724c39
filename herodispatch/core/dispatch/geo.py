"""
Great-circle distance and distance-band filtering.

Pure functions, no state. Distances are in metres throughout the
dispatch layer; miles only appear when building the default schedule.
"""
from __future__ import annotations

import math

from herodispatch.core.domain import GeoPoint

__all__ = [
    "EARTH_RADIUS_M", "METERS_PER_MILE",
    "haversine_m", "distance", "in_band", "miles_to_meters",
]

EARTH_RADIUS_M = 6_371_000.0
METERS_PER_MILE = 1609.34


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in metres."""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlon / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance(a: GeoPoint, b: GeoPoint) -> float:
    """Distance between two ``GeoPoint`` values in metres."""
    return haversine_m(a.latitude, a.longitude, b.latitude, b.longitude)


def in_band(distance_m: float, min_radius_m: float, max_radius_m: float) -> bool:
    """Inclusive on both edges: ``min <= d <= max``."""
    return min_radius_m <= distance_m <= max_radius_m


def miles_to_meters(miles: float) -> float:
    return miles * METERS_PER_MILE
