"""
distance.py — Great-circle distance for proximity-based warning dispatch.

Provides:
    - Haversine distance between two (lat, lon) points
    - ``within`` radius check used by the subscriber resolver
    - Bounding-box pre-filter used by the recipient directories

All distances are in **kilometers**. Coordinates are in **decimal degrees**.

Haversine Formula
=================
Given two points P₁(φ₁, λ₁) and P₂(φ₂, λ₂):

    a = sin²(Δφ / 2) + cos(φ₁) · cos(φ₂) · sin²(Δλ / 2)
    c = 2 · atan2(√a, √(1 − a))
    d = R · c

with R = 6 371 km (spherical-earth approximation).

The function is pure and total: any two valid coordinates yield a finite,
non-negative distance, symmetric in its arguments, and zero for identical
points.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Tuple


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EARTH_RADIUS_KM: float = 6_371.0


# ---------------------------------------------------------------------------
# Core data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Coordinate:
    """A geographic point in decimal degrees."""
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not (-90.0 <= self.latitude <= 90.0):
            raise ValueError(
                f"Latitude must be in [-90, 90], got {self.latitude}"
            )
        if not (-180.0 <= self.longitude <= 180.0):
            raise ValueError(
                f"Longitude must be in [-180, 180], got {self.longitude}"
            )

    @property
    def lat_rad(self) -> float:
        """Latitude in radians."""
        return math.radians(self.latitude)

    @property
    def lon_rad(self) -> float:
        """Longitude in radians."""
        return math.radians(self.longitude)

    def to_dict(self) -> dict:
        return {"latitude": self.latitude, "longitude": self.longitude}


# ---------------------------------------------------------------------------
# Haversine implementation
# ---------------------------------------------------------------------------

def haversine(point1: Coordinate, point2: Coordinate) -> float:
    """
    Compute the great-circle distance between two points.

    Parameters
    ----------
    point1, point2 : Coordinate

    Returns
    -------
    float
        Distance in kilometers.

    Examples
    --------
    >>> 90 < haversine(Coordinate(6.9271, 79.8612), Coordinate(7.2906, 80.6337)) < 100
    True
    >>> haversine(Coordinate(0, 0), Coordinate(0, 0))
    0.0
    """
    d_lat = point2.lat_rad - point1.lat_rad
    d_lon = point2.lon_rad - point1.lon_rad

    a = (
        math.sin(d_lat / 2.0) ** 2
        + math.cos(point1.lat_rad)
        * math.cos(point2.lat_rad)
        * math.sin(d_lon / 2.0) ** 2
    )
    # Float error can push a marginally past 1 for antipodal points
    a = min(1.0, max(0.0, a))

    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))
    return EARTH_RADIUS_KM * c


def within(point1: Coordinate, point2: Coordinate, radius_km: float) -> bool:
    """True when the two points are at most ``radius_km`` apart."""
    return haversine(point1, point2) <= radius_km


# ---------------------------------------------------------------------------
# Bounding-box pre-filter (fast rejection before Haversine)
# ---------------------------------------------------------------------------

def bounding_box(center: Coordinate, radius_km: float) -> Tuple[float, float, float, float]:
    """
    Compute a lat/lon box that fully contains the circle (center, radius_km).

    Returns (min_lat, max_lat, min_lon, max_lon) in degrees. Used by the
    recipient directories so Haversine only runs on plausible candidates.
    When the circle reaches a pole or crosses the antimeridian the longitude
    span is widened to the full range rather than wrapped.
    """
    angular = radius_km / EARTH_RADIUS_KM

    min_lat = center.latitude - math.degrees(angular)
    max_lat = center.latitude + math.degrees(angular)

    if min_lat <= -90.0 or max_lat >= 90.0:
        return (max(min_lat, -90.0), min(max_lat, 90.0), -180.0, 180.0)

    # Widest longitude of the circle, reached north/south of the center
    delta_lon = math.degrees(math.asin(min(1.0, math.sin(angular) / math.cos(center.lat_rad))))

    min_lon = center.longitude - delta_lon
    max_lon = center.longitude + delta_lon
    if min_lon < -180.0 or max_lon > 180.0:
        min_lon, max_lon = -180.0, 180.0

    return (min_lat, max_lat, min_lon, max_lon)


def inside_box(point: Coordinate, box: Tuple[float, float, float, float]) -> bool:
    """Quick rectangular check against a :func:`bounding_box` result."""
    min_lat, max_lat, min_lon, max_lon = box
    return min_lat <= point.latitude <= max_lat and min_lon <= point.longitude <= max_lon


def format_distance(km: float) -> str:
    """
    Format a distance for display.

    >>> format_distance(0.45)
    '450 m'
    >>> format_distance(3.7266)
    '3.73 km'
    """
    if km < 1.0:
        return f"{int(km * 1000)} m"
    return f"{km:.2f} km"
