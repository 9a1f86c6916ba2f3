"""Geo helpers: great-circle distance, grid rounding, bounding boxes."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Tuple

EARTH_RADIUS_M = 6371000.0

# flat-earth approximation used for boxes and marker offsets
METERS_PER_DEGREE = 111_111.0


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    def contains(self, lat: float, lng: float) -> bool:
        return self.min_lat <= lat <= self.max_lat and self.min_lng <= lng <= self.max_lng


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lng2 - lng1)

    a = (
        math.sin(dphi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    )
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(a))


def round_coord(value: float, decimals: int = 5) -> float:
    """Round half-up (away from banker's rounding) to `decimals` places."""
    factor = 10 ** decimals
    return math.floor(value * factor + 0.5) / factor


def meters_per_degree_lng(lat: float) -> float:
    return METERS_PER_DEGREE * math.cos(math.radians(lat))


def bounding_box(lat: float, lng: float, radius_m: float) -> BoundingBox:
    """Rectangular pre-filter around (lat, lng); corners overshoot the radius."""
    dlat = radius_m / METERS_PER_DEGREE
    dlng = radius_m / meters_per_degree_lng(lat)
    return BoundingBox(
        min_lat=lat - dlat,
        max_lat=lat + dlat,
        min_lng=lng - dlng,
        max_lng=lng + dlng,
    )


def offset_by_meters(lat: float, lng: float, east_m: float, north_m: float) -> Tuple[float, float]:
    """Shift a coordinate by a small local east/north displacement."""
    return (
        lat + north_m / METERS_PER_DEGREE,
        lng + east_m / meters_per_degree_lng(lat),
    )
