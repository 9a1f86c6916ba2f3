"""
Anti-collision layout for map markers.

Locations that round to the same grid cell are moved onto a ring around the
cell so every marker stays visible. Only display coordinates change; the
LiveLocation records passed in are left untouched.
"""
from __future__ import annotations

import math
from typing import Dict, Iterable, List, Tuple

from livemap.core.map_config import (
    COORD_ROUND_DECIMALS,
    SPREAD_BASE_RADIUS_METERS,
    SPREAD_EXTRA_PER_MEMBER_METERS,
)
from livemap.schemas.map_data import LiveLocation, SpreadMarker
from livemap.services.geo import offset_by_meters, round_coord


def group_key(loc: LiveLocation, decimals: int = COORD_ROUND_DECIMALS) -> Tuple[float, float]:
    return round_coord(loc.lat, decimals), round_coord(loc.lng, decimals)


def ring_radius_m(
    size: int,
    base_radius_m: float = SPREAD_BASE_RADIUS_METERS,
    extra_per_member_m: float = SPREAD_EXTRA_PER_MEMBER_METERS,
) -> float:
    return base_radius_m + extra_per_member_m * max(0, size - 2)


def spread_markers(
    locations: Iterable[LiveLocation],
    base_radius_m: float = SPREAD_BASE_RADIUS_METERS,
    extra_per_member_m: float = SPREAD_EXTRA_PER_MEMBER_METERS,
    decimals: int = COORD_ROUND_DECIMALS,
) -> List[SpreadMarker]:
    locs = list(locations)

    groups: Dict[Tuple[float, float], List[LiveLocation]] = {}
    for loc in locs:
        groups.setdefault(group_key(loc, decimals), []).append(loc)

    adjusted: Dict[int, Tuple[float, float]] = {}
    for (center_lat, center_lng), members in groups.items():
        if len(members) == 1:
            only = members[0]
            adjusted[id(only)] = (only.lat, only.lng)
            continue

        # membership order must not depend on arrival order or markers jitter
        members = sorted(members, key=lambda m: m.user_id)
        n = len(members)
        radius = ring_radius_m(n, base_radius_m, extra_per_member_m)

        for i, loc in enumerate(members):
            angle = 2 * math.pi * i / n
            adjusted[id(loc)] = offset_by_meters(
                center_lat,
                center_lng,
                east_m=radius * math.cos(angle),
                north_m=radius * math.sin(angle),
            )

    return [
        SpreadMarker(
            user_id=loc.user_id,
            lat=adjusted[id(loc)][0],
            lng=adjusted[id(loc)][1],
            location=loc,
        )
        for loc in locs
    ]
