from __future__ import annotations

from typing import Set

from loguru import logger

from livemap.core.errors import BackendError, ResolutionError
from livemap.core.map_config import NEARBY_RADIUS_METERS
from livemap.services.backend import MapBackend
from livemap.services.geo import bounding_box, haversine_m


async def resolve_friend_ids(backend: MapBackend, viewer_id: str) -> Set[str]:
    """Ids on the other side of every accepted friendship involving the viewer."""
    try:
        rows = await backend.fetch_accepted_friendships(viewer_id)
    except BackendError as exc:
        raise ResolutionError(f"Could not load friends: {exc}") from exc

    friend_ids: Set[str] = set()
    for r in rows:
        user_id = str(r["user_id"])
        friend_id = str(r["friend_id"])
        friend_ids.add(friend_id if user_id == viewer_id else user_id)

    friend_ids.discard(viewer_id)
    logger.debug(f"viewer={viewer_id} friends={len(friend_ids)} (rows={len(rows)})")
    return friend_ids


async def resolve_nearby_ids(
    backend: MapBackend,
    lat: float,
    lng: float,
    radius_m: float = NEARBY_RADIUS_METERS,
) -> Set[str]:
    """
    Users within radius_m of (lat, lng).

    The bounding box is only a cheap range pre-filter for the backend; the
    haversine pass drops the box corners and corrects the flat-earth error.
    """
    box = bounding_box(lat, lng, radius_m)
    try:
        rows = await backend.fetch_locations_in_box(box)
    except BackendError as exc:
        raise ResolutionError(f"Could not load nearby users: {exc}") from exc

    # distance filter
    nearby = {
        str(r["user_id"])
        for r in rows
        if haversine_m(lat, lng, float(r["lat"]), float(r["lng"])) <= radius_m
    }
    logger.debug(f"nearby: {len(rows)} in box, {len(nearby)} within {radius_m}m")
    return nearby
