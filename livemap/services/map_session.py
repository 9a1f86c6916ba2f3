from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from loguru import logger

from livemap.core.errors import BackendError, MapDataError
from livemap.core.map_config import (
    LOCATION_WRITE_POLICY,
    NEARBY_RADIUS_METERS,
    REALTIME_ADMIT_UNKNOWN,
    REALTIME_QUEUE_MAXSIZE,
)
from livemap.schemas.map_data import LiveLocation, MapMarker, MapSnapshot, Profile
from livemap.services.backend import MapBackend
from livemap.services.freshness import is_fresh, relative_age
from livemap.services.image_prefetch import ImagePrefetcher
from livemap.services.live_cache import LiveDataCache
from livemap.services.merge_sink import RealtimeMergeSink
from livemap.services.resolvers import resolve_friend_ids, resolve_nearby_ids
from livemap.services.spread import spread_markers

DEFAULT_LABEL = "CarMeet user"


def display_label(user_id: str, profile: Optional[Profile]) -> str:
    if profile is not None:
        if profile.display_name:
            return profile.display_name
        if profile.username:
            return profile.username
    return user_id[:8] or DEFAULT_LABEL


def initials_for(label: str) -> str:
    return "".join(part[0] for part in label.split() if part)[:2].upper()


class MapSession:
    """
    One viewer's live map: the cache, its realtime sink and the refresh
    cycle that decides which users belong on the map.

    Callers go through these methods only; they get snapshots and marker
    lists back and never touch the cache dicts directly.
    """

    def __init__(
        self,
        backend: MapBackend,
        prefetcher: Optional[ImagePrefetcher] = None,
        radius_m: float = NEARBY_RADIUS_METERS,
        policy: str = LOCATION_WRITE_POLICY,
        queue_maxsize: int = REALTIME_QUEUE_MAXSIZE,
        admit_unknown: bool = REALTIME_ADMIT_UNKNOWN,
    ):
        self._backend = backend
        self.radius_m = radius_m
        self.cache = LiveDataCache(backend, prefetcher, policy)
        self.sink = RealtimeMergeSink(self.cache, backend, maxsize=queue_maxsize, admit_unknown=admit_unknown)

    @property
    def viewer_id(self) -> Optional[str]:
        return self.cache.viewer_id

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(
        self,
        viewer_id: Optional[str] = None,
        position: Optional[Tuple[float, float]] = None,
        force: bool = False,
    ) -> MapSnapshot:
        """
        Rebuild the relevant-id set and load whatever is missing.

        `viewer_id` skips the identity lookup when the caller already knows
        who is signed in. Nearby users are only added when a position is
        known (passed in, or the viewer's own cached fix).
        """
        cache = self.cache
        cache.loading = True
        cache.error = None
        epoch = cache.epoch

        try:
            uid = viewer_id if viewer_id is not None else await self._backend.current_user_id()

            if not uid or uid != cache.viewer_id:
                cache.reset(uid or None)
            epoch = cache.epoch

            if not uid:
                return cache.snapshot()

            logger.info(f"Map refresh viewer={uid} force={force}")
            await self._refresh_viewer(uid, epoch, position, force)
        except MapDataError as exc:
            if epoch == cache.epoch:
                cache.error = str(exc) or "Failed to load map data."
            logger.warning(f"Map refresh failed: {exc}")
        finally:
            cache.loading = False

        return cache.snapshot()

    async def _refresh_viewer(
        self,
        uid: str,
        epoch: int,
        position: Optional[Tuple[float, float]],
        force: bool,
    ) -> None:
        cache = self.cache

        # friends are always loaded, position or not
        friend_ids = await resolve_friend_ids(self._backend, uid)
        if epoch != cache.epoch:
            return

        base_ids = {uid} | friend_ids
        cache.extend_relevant(base_ids)
        await cache.bulk_load(base_ids, force=force)
        if epoch != cache.epoch:
            return

        await self._start_realtime()

        pos = position or self._own_position(uid)
        if pos is None:
            logger.debug(f"No position for {uid}; skipping nearby users")
            return

        nearby_ids = await resolve_nearby_ids(self._backend, pos[0], pos[1], self.radius_m)
        if epoch != cache.epoch:
            return

        cache.extend_relevant(nearby_ids)
        await cache.bulk_load(nearby_ids - base_ids, force=force)

    async def _start_realtime(self) -> None:
        try:
            await self.sink.start()
        except BackendError as exc:
            # the map still works from bulk loads; it just will not update live
            logger.warning(f"Realtime unavailable: {exc}")

    def _own_position(self, uid: str) -> Optional[Tuple[float, float]]:
        loc = self.cache.locations.get(uid)
        return (loc.lat, loc.lng) if loc else None

    # ------------------------------------------------------------------
    # Viewer's own location
    # ------------------------------------------------------------------

    def set_my_live_location(self, loc: LiveLocation) -> bool:
        return self.cache.apply_location_update(loc)

    async def share_my_location(
        self,
        lat: float,
        lng: float,
        heading: Optional[float] = None,
        speed: Optional[float] = None,
    ) -> LiveLocation:
        uid = self.cache.viewer_id
        if not uid:
            raise ValueError("No signed-in viewer for this map session")

        loc = LiveLocation(
            user_id=uid,
            lat=lat,
            lng=lng,
            heading=heading,
            speed=speed,
            updated_at=datetime.now(timezone.utc),
        )
        self.set_my_live_location(loc)
        await self._backend.upsert_location(loc.model_dump())
        return loc

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self) -> MapSnapshot:
        return self.cache.snapshot()

    def get(self, user_id: str) -> Tuple[Optional[Profile], Optional[LiveLocation]]:
        return self.cache.get(user_id)

    async def lookup_profile(self, user_id: str, refresh: bool = False) -> Optional[Profile]:
        return await self.cache.ensure_profile(user_id, refresh=refresh)

    def markers(self, now: Optional[datetime] = None) -> List[MapMarker]:
        cache = self.cache
        locs = [cache.locations[k] for k in sorted(cache.locations)]

        out: List[MapMarker] = []
        for m in spread_markers(locs):
            loc = m.location
            profile = cache.profiles.get(loc.user_id)
            label = display_label(loc.user_id, profile)
            out.append(
                MapMarker(
                    user_id=loc.user_id,
                    lat=m.lat,
                    lng=m.lng,
                    true_lat=loc.lat,
                    true_lng=loc.lng,
                    heading=loc.heading,
                    speed=loc.speed,
                    updated_at=loc.updated_at,
                    is_fresh=is_fresh(loc.updated_at, now=now),
                    age=relative_age(loc.updated_at, now=now),
                    is_self=loc.user_id == cache.viewer_id,
                    label=label,
                    initials=initials_for(label),
                    photo_url=profile.photo_url if profile else None,
                )
            )
        return out

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def sign_out(self) -> None:
        await self.sink.stop()
        await self.cache.aclose()
        self.cache.reset(None)


class SessionRegistry:
    """One MapSession per signed-in viewer, sharing a backend and prefetcher."""

    def __init__(self, backend: MapBackend, prefetcher: Optional[ImagePrefetcher] = None, **session_kwargs):
        self.backend = backend
        self.prefetcher = prefetcher
        self._session_kwargs = session_kwargs
        self._sessions: Dict[str, MapSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, viewer_id: str) -> MapSession:
        session = self._sessions.get(viewer_id)
        if session is None:
            session = MapSession(self.backend, self.prefetcher, **self._session_kwargs)
            self._sessions[viewer_id] = session
            logger.info(f"Map session opened for viewer={viewer_id}")
        return session

    def peek(self, viewer_id: str) -> Optional[MapSession]:
        return self._sessions.get(viewer_id)

    async def close(self, viewer_id: str) -> bool:
        session = self._sessions.pop(viewer_id, None)
        if session is None:
            return False
        await session.sign_out()
        logger.info(f"Map session closed for viewer={viewer_id}")
        return True

    async def aclose(self) -> None:
        for viewer_id in list(self._sessions):
            await self.close(viewer_id)
        if self.prefetcher is not None:
            await self.prefetcher.aclose()
