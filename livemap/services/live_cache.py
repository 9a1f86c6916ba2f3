from __future__ import annotations

import asyncio
from typing import Dict, Iterable, Optional, Set, Tuple

from loguru import logger
from pydantic import ValidationError

from livemap.core.errors import BackendError, FetchError
from livemap.core.map_config import LOCATION_WRITE_POLICY
from livemap.schemas.map_data import LiveLocation, MapSnapshot, Profile
from livemap.services.backend import MapBackend
from livemap.services.image_prefetch import ImagePrefetcher

WRITE_POLICIES = ("arrival", "timestamp")


class LiveDataCache:
    """
    Merged profile + location view for one viewer.

    All mutating methods are synchronous, so on a single event loop each
    mutation is atomic with respect to the other writers (bulk refresh,
    realtime sink, the viewer's own position). Only the loaders await, and
    they re-check `epoch` before touching the store so results that belong
    to a previous viewer are dropped.
    """

    def __init__(
        self,
        backend: MapBackend,
        prefetcher: Optional[ImagePrefetcher] = None,
        policy: str = LOCATION_WRITE_POLICY,
    ):
        if policy not in WRITE_POLICIES:
            raise ValueError(f"Unknown location write policy: {policy}")

        self._backend = backend
        self._prefetcher = prefetcher
        self.policy = policy

        self.viewer_id: Optional[str] = None
        self.epoch = 0
        self.loading = False
        self.error: Optional[str] = None

        self.relevant_ids: Set[str] = set()
        self.profiles: Dict[str, Profile] = {}
        self.locations: Dict[str, LiveLocation] = {}

        self._loaded_ids: Set[str] = set()
        self._pending_profiles: Dict[Tuple[int, str], asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def reset(self, viewer_id: Optional[str] = None) -> None:
        self.epoch += 1
        self.viewer_id = viewer_id
        self.error = None
        self.relevant_ids.clear()
        self.profiles.clear()
        self.locations.clear()
        self._loaded_ids.clear()
        logger.info(f"Map cache reset for viewer={viewer_id} (epoch {self.epoch})")

    def extend_relevant(self, ids: Iterable[str]) -> Set[str]:
        added = set(ids) - self.relevant_ids
        self.relevant_ids.update(added)
        return added

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, user_id: str) -> Tuple[Optional[Profile], Optional[LiveLocation]]:
        return self.profiles.get(user_id), self.locations.get(user_id)

    def has_profile(self, user_id: str) -> bool:
        return user_id in self.profiles

    def snapshot(self) -> MapSnapshot:
        return MapSnapshot(
            viewer_id=self.viewer_id,
            loading=self.loading,
            error=self.error,
            ids=sorted(self.relevant_ids),
            profiles=dict(self.profiles),
            locations=dict(self.locations),
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def apply_location_update(self, loc: LiveLocation) -> bool:
        current = self.locations.get(loc.user_id)
        if (
            self.policy == "timestamp"
            and current is not None
            and current.updated_at is not None
            and loc.updated_at is not None
            and loc.updated_at < current.updated_at
        ):
            logger.debug(f"Ignoring older location for {loc.user_id} ({loc.updated_at} < {current.updated_at})")
            return False

        self.locations[loc.user_id] = loc
        self.relevant_ids.add(loc.user_id)
        return True

    def apply_profile_update(self, profile: Profile) -> None:
        self.profiles[profile.id] = profile

    def _prefetch(self, url: Optional[str]) -> None:
        if self._prefetcher is not None:
            self._prefetcher.prefetch(url)

    # ------------------------------------------------------------------
    # Loaders
    # ------------------------------------------------------------------

    async def bulk_load(self, ids: Iterable[str], force: bool = False) -> Set[str]:
        """
        Load profiles and locations for `ids` (only the unloaded ones unless
        forced). The batch is applied all-or-nothing.
        """
        epoch = self.epoch
        wanted = set(ids) if force else set(ids) - self._loaded_ids
        if not wanted:
            return set()

        ordered = sorted(wanted)
        try:
            loc_rows, prof_rows = await asyncio.gather(
                self._backend.fetch_locations(ordered),
                self._backend.fetch_profiles(ordered),
            )
            locations = LiveLocation.from_rows(loc_rows)
            profiles = Profile.from_rows(prof_rows)
        except (BackendError, ValidationError) as exc:
            if epoch == self.epoch:
                self.error = f"Failed to load map data: {exc}"
            raise FetchError(str(exc)) from exc

        if epoch != self.epoch:
            logger.info(f"Discarding bulk load for stale viewer context (epoch {epoch} != {self.epoch})")
            return set()

        for profile in profiles:
            self.apply_profile_update(profile)
        for loc in locations:
            self.apply_location_update(loc)

        self._loaded_ids.update(wanted)
        self.relevant_ids.update(wanted)

        for profile in profiles:
            self._prefetch(profile.photo_url)

        logger.info(
            f"Bulk load: {len(wanted)} ids -> {len(locations)} locations, {len(profiles)} profiles"
        )
        return wanted

    async def ensure_profile(self, user_id: str, refresh: bool = False) -> Optional[Profile]:
        if not refresh and user_id in self.profiles:
            return self.profiles[user_id]

        # a fetch started for an earlier viewer is never shared with this one
        key = (self.epoch, user_id)
        task = self._pending_profiles.get(key)
        if task is None:
            task = asyncio.create_task(self._fetch_profile(user_id, key[0]))
            self._pending_profiles[key] = task

            def _done(t: asyncio.Task, k: Tuple[int, str] = key) -> None:
                if self._pending_profiles.get(k) is t:
                    del self._pending_profiles[k]

            task.add_done_callback(_done)

        return await task

    async def _fetch_profile(self, user_id: str, epoch: int) -> Optional[Profile]:
        try:
            row = await self._backend.fetch_profile(user_id)
        except BackendError as exc:
            logger.warning(f"Profile fetch for {user_id} failed: {exc}")
            return None

        if epoch != self.epoch or row is None:
            return None

        try:
            profile = Profile.model_validate(row)
        except ValidationError as exc:
            logger.warning(f"Unusable profile row for {user_id}: {exc}")
            return None

        self.apply_profile_update(profile)
        self._prefetch(profile.photo_url)
        return profile

    async def aclose(self) -> None:
        pending = list(self._pending_profiles.values())
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._pending_profiles.clear()
