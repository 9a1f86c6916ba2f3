from __future__ import annotations

from typing import Any, Iterable, List, Optional

import httpx
from loguru import logger
from postgrest.exceptions import APIError
from supabase import AsyncClient, acreate_client

from livemap.core.config import SUPABASE_KEY, SUPABASE_URL
from livemap.core.errors import BackendError
from livemap.schemas.enums import FriendshipStatus
from livemap.schemas.map_data import ChangeEvent
from livemap.services.backend import LocationCallback, MapBackend, Row, Subscription
from livemap.services.geo import BoundingBox

PROFILE_COLUMNS = "id, username, display_name, photo_url, location_visibility"
LOCATION_COLUMNS = "user_id, lat, lng, heading, speed, updated_at"


async def create_supabase_client(url: str | None = None, key: str | None = None) -> AsyncClient:
    url = url or SUPABASE_URL
    key = key or SUPABASE_KEY
    if not url or not key:
        raise RuntimeError("Missing SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY")
    return await acreate_client(url, key)


class SupabaseBackend(MapBackend):
    """PostgREST reads/writes plus the realtime postgres_changes feed on `locations`."""

    def __init__(self, client: AsyncClient):
        self._client = client

    @classmethod
    async def connect(cls, url: str | None = None, key: str | None = None) -> "SupabaseBackend":
        return cls(await create_supabase_client(url, key))

    async def _execute(self, query, what: str) -> Any:
        try:
            return await query.execute()
        except (APIError, httpx.HTTPError) as exc:
            raise BackendError(f"supabase {what} failed: {exc}") from exc

    async def current_user_id(self) -> Optional[str]:
        try:
            res = await self._client.auth.get_user()
        except Exception as exc:
            # no session on this client is the common case, not an error
            logger.debug(f"No supabase session user: {exc}")
            return None
        if not res or not res.user:
            return None
        return str(res.user.id)

    async def fetch_accepted_friendships(self, viewer_id: str) -> List[Row]:
        query = (
            self._client.table("friendships")
            .select("user_id, friend_id, status")
            .eq("status", FriendshipStatus.accepted.value)
            .or_(f"user_id.eq.{viewer_id},friend_id.eq.{viewer_id}")
        )
        res = await self._execute(query, "friendships query")
        return list(res.data or [])

    async def fetch_locations_in_box(self, box: BoundingBox) -> List[Row]:
        query = (
            self._client.table("locations")
            .select("user_id, lat, lng")
            .gte("lat", box.min_lat)
            .lte("lat", box.max_lat)
            .gte("lng", box.min_lng)
            .lte("lng", box.max_lng)
        )
        res = await self._execute(query, "nearby query")
        return list(res.data or [])

    async def fetch_locations(self, user_ids: Iterable[str]) -> List[Row]:
        ids = list(user_ids)
        if not ids:
            return []
        query = self._client.table("locations").select(LOCATION_COLUMNS).in_("user_id", ids)
        res = await self._execute(query, "locations load")
        return list(res.data or [])

    async def fetch_profiles(self, user_ids: Iterable[str]) -> List[Row]:
        ids = list(user_ids)
        if not ids:
            return []
        query = self._client.table("profiles").select(PROFILE_COLUMNS).in_("id", ids)
        res = await self._execute(query, "profiles load")
        return list(res.data or [])

    async def fetch_profile(self, user_id: str) -> Optional[Row]:
        query = self._client.table("profiles").select(PROFILE_COLUMNS).eq("id", user_id).maybe_single()
        res = await self._execute(query, "profile lookup")
        # maybe_single() yields None (not an empty response) on zero rows in recent clients
        if res is None or not res.data:
            return None
        return res.data

    async def upsert_location(self, row: Row) -> None:
        payload = dict(row)
        if payload.get("updated_at") is not None and not isinstance(payload["updated_at"], str):
            payload["updated_at"] = payload["updated_at"].isoformat()
        query = self._client.table("locations").upsert(payload, on_conflict="user_id")
        await self._execute(query, "location upsert")

    async def subscribe_locations(self, callback: LocationCallback) -> Subscription:
        def _on_change(payload: dict) -> None:
            try:
                event = ChangeEvent.from_realtime(payload)
            except ValueError as exc:
                logger.warning(f"Dropping unreadable realtime payload: {exc}")
                return
            callback(event)

        channel = self._client.channel("public:locations")
        channel.on_postgres_changes(
            "*",
            schema="public",
            table="locations",
            callback=_on_change,
        )
        try:
            await channel.subscribe()
        except Exception as exc:
            raise BackendError(f"realtime subscribe failed: {exc}") from exc

        logger.info("Subscribed to realtime changes on public.locations")

        async def _close() -> None:
            await self._client.remove_channel(channel)

        return Subscription(_close)

    async def close(self) -> None:
        await self._client.remove_all_channels()
