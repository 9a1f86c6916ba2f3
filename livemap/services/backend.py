from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from loguru import logger
from sqlalchemy import DateTime, bindparam, or_, text
from sqlalchemy.exc import SQLAlchemyError

from livemap.core.db import SessionLocal
from livemap.core.errors import BackendError
from livemap.models.friendship import Friendship
from livemap.models.location import Location
from livemap.models.profile import Profile
from livemap.schemas.enums import ChangeOperation, FriendshipStatus
from livemap.schemas.map_data import ChangeEvent
from livemap.services.freshness import parse_timestamp
from livemap.services.geo import BoundingBox

Row = Dict[str, Any]
LocationCallback = Callable[[ChangeEvent], None]


class Subscription:
    """Handle returned by subscribe_locations; unsubscribe() is idempotent."""

    def __init__(self, close: Callable[[], Awaitable[None]]):
        self._close = close
        self.active = True

    async def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        await self._close()


class MapBackend(ABC):
    """
    Everything the map cache needs from the outside world.

    Implementations wrap their library errors in BackendError so callers only
    have one failure type to reason about.
    """

    @abstractmethod
    async def current_user_id(self) -> Optional[str]: ...

    @abstractmethod
    async def fetch_accepted_friendships(self, viewer_id: str) -> List[Row]: ...

    @abstractmethod
    async def fetch_locations_in_box(self, box: BoundingBox) -> List[Row]: ...

    @abstractmethod
    async def fetch_locations(self, user_ids: Iterable[str]) -> List[Row]: ...

    @abstractmethod
    async def fetch_profiles(self, user_ids: Iterable[str]) -> List[Row]: ...

    @abstractmethod
    async def fetch_profile(self, user_id: str) -> Optional[Row]: ...

    @abstractmethod
    async def upsert_location(self, row: Row) -> None: ...

    @abstractmethod
    async def subscribe_locations(self, callback: LocationCallback) -> Subscription: ...

    async def close(self) -> None:
        return None


# ------------------------------------------------------------------
# SQL
# ------------------------------------------------------------------

_UPSERT_LOCATION = text(
    """
    INSERT INTO locations (user_id, lat, lng, heading, speed, updated_at)
    VALUES (:user_id, :lat, :lng, :heading, :speed, :updated_at)
    ON CONFLICT(user_id) DO UPDATE SET
        lat = excluded.lat,
        lng = excluded.lng,
        heading = excluded.heading,
        speed = excluded.speed,
        updated_at = excluded.updated_at
    """
).bindparams(bindparam("updated_at", type_=DateTime(timezone=True)))


def _location_row(r: Location) -> Row:
    return {
        "user_id": r.user_id,
        "lat": r.lat,
        "lng": r.lng,
        "heading": r.heading,
        "speed": r.speed,
        "updated_at": r.updated_at,
    }


def _profile_row(r: Profile) -> Row:
    return {
        "id": r.id,
        "username": r.username,
        "display_name": r.display_name,
        "photo_url": r.photo_url,
        "location_visibility": r.location_visibility,
    }


class SqlBackend(MapBackend):
    """
    Reads the friendships/locations/profiles tables through SQLAlchemy.

    Plain SQL has no change feed, so the location stream is in-process: every
    upsert_location() (and anything handed to publish()) is fanned out to the
    subscribers.
    """

    def __init__(self, session_factory=SessionLocal, viewer_id: Optional[str] = None):
        self._session_factory = session_factory
        self._viewer_id = viewer_id
        self._listeners: List[LocationCallback] = []

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except SQLAlchemyError as exc:
            raise BackendError(f"database error: {exc}") from exc

    # ---------- reads ----------

    def _accepted_friendships(self, viewer_id: str) -> List[Row]:
        with self._session_factory() as db:
            rows = (
                db.query(Friendship)
                .filter(
                    Friendship.status == FriendshipStatus.accepted.value,
                    or_(
                        Friendship.user_id == viewer_id,
                        Friendship.friend_id == viewer_id,
                    ),
                )
                .all()
            )
            return [{"user_id": r.user_id, "friend_id": r.friend_id, "status": r.status} for r in rows]

    def _locations_in_box(self, box: BoundingBox) -> List[Row]:
        with self._session_factory() as db:
            rows = (
                db.query(Location)
                .filter(
                    Location.lat >= box.min_lat,
                    Location.lat <= box.max_lat,
                    Location.lng >= box.min_lng,
                    Location.lng <= box.max_lng,
                )
                .all()
            )
            return [_location_row(r) for r in rows]

    def _locations(self, user_ids: List[str]) -> List[Row]:
        with self._session_factory() as db:
            rows = db.query(Location).filter(Location.user_id.in_(user_ids)).all()
            return [_location_row(r) for r in rows]

    def _profiles(self, user_ids: List[str]) -> List[Row]:
        with self._session_factory() as db:
            rows = db.query(Profile).filter(Profile.id.in_(user_ids)).all()
            return [_profile_row(r) for r in rows]

    def _profile(self, user_id: str) -> Optional[Row]:
        with self._session_factory() as db:
            row = db.get(Profile, user_id)
            return _profile_row(row) if row else None

    async def current_user_id(self) -> Optional[str]:
        return self._viewer_id

    async def fetch_accepted_friendships(self, viewer_id: str) -> List[Row]:
        return await self._run(self._accepted_friendships, viewer_id)

    async def fetch_locations_in_box(self, box: BoundingBox) -> List[Row]:
        return await self._run(self._locations_in_box, box)

    async def fetch_locations(self, user_ids: Iterable[str]) -> List[Row]:
        ids = list(user_ids)
        if not ids:
            return []
        return await self._run(self._locations, ids)

    async def fetch_profiles(self, user_ids: Iterable[str]) -> List[Row]:
        ids = list(user_ids)
        if not ids:
            return []
        return await self._run(self._profiles, ids)

    async def fetch_profile(self, user_id: str) -> Optional[Row]:
        return await self._run(self._profile, user_id)

    # ---------- writes ----------

    def _upsert(self, row: Row) -> bool:
        with self._session_factory() as db:
            existed = db.get(Location, row["user_id"]) is not None
            db.execute(_UPSERT_LOCATION, row)
            db.commit()
        return existed

    async def upsert_location(self, row: Row) -> None:
        params = {
            "user_id": str(row["user_id"]),
            "lat": row["lat"],
            "lng": row["lng"],
            "heading": row.get("heading"),
            "speed": row.get("speed"),
            "updated_at": parse_timestamp(row.get("updated_at")) or datetime.now(timezone.utc),
        }
        existed = await self._run(self._upsert, params)

        op = ChangeOperation.update if existed else ChangeOperation.insert
        self.publish(ChangeEvent(operation=op, new_row=params))

    # ---------- change stream ----------

    def publish(self, event: ChangeEvent) -> None:
        for callback in list(self._listeners):
            callback(event)

    async def subscribe_locations(self, callback: LocationCallback) -> Subscription:
        self._listeners.append(callback)
        logger.debug(f"Location listener added ({len(self._listeners)} total)")

        async def _close() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return Subscription(_close)
