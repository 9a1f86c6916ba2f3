import asyncio
import os
import tempfile
from collections import Counter
from datetime import datetime, timezone

# must be set before anything imports livemap.core.config
_TMP_DIR = tempfile.mkdtemp(prefix="livemap-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'livemap.db')}"
os.environ["MAP_BACKEND"] = "sql"
os.environ["AUTH_VERIFY_MODE"] = "header"
os.environ["IMAGE_PREFETCH_ENABLED"] = "false"
os.environ["LOG_LEVEL"] = "INFO"
os.environ["LOG_DIR"] = os.path.join(_TMP_DIR, "logs")

import pytest

from livemap.core.db import Base, SessionLocal, engine
from livemap.core.errors import BackendError
from livemap.core.init_db import init_db
from livemap.models.friendship import Friendship
from livemap.models.location import Location
from livemap.models.profile import Profile
from livemap.services.backend import MapBackend, Subscription
from livemap.services.image_prefetch import ImagePrefetcher


VIEWER = "11111111-1111-1111-1111-111111111111"
FRIEND_A = "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa"
FRIEND_B = "bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb"
STRANGER_C = "cccccccc-cccc-cccc-cccc-cccccccccccc"
PENDING_D = "dddddddd-dddd-dddd-dddd-dddddddddddd"
FAR_F = "ffffffff-ffff-ffff-ffff-ffffffffffff"


# ------------------------------------------------------------------
# SQL fixtures
# ------------------------------------------------------------------

@pytest.fixture
def db():
    init_db(engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def add_profile(db, user_id, display_name=None, username=None, photo_url=None, visibility="everyone"):
    db.add(
        Profile(
            id=user_id,
            display_name=display_name,
            username=username,
            photo_url=photo_url,
            location_visibility=visibility,
        )
    )
    db.commit()


def add_location(db, user_id, lat, lng, updated_at=None, heading=None, speed=None):
    db.add(
        Location(
            user_id=user_id,
            lat=lat,
            lng=lng,
            heading=heading,
            speed=speed,
            updated_at=updated_at or datetime.now(timezone.utc),
        )
    )
    db.commit()


def add_friendship(db, user_id, friend_id, status="accepted"):
    db.add(Friendship(user_id=user_id, friend_id=friend_id, status=status))
    db.commit()


@pytest.fixture
def seeded(db):
    """
    VIEWER at (37.0, -122.0) with accepted friends A (no location yet) and B,
    a pending request from D (far away), stranger C ~110 m away and F ~5 km away.
    """
    for uid, name in [
        (VIEWER, "Viewer Person"),
        (FRIEND_A, "Alice Adams"),
        (FRIEND_B, None),
        (STRANGER_C, "Carl"),
        (PENDING_D, "Dora"),
        (FAR_F, "Faye"),
    ]:
        add_profile(db, uid, display_name=name, username=name.split()[0].lower() if name else "bee")

    add_friendship(db, VIEWER, FRIEND_A)
    add_friendship(db, FRIEND_B, VIEWER)
    add_friendship(db, PENDING_D, VIEWER, status="pending")

    add_location(db, VIEWER, 37.0, -122.0)
    add_location(db, FRIEND_B, 37.01, -122.01)
    add_location(db, STRANGER_C, 37.001, -122.0)
    add_location(db, PENDING_D, 38.0, -121.0)
    add_location(db, FAR_F, 37.045, -122.0)
    return db


# ------------------------------------------------------------------
# Fake backend
# ------------------------------------------------------------------

class FakeBackend(MapBackend):
    """In-memory backend with switchable failures and gates for suspension tests."""

    def __init__(self, viewer_id=None):
        self.viewer_id = viewer_id
        self.friendships = []
        self.locations = {}
        self.profiles = {}
        self.fail = set()
        self.gates = {}
        self.calls = Counter()
        self.listeners = []
        self.upserts = []

    async def _enter(self, name):
        self.calls[name] += 1
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        if name in self.fail:
            raise BackendError(f"{name} unavailable")

    async def current_user_id(self):
        await self._enter("current_user_id")
        return self.viewer_id

    async def fetch_accepted_friendships(self, viewer_id):
        await self._enter("fetch_accepted_friendships")
        return [
            r for r in self.friendships
            if r["status"] == "accepted" and viewer_id in (r["user_id"], r["friend_id"])
        ]

    async def fetch_locations_in_box(self, box):
        await self._enter("fetch_locations_in_box")
        return [dict(r) for r in self.locations.values() if box.contains(r["lat"], r["lng"])]

    async def fetch_locations(self, user_ids):
        await self._enter("fetch_locations")
        return [dict(self.locations[u]) for u in user_ids if u in self.locations]

    async def fetch_profiles(self, user_ids):
        await self._enter("fetch_profiles")
        return [dict(self.profiles[u]) for u in user_ids if u in self.profiles]

    async def fetch_profile(self, user_id):
        await self._enter("fetch_profile")
        row = self.profiles.get(user_id)
        return dict(row) if row else None

    async def upsert_location(self, row):
        await self._enter("upsert_location")
        self.upserts.append(dict(row))
        self.locations[row["user_id"]] = dict(row)

    async def subscribe_locations(self, callback):
        await self._enter("subscribe_locations")
        self.listeners.append(callback)

        async def _close():
            self.listeners.remove(callback)

        return Subscription(_close)

    def publish(self, event):
        for cb in list(self.listeners):
            cb(event)

    # helpers

    def add_profile(self, user_id, display_name=None, photo_url=None):
        self.profiles[user_id] = {
            "id": user_id,
            "username": None,
            "display_name": display_name,
            "photo_url": photo_url,
            "location_visibility": "everyone",
        }

    def add_location(self, user_id, lat, lng, updated_at=None):
        self.locations[user_id] = {
            "user_id": user_id,
            "lat": lat,
            "lng": lng,
            "heading": None,
            "speed": None,
            "updated_at": updated_at or datetime.now(timezone.utc).isoformat(),
        }

    def add_friendship(self, user_id, friend_id, status="accepted"):
        self.friendships.append({"user_id": user_id, "friend_id": friend_id, "status": status})


class RecordingPrefetcher(ImagePrefetcher):
    def __init__(self):
        super().__init__(enabled=True)
        self.urls = []

    def prefetch(self, url):
        if url:
            self.urls.append(url)
        return bool(url)


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def prefetcher():
    return RecordingPrefetcher()


async def wait_until(predicate, timeout=1.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)
