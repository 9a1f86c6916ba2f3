from __future__ import annotations

import asyncio
from typing import Optional, Set

from loguru import logger
from pydantic import ValidationError

from livemap.core.map_config import REALTIME_ADMIT_UNKNOWN, REALTIME_QUEUE_MAXSIZE
from livemap.schemas.map_data import ChangeEvent, LiveLocation
from livemap.services.backend import MapBackend, Subscription
from livemap.services.live_cache import LiveDataCache


class RealtimeMergeSink:
    """
    Folds the backend's location change stream into a LiveDataCache.

    Events are queued and applied one at a time by a single consumer task, so
    two updates for the same user land in arrival order. A missing profile is
    fetched in its own task; the consumer never waits on it.
    """

    def __init__(
        self,
        cache: LiveDataCache,
        backend: MapBackend,
        maxsize: int = REALTIME_QUEUE_MAXSIZE,
        admit_unknown: bool = REALTIME_ADMIT_UNKNOWN,
    ):
        self.cache = cache
        self._backend = backend
        self.admit_unknown = admit_unknown
        self.dropped = 0

        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._started = False
        self._subscription: Optional[Subscription] = None
        self._consumer: Optional[asyncio.Task] = None
        self._profile_tasks: Set[asyncio.Task] = set()

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> bool:
        """Subscribe once. Returns False when already subscribed."""
        if self._started:
            return False
        self._started = True

        self._consumer = asyncio.create_task(self._run())
        try:
            self._subscription = await self._backend.subscribe_locations(self.offer)
        except Exception:
            self._started = False
            self._consumer.cancel()
            raise

        logger.info("Realtime merge sink started")
        return True

    def offer(self, event: ChangeEvent) -> bool:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Realtime queue full, dropped {event.operation.value} event ({self.dropped} total)")
            return False
        return True

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                self.handle(event)
            except Exception:
                logger.exception("Realtime event could not be applied")
            finally:
                self._queue.task_done()

    def handle(self, event: ChangeEvent) -> Optional[LiveLocation]:
        row = event.new_row
        if not row or not row.get("user_id"):
            # DELETE and other row-less events carry nothing to merge
            logger.debug(f"Skipping {event.operation.value} event without a row")
            return None

        try:
            loc = LiveLocation.model_validate(row)
        except ValidationError as exc:
            logger.warning(f"Skipping malformed location row: {exc}")
            return None

        if not self.admit_unknown and loc.user_id not in self.cache.relevant_ids:
            return None

        self.cache.apply_location_update(loc)

        # read the live store, not anything captured at subscribe time
        if not self.cache.has_profile(loc.user_id):
            task = asyncio.create_task(self.cache.ensure_profile(loc.user_id))
            self._profile_tasks.add(task)
            task.add_done_callback(self._profile_tasks.discard)

        return loc

    async def drain(self) -> None:
        """Wait until every queued event and the profile fetches it started are done."""
        await self._queue.join()
        while self._profile_tasks:
            await asyncio.gather(*list(self._profile_tasks), return_exceptions=True)

    async def stop(self) -> None:
        if self._subscription is not None:
            await self._subscription.unsubscribe()
            self._subscription = None

        pending = list(self._profile_tasks)
        if self._consumer is not None:
            pending.append(self._consumer)
            self._consumer = None

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        self._profile_tasks.clear()

        # the consumer is gone, so settle whatever it never picked up
        discarded = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
            discarded += 1
        if discarded:
            logger.info(f"Discarded {discarded} queued realtime events on stop")

        self._started = False
        logger.info("Realtime merge sink stopped")
