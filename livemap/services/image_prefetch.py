from __future__ import annotations

import asyncio
from collections import OrderedDict
from typing import Optional, Set

import httpx
from loguru import logger

from livemap.core.config import IMAGE_PREFETCH_ENABLED
from livemap.core.map_config import IMAGE_PREFETCH_MAX_SEEN


class ImagePrefetcher:
    """
    Fire-and-forget warm-up of avatar URLs.

    A URL is fetched once while it stays among the `max_seen` most recently
    requested ones; the prefetcher is shared by every session, so older
    entries are evicted rather than kept forever. Failures are logged at
    DEBUG and otherwise ignored; nothing here ever raises into the caller.
    """

    def __init__(
        self,
        enabled: bool = IMAGE_PREFETCH_ENABLED,
        timeout: float = 10,
        max_seen: int = IMAGE_PREFETCH_MAX_SEEN,
    ):
        self.enabled = enabled
        self.max_seen = max_seen
        self._timeout = timeout
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._tasks: Set[asyncio.Task] = set()

    def prefetch(self, url: Optional[str]) -> bool:
        if not self.enabled or not url:
            return False

        if url in self._seen:
            self._seen.move_to_end(url)
            return False

        self._seen[url] = None
        while len(self._seen) > self.max_seen:
            self._seen.popitem(last=False)

        task = asyncio.create_task(self._fetch(url))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _fetch(self, url: str) -> None:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=True) as client:
                resp = await client.get(url)
            logger.debug(f"Prefetched {url} -> {resp.status_code}")
        except httpx.HTTPError as exc:
            logger.debug(f"Prefetch of {url} ignored: {exc}")

    async def aclose(self) -> None:
        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        self._seen.clear()
