"""TTL cache in front of document fetches."""

import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from .notion import extract_page_id

logger = logging.getLogger("kbot.knowledge.cache")


@dataclass
class _Entry:
    content: str
    fetched_at: float


class DocumentCache:
    """
    Caches page content for ``ttl_seconds``.

    When a refresh fails and a stale copy exists, the stale copy is served
    and the error is logged; without a copy the error propagates.
    """

    def __init__(
        self,
        fetch: Callable[[str], Awaitable[str]],
        ttl_seconds: float = 600,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetch = fetch
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}

    @staticmethod
    def _key(ref: str) -> str:
        return extract_page_id(ref) or ref

    async def get(self, ref: str) -> str:
        key = self._key(ref)
        entry = self._entries.get(key)
        now = self._clock()

        if entry and now - entry.fetched_at < self._ttl:
            return entry.content

        try:
            content = await self._fetch(ref)
        except Exception as e:
            if entry:
                logger.warning("Refresh of %s failed, serving stale copy: %s", key[:8], e)
                return entry.content
            raise

        self._entries[key] = _Entry(content=content, fetched_at=now)
        return content

    def invalidate(self, ref: Optional[str]) -> bool:
        if not ref:
            return False
        removed = self._entries.pop(self._key(ref), None) is not None
        if removed:
            logger.debug("Invalidated cached page %s", self._key(ref)[:8])
        return removed

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
