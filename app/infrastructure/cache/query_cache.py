"""
Read-through TTL cache in front of the persistence layer.

One QueryCache is created at startup and handed to the services that need
it; there is no module-level instance.
"""

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from app.infrastructure.cache.backends import CacheBackend, CacheEntry
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    fallbacks: int = 0
    swept: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return round(self.hits / total * 100, 2) if total else 0.0


class QueryCache:
    def __init__(
        self,
        backend: CacheBackend,
        default_ttl_seconds: float = 300.0,
        sweep_interval_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.default_ttl_seconds = default_ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._stats = CacheStats()
        self._sweeper: asyncio.Task | None = None

    async def get(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[T]],
        ttl_seconds: float | None = None,
    ) -> T:
        """
        Return the cached value for ``key`` or load it with ``fetcher``.

        A live entry is returned without calling ``fetcher``. When the entry
        is missing or expired ``fetcher`` runs; if it raises and an expired
        entry is still around, that stale value is returned instead.
        """
        now = self._clock()
        entry = await self.backend.get_entry(key)

        if entry is not None and not entry.is_expired(now):
            entry.hit_count += 1
            entry.last_accessed = now
            await self.backend.touch(entry)
            self._stats.hits += 1
            return entry.data

        self._stats.misses += 1
        try:
            data = await fetcher()
        except Exception as e:
            if entry is None:
                raise
            self._stats.fallbacks += 1
            logger.warning(
                "Cache fetch failed, serving stale entry",
                key=key,
                stale_seconds=round(now - entry.expires_at, 1),
                error=str(e),
                error_type=type(e).__name__,
            )
            return entry.data

        await self.set(key, data, ttl_seconds)
        return data

    async def peek(self, key: str) -> Any | None:
        """Live value without counting a hit or calling a fetcher."""
        entry = await self.backend.get_entry(key)
        if entry is None or entry.is_expired(self._clock()):
            return None
        return entry.data

    async def set(self, key: str, data: Any, ttl_seconds: float | None = None) -> None:
        now = self._clock()
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        entry = CacheEntry(key=key, data=data, expires_at=now + ttl, last_accessed=now)
        evicted = await self.backend.put_entry(entry)
        if evicted:
            self._stats.evictions += evicted

    async def delete(self, key: str) -> bool:
        return await self.backend.delete(key)

    async def delete_pattern(self, pattern: str) -> int:
        """Delete keys matching a glob (``*`` and ``?``)."""
        removed = await self.backend.delete_pattern(pattern)
        if removed:
            logger.debug("Cache keys invalidated", pattern=pattern, removed=removed)
        return removed

    async def clear(self) -> None:
        await self.backend.clear()

    async def sweep(self) -> int:
        removed = await self.backend.purge_expired(self._clock())
        self._stats.swept += removed
        if removed:
            logger.debug("Cache sweep removed expired entries", removed=removed)
        return removed

    async def stats(self) -> dict[str, Any]:
        return {
            "hits": self._stats.hits,
            "misses": self._stats.misses,
            "evictions": self._stats.evictions,
            "fallbacks": self._stats.fallbacks,
            "swept": self._stats.swept,
            "size": await self.backend.size(),
            "hit_rate": self._stats.hit_rate,
        }

    async def ping(self) -> bool:
        return await self.backend.ping()

    def start_sweeper(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="query-cache-sweeper")

    async def stop(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sweeper
        self._sweeper = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                await self.sweep()
            except Exception as e:
                logger.error("Cache sweep failed", error=str(e))
