"""
Storage backends for QueryCache.

LocalCacheBackend keeps entries in process memory and is only correct for a
single-instance deployment. RedisCacheBackend shares entries between
instances through the pooled Redis client.
"""

import fnmatch
import json
from collections import OrderedDict
from dataclasses import asdict, dataclass
from typing import Any, Protocol

from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class CacheEntry:
    key: str
    data: Any
    expires_at: float
    hit_count: int = 0
    last_accessed: float = 0.0

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class CacheBackend(Protocol):
    async def get_entry(self, key: str) -> CacheEntry | None: ...

    async def put_entry(self, entry: CacheEntry) -> int:
        """Store the entry and return how many other entries were evicted."""
        ...

    async def touch(self, entry: CacheEntry) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def delete_pattern(self, pattern: str) -> int: ...

    async def clear(self) -> None: ...

    async def purge_expired(self, now: float) -> int: ...

    async def size(self) -> int: ...


class LocalCacheBackend:
    """
    In-memory LRU map. Insertion order doubles as access order: hits move an
    entry to the end, eviction pops from the front.

    Expired entries stay until the sweep so they can serve as a fallback
    when a refetch fails.
    """

    def __init__(self, max_entries: int = 1000):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

    async def get_entry(self, key: str) -> CacheEntry | None:
        return self._entries.get(key)

    async def put_entry(self, entry: CacheEntry) -> int:
        evicted = 0
        if entry.key in self._entries:
            self._entries.move_to_end(entry.key)
        else:
            while len(self._entries) >= self.max_entries:
                lru_key, _ = self._entries.popitem(last=False)
                evicted += 1
                logger.debug("Cache entry evicted", key=lru_key)
        self._entries[entry.key] = entry
        return evicted

    async def touch(self, entry: CacheEntry) -> None:
        if entry.key in self._entries:
            self._entries.move_to_end(entry.key)

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def delete_pattern(self, pattern: str) -> int:
        matched = [key for key in self._entries if fnmatch.fnmatchcase(key, pattern)]
        for key in matched:
            del self._entries[key]
        return len(matched)

    async def clear(self) -> None:
        self._entries.clear()

    async def purge_expired(self, now: float) -> int:
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def size(self) -> int:
        return len(self._entries)

    async def ping(self) -> bool:
        return True


class RedisCacheBackend:
    """
    Entries are JSON documents under ``{prefix}{key}``. Redis keeps each one
    for ``stale_grace_seconds`` past its logical expiry so a failed refetch
    can still fall back to it. Capacity is left to the server's maxmemory
    policy.
    """

    def __init__(self, redis_client, prefix: str = "qc:", stale_grace_seconds: int = 3600):
        self.redis = redis_client
        self.prefix = prefix
        self.stale_grace_seconds = stale_grace_seconds

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _decode(self, raw: str | None) -> CacheEntry | None:
        if not raw:
            return None
        try:
            return CacheEntry(**json.loads(raw))
        except (TypeError, ValueError) as e:
            logger.warning("Discarding unreadable cache entry", error=str(e))
            return None

    async def _write(self, entry: CacheEntry, now: float) -> None:
        ttl = max(int(entry.expires_at - now), 0) + self.stale_grace_seconds
        await self.redis.set_with_ttl(self._key(entry.key), json.dumps(asdict(entry)), ttl)

    async def get_entry(self, key: str) -> CacheEntry | None:
        return self._decode(await self.redis.get(self._key(key)))

    async def put_entry(self, entry: CacheEntry) -> int:
        await self._write(entry, entry.last_accessed)
        return 0

    async def touch(self, entry: CacheEntry) -> None:
        await self._write(entry, entry.last_accessed)

    async def delete(self, key: str) -> bool:
        return await self.redis.delete(self._key(key))

    async def delete_pattern(self, pattern: str) -> int:
        keys = await self.redis.scan_keys(self._key(pattern))
        return await self.redis.delete_many(keys)

    async def clear(self) -> None:
        await self.delete_pattern("*")

    async def purge_expired(self, now: float) -> int:
        # Redis drops keys itself once the stale grace has passed
        return 0

    async def size(self) -> int:
        return len(await self.redis.scan_keys(self._key("*")))

    async def ping(self) -> bool:
        return await self.redis.ping()
