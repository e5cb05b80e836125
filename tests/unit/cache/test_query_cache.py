"""
Tests for the read-through query cache and its backends.
"""

import pytest

from app.infrastructure.cache import LocalCacheBackend, QueryCache, RedisCacheBackend
from app.infrastructure.cache import keys as cache_keys


class Clock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class CountingFetcher:
    def __init__(self, *values):
        self.values = list(values)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        value = self.values.pop(0)
        if isinstance(value, Exception):
            raise value
        return value


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def cache(clock):
    return QueryCache(LocalCacheBackend(max_entries=1000), default_ttl_seconds=60, clock=clock)


@pytest.mark.asyncio
async def test_fetcher_called_once_within_ttl_and_again_after(cache, clock):
    fetcher = CountingFetcher("first", "second")

    assert await cache.get("k", fetcher, ttl_seconds=30) == "first"
    clock.now += 29
    assert await cache.get("k", fetcher, ttl_seconds=30) == "first"
    assert fetcher.calls == 1

    clock.now += 2
    assert await cache.get("k", fetcher, ttl_seconds=30) == "second"
    assert fetcher.calls == 2

    stats = await cache.stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 2


@pytest.mark.asyncio
async def test_stale_entry_served_when_fetcher_fails(cache, clock):
    await cache.get("prefs", CountingFetcher({"days": 30}), ttl_seconds=10)
    clock.now += 60

    result = await cache.get("prefs", CountingFetcher(RuntimeError("db down")), ttl_seconds=10)

    assert result == {"days": 30}
    assert (await cache.stats())["fallbacks"] == 1


@pytest.mark.asyncio
async def test_fetcher_failure_without_entry_propagates(cache):
    with pytest.raises(RuntimeError, match="db down"):
        await cache.get("missing", CountingFetcher(RuntimeError("db down")))


@pytest.mark.asyncio
async def test_lru_eviction_at_capacity(clock):
    cache = QueryCache(LocalCacheBackend(max_entries=3), clock=clock)
    for key in ("a", "b", "c"):
        await cache.set(key, key)

    # touching "a" makes "b" the least recently used
    await cache.get("a", CountingFetcher("unused"))
    await cache.set("d", "d")

    assert await cache.peek("b") is None
    assert await cache.peek("a") == "a"
    assert await cache.peek("d") == "d"
    stats = await cache.stats()
    assert stats["evictions"] == 1
    assert stats["size"] == 3


@pytest.mark.asyncio
async def test_sweep_removes_expired_entries(cache, clock):
    await cache.set("short", 1, ttl_seconds=5)
    await cache.set("long", 2, ttl_seconds=500)
    clock.now += 10

    assert await cache.sweep() == 1
    assert await cache.peek("long") == 2
    assert (await cache.stats())["size"] == 1


@pytest.mark.asyncio
async def test_delete_pattern_uses_glob(cache):
    await cache.set(cache_keys.sync_preferences("u1", "gmail"), {})
    await cache.set(cache_keys.sync_preferences("u1", "calendar"), {})
    await cache.set(cache_keys.job_counts("u1"), {})
    await cache.set(cache_keys.sync_preferences("u2", "gmail"), {})

    assert await cache.delete_pattern("sync_prefs:u1:*") == 2
    assert await cache_keys.invalidate_user(cache, "u1") == 1
    assert await cache.peek(cache_keys.sync_preferences("u2", "gmail")) == {}


@pytest.mark.asyncio
async def test_invalidate_user_leaves_users_sharing_a_prefix(cache):
    await cache.set(cache_keys.sync_preferences("u1", "gmail"), {})
    await cache.set(cache_keys.integration_expiry("u1", "google", "gmail"), "x")
    await cache.set(cache_keys.job_counts("u1"), {})
    await cache.set(cache_keys.sync_preferences("u10", "gmail"), {"keep": True})
    await cache.set(cache_keys.integration_expiry("u10", "google", "gmail"), "y")
    await cache.set(cache_keys.job_counts("u10"), {"keep": True})

    assert await cache_keys.invalidate_user(cache, "u1") == 3
    assert await cache.peek(cache_keys.sync_preferences("u10", "gmail")) == {"keep": True}
    assert await cache.peek(cache_keys.integration_expiry("u10", "google", "gmail")) == "y"
    assert await cache.peek(cache_keys.job_counts("u10")) == {"keep": True}


@pytest.mark.asyncio
async def test_redis_backend_round_trip_and_fallback(fake_redis, clock):
    cache = QueryCache(RedisCacheBackend(fake_redis, stale_grace_seconds=3600), clock=clock)

    assert await cache.get("k", CountingFetcher({"a": 1}), ttl_seconds=10) == {"a": 1}
    assert "qc:k" in fake_redis.store

    clock.now += 20
    assert await cache.get("k", CountingFetcher(RuntimeError("down")), ttl_seconds=10) == {"a": 1}

    assert await cache.delete_pattern("*") == 1
    assert fake_redis.store == {}


@pytest.mark.asyncio
async def test_sweeper_lifecycle(cache):
    cache.start_sweeper()
    assert cache._sweeper is not None

    await cache.stop()
    assert cache._sweeper is None
