"""Cache key builders and invalidation helpers."""

from app.infrastructure.cache.query_cache import QueryCache


def sync_preferences(user_id: str, service: str) -> str:
    return f"sync_prefs:{user_id}:{service}"


def integration_expiry(user_id: str, provider: str, service: str) -> str:
    return f"integration_expiry:{user_id}:{provider}:{service}"


def job_counts(user_id: str) -> str:
    return f"job_counts:{user_id}"


async def invalidate_jobs(cache: QueryCache, user_id: str) -> None:
    await cache.delete(job_counts(user_id))


async def invalidate_integration(cache: QueryCache, user_id: str, provider: str, service: str) -> None:
    await cache.delete(integration_expiry(user_id, provider, service))


async def invalidate_user(cache: QueryCache, user_id: str) -> int:
    # the user id is either the last key segment or a whole middle one
    removed = await cache.delete_pattern(f"*:{user_id}")
    return removed + await cache.delete_pattern(f"*:{user_id}:*")
