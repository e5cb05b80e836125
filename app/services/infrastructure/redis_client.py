# app/services/infrastructure/redis_client.py
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class FastRedisClient:
    """Pooled Redis client backing the shared cache.

    Reads and writes log and degrade (None/False) instead of raising so a
    Redis outage turns cache hits into misses rather than failed requests.
    """

    def __init__(self, url: str | None = None, max_connections: int = 20):
        self.url = url
        self.max_connections = max_connections
        self.pool = None
        self.client = None
        self._initialized = False

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        url = self.url or settings.REDIS_URL
        if not url:
            raise RuntimeError("REDIS_URL is not configured")

        try:
            logger.info("Attempting Redis connection", url_preview=url.split("@")[-1][:30])

            self.pool = ConnectionPool.from_url(
                url,
                max_connections=self.max_connections,
                retry_on_timeout=True,
                retry_on_error=[redis.ConnectionError, redis.TimeoutError],
                socket_connect_timeout=10,
                socket_timeout=10,
                health_check_interval=30,
                decode_responses=True,
            )
            self.client = redis.Redis(connection_pool=self.pool)
            await self.client.ping()

            self._initialized = True
            logger.info("Redis client initialized", max_connections=self.max_connections)

        except Exception as e:
            logger.error("Failed to initialize Redis client", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

    async def close(self):
        """Clean shutdown"""
        if self.client:
            await self.client.aclose()
        if self.pool:
            await self.pool.disconnect()
        self._initialized = False
        logger.info("Redis client closed")

    async def _ensure_initialized(self):
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()

    async def ping(self) -> bool:
        try:
            await self._ensure_initialized()
            return bool(await self.client.ping())
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def get(self, key: str) -> str | None:
        try:
            await self._ensure_initialized()
            return await self.client.get(key)
        except Exception as e:
            logger.error("Redis GET failed", key=key[:40], error=str(e))
            return None

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        try:
            await self._ensure_initialized()
            if ttl_s:
                result = await self.client.setex(key, ttl_s, value)
            else:
                result = await self.client.set(key, value)
            return bool(result)
        except Exception as e:
            logger.error("Redis SET failed", key=key[:40], error=str(e))
            return False

    async def delete(self, key: str) -> bool:
        try:
            await self._ensure_initialized()
            return await self.client.delete(key) > 0
        except Exception as e:
            logger.error("Redis DELETE failed", key=key[:40], error=str(e))
            return False

    async def delete_many(self, keys: list[str]) -> int:
        if not keys:
            return 0
        try:
            await self._ensure_initialized()
            return int(await self.client.delete(*keys))
        except Exception as e:
            logger.error("Redis bulk DELETE failed", key_count=len(keys), error=str(e))
            return 0

    async def scan_keys(self, match: str, count: int = 500) -> list[str]:
        """Collect keys matching a glob with SCAN (never KEYS)."""
        try:
            await self._ensure_initialized()
            return [key async for key in self.client.scan_iter(match=match, count=count)]
        except Exception as e:
            logger.error("Redis SCAN failed", match=match[:40], error=str(e))
            return []


# Global instance
fast_redis = FastRedisClient()
