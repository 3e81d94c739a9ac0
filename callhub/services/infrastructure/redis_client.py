# callhub/services/infrastructure/redis_client.py
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from callhub.config import settings
from callhub.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class FastRedisClient:
    """
    Pooled Redis client used for call locks and billing timer snapshots.

    Every helper logs and returns a sentinel (None / False / empty) instead of
    raising, so callers decide whether a backend failure fails open or closed.
    """

    # Compare-and-delete: only the current holder may release a key.
    COMPARE_AND_DELETE_LUA = """
    if redis.call('GET', KEYS[1]) == ARGV[1] then
        return redis.call('DEL', KEYS[1])
    end
    return 0
    """

    def __init__(self, url: str | None = None, max_connections: int | None = None):
        self.url = url or settings.REDIS_URL
        self.max_connections = max_connections or settings.REDIS_MAX_CONNECTIONS
        self.pool = None
        self.client = None
        self._initialized = False

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        try:
            logger.info("Attempting Redis connection", url_preview=self.url[:30] + "...")

            self.pool = ConnectionPool.from_url(
                self.url,
                max_connections=self.max_connections,
                retry_on_timeout=True,
                retry_on_error=[redis.ConnectionError, redis.TimeoutError],
                socket_connect_timeout=10,
                socket_timeout=10,
                health_check_interval=30,
                decode_responses=True,
            )

            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True
            logger.info(
                "Fast Redis client initialized successfully",
                max_connections=self.max_connections,
            )

        except Exception as e:
            logger.error("Failed to initialize fast Redis client", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

    async def close(self):
        """Clean shutdown"""
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            self._initialized = False
            logger.info("Fast Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))

    async def _ensure_initialized(self):
        """Ensure Redis is initialized, fallback if not"""
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()
            if not self._initialized:
                raise ConnectionError("Redis client not available")

    async def ping(self) -> bool:
        """Test Redis connection"""
        try:
            await self._ensure_initialized()
            result = await self.client.ping()
            return bool(result)
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def get(self, key: str) -> str | None:
        try:
            await self._ensure_initialized()
            result = await self.client.get(key)
            return result if result else None
        except Exception as e:
            logger.error("Redis GET failed", key=key[:40], error=str(e))
            return None

    async def delete(self, key: str) -> bool:
        try:
            await self._ensure_initialized()
            result = await self.client.delete(key)
            return result > 0
        except Exception as e:
            logger.error("Redis DELETE failed", key=key[:40], error=str(e))
            return False

    async def set_if_absent(self, key: str, value: str, ttl_s: int) -> bool | None:
        """
        Atomic SET NX EX.

        Returns:
            True if the key was set, False if it already existed,
            None if the backend could not be reached.
        """
        try:
            await self._ensure_initialized()
            result = await self.client.set(key, value, nx=True, ex=ttl_s)
            return bool(result)
        except Exception as e:
            logger.error("Redis SET NX failed", key=key[:40], error=str(e))
            return None

    async def delete_if_equals(self, key: str, value: str) -> bool | None:
        """
        Delete key only while it still holds `value`.

        Returns:
            True if deleted, False if missing or held by someone else,
            None if the backend could not be reached.
        """
        try:
            await self._ensure_initialized()
            result = await self.client.eval(self.COMPARE_AND_DELETE_LUA, 1, key, value)
            return int(result) > 0
        except Exception as e:
            logger.error("Redis compare-and-delete failed", key=key[:40], error=str(e))
            return None

    async def hset_with_ttl(self, key: str, mapping: dict[str, str], ttl_s: int) -> bool:
        """Write a hash and its expiry in one transaction."""
        try:
            await self._ensure_initialized()
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(key, mapping=mapping)
                pipe.expire(key, ttl_s)
                await pipe.execute()
            return True
        except Exception as e:
            logger.error("Redis HSET failed", key=key[:40], error=str(e))
            return False

    async def hgetall(self, key: str) -> dict[str, str]:
        try:
            await self._ensure_initialized()
            result = await self.client.hgetall(key)
            return dict(result) if result else {}
        except Exception as e:
            logger.error("Redis HGETALL failed", key=key[:40], error=str(e))
            return {}

    async def scan_keys(self, pattern: str, batch_size: int = 100) -> list[str]:
        """Collect keys matching pattern using SCAN (never KEYS)."""
        try:
            await self._ensure_initialized()
            return [key async for key in self.client.scan_iter(match=pattern, count=batch_size)]
        except Exception as e:
            logger.error("Redis SCAN failed", pattern=pattern, error=str(e))
            return []


# Global instance
fast_redis = FastRedisClient()
