# leadflow/services/redis_client.py
import asyncio
import time
import uuid

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from leadflow.config import settings
from leadflow.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class FastRedisClient:
    """Pooled Redis client with fail-soft helpers and a token-owned lock."""

    # Delete the lock only if we still own it
    RELEASE_LOCK_LUA_SCRIPT = """
    if redis.call('GET', KEYS[1]) == ARGV[1] then
        return redis.call('DEL', KEYS[1])
    end
    return 0
    """

    LOCK_POLL_INTERVAL_S = 0.05

    def __init__(self):
        self.pool = None
        self.client = None
        self._initialized = False

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        try:
            self.pool = ConnectionPool.from_url(
                settings.REDIS_URL,
                max_connections=settings.REDIS_MAX_CONNECTIONS,
                retry_on_timeout=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                health_check_interval=30,
                decode_responses=True,
            )

            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True
            logger.info(
                "Redis client initialized successfully",
                max_connections=settings.REDIS_MAX_CONNECTIONS,
            )

        except Exception as e:
            logger.error("Failed to initialize Redis client", error=str(e))
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
            logger.info("Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))

    async def _ensure_initialized(self):
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()

    async def ping(self) -> bool:
        """Test Redis connection"""
        try:
            await self._ensure_initialized()
            return bool(await self.client.ping())
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def acquire_lock(self, key: str, ttl_ms: int, wait_s: float) -> str | None:
        """
        Try to take `key` as a lock, polling for up to `wait_s` seconds.

        Returns:
            Owner token on success, None if the lock could not be taken or
            Redis is unavailable.
        """
        token = uuid.uuid4().hex
        deadline = time.monotonic() + wait_s

        try:
            await self._ensure_initialized()
            while True:
                if await self.client.set(key, token, nx=True, px=ttl_ms):
                    return token
                if time.monotonic() >= deadline:
                    logger.warning("Redis lock wait timed out", key=key[:60], wait_s=wait_s)
                    return None
                await asyncio.sleep(self.LOCK_POLL_INTERVAL_S)
        except Exception as e:
            logger.error("Redis lock acquire failed", key=key[:60], error=str(e))
            return None

    async def release_lock(self, key: str, token: str) -> bool:
        try:
            await self._ensure_initialized()
            released = await self.client.eval(self.RELEASE_LOCK_LUA_SCRIPT, 1, key, token)
            return bool(released)
        except Exception as e:
            logger.error("Redis lock release failed", key=key[:60], error=str(e))
            return False


# Global instance
fast_redis = FastRedisClient()
