"""
Redis Connection Manager
Provides the asyncio Redis client used by the pub/sub event channel.
"""

import logging
from typing import Optional
from redis.asyncio import Redis, ConnectionPool
from redis.exceptions import ConnectionError, TimeoutError
from functools import lru_cache

from genpipe.core.config import settings

logger = logging.getLogger(__name__)


class RedisManager:
    """
    Manages Redis connections with connection pooling.

    Features:
    - Connection pooling for efficient resource usage
    - Health checks
    - Singleton pattern via get_redis_manager()
    """

    _instance: Optional["RedisManager"] = None

    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.REDIS_URL
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None

    @classmethod
    def get_instance(cls) -> "RedisManager":
        """Get singleton instance of RedisManager."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def _create_pool(self) -> ConnectionPool:
        """Create Redis connection pool."""
        return ConnectionPool.from_url(
            self.url,
            max_connections=10,
            socket_connect_timeout=5,
            retry_on_timeout=True,
            decode_responses=True  # Snapshots are JSON text
        )

    def get_connection(self) -> Redis:
        """
        Get a Redis connection from the pool.

        Returns:
            Redis client instance
        """
        if self._pool is None:
            self._pool = self._create_pool()
            logger.info(f"Created Redis connection pool for {self._mask_url(self.url)}")

        if self._client is None:
            self._client = Redis(connection_pool=self._pool)

        return self._client

    async def health_check(self) -> dict:
        """
        Check Redis connection health.

        Returns:
            dict with status and info
        """
        try:
            client = self.get_connection()
            ping_result = await client.ping()
            info = await client.info("server")

            return {
                "status": "healthy" if ping_result else "unhealthy",
                "connected": True,
                "redis_version": info.get("redis_version", "unknown"),
                "url": self._mask_url(self.url)
            }
        except (ConnectionError, TimeoutError) as e:
            logger.error(f"Redis health check failed: {e}")
            return {
                "status": "unhealthy",
                "connected": False,
                "error": str(e),
                "url": self._mask_url(self.url)
            }

    def _mask_url(self, url: str) -> str:
        """Mask password in Redis URL for logging."""
        if "@" in url:
            # redis://:password@host:port -> redis://***@host:port
            parts = url.split("@")
            return f"redis://***@{parts[-1]}"
        return url

    async def close(self):
        """Close all connections in the pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self._pool is not None:
            await self._pool.disconnect()
            self._pool = None
            logger.info("Redis connection pool closed")


@lru_cache()
def get_redis_manager() -> RedisManager:
    """Get the singleton Redis manager instance."""
    return RedisManager.get_instance()


def get_redis() -> Redis:
    """Get a Redis connection (convenience function)."""
    return get_redis_manager().get_connection()


async def redis_health_check() -> dict:
    """Check Redis health (convenience function)."""
    return await get_redis_manager().health_check()


def job_channel(job_id: str) -> str:
    """Pub/sub channel carrying snapshots for one job."""
    return f"genpipe:jobs:{job_id}"


__all__ = [
    "RedisManager",
    "get_redis_manager",
    "get_redis",
    "redis_health_check",
    "job_channel",
]
