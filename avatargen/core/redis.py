"""
Redis Connection Manager
Provides the asyncio Redis client used for cross-process change notification.
"""

import logging
from typing import Optional

from redis.asyncio import Redis, ConnectionPool
from redis.exceptions import ConnectionError, TimeoutError

logger = logging.getLogger(__name__)


class RedisManager:
    """
    Manages an asyncio Redis connection pool.

    Features:
    - Connection pooling for efficient resource usage
    - Health checks
    - Explicit close on shutdown
    """

    def __init__(self, url: str):
        self.url = url
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None

    def _create_pool(self) -> ConnectionPool:
        """Create Redis connection pool."""
        return ConnectionPool.from_url(
            self.url,
            max_connections=10,
            socket_connect_timeout=5,
            retry_on_timeout=True,
            decode_responses=True,
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
            return {
                "status": "healthy" if ping_result else "unhealthy",
                "connected": True,
                "url": self._mask_url(self.url),
            }
        except (ConnectionError, TimeoutError) as e:
            logger.error(f"Redis health check failed: {e}")
            return {
                "status": "unhealthy",
                "connected": False,
                "error": str(e),
                "url": self._mask_url(self.url),
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


__all__ = ["RedisManager"]
