"""
Redis client management module.

This module provides a Redis client manager with connection pooling
for the shared key-value cache used by routing and redirect lookups.
"""

from typing import Optional

import redis.asyncio as redis
from loguru import logger
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import RedisError

from app.core.config import settings


class RedisClientManager:
    """
    Async Redis client manager with connection pooling.

    A single pool is shared by every cache user in the process. The pool is
    created lazily so that importing the module never opens a connection.
    """

    _instance: Optional["RedisClientManager"] = None

    def __new__(cls):
        """Singleton pattern to ensure only one Redis client manager exists."""
        if cls._instance is None:
            cls._instance = super(RedisClientManager, cls).__new__(cls)
            cls._instance._connection_pool = None
            cls._instance._client = None
            cls._instance._is_connected = False
        return cls._instance

    def _initialize(self) -> None:
        """Create the Redis connection pool."""
        try:
            self._connection_pool = redis.ConnectionPool.from_url(
                settings.REDIS_URI,
                max_connections=settings.REDIS_MAX_CONNECTIONS,
                decode_responses=True
            )
            logger.debug(f"Redis connection pool created for {settings.REDIS_HOST}:{settings.REDIS_PORT}")
        except (RedisError, ValueError) as e:
            logger.error(f"Failed to create Redis connection pool: {str(e)}")
            self._connection_pool = None

    @property
    def is_enabled(self) -> bool:
        """Whether caching through Redis is enabled for this process."""
        return settings.CACHE_ENABLED and bool(settings.REDIS_HOST)

    async def get_client(self) -> redis.Redis:
        """
        Get a Redis client instance from the connection pool.

        Returns:
            redis.Redis: Redis client instance

        Raises:
            ConnectionError: If the pool could not be created
        """
        if self._client is None:
            if self._connection_pool is None:
                self._initialize()

            if self._connection_pool is None:
                raise ConnectionError("Redis connection pool is not available")
            self._client = redis.Redis(connection_pool=self._connection_pool)

        return self._client

    async def ping(self) -> bool:
        """
        Test the Redis connection with a ping command.

        Returns:
            bool: True if successful, False otherwise
        """
        try:
            client = await self.get_client()
            result = await client.ping()
            self._is_connected = bool(result)
            return self._is_connected
        except (RedisError, ConnectionError) as e:
            logger.error(f"Redis ping failed: {str(e)}")
            self._is_connected = False
            return False

    async def close(self) -> None:
        """Close the Redis client and connection pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

        if self._connection_pool is not None:
            await self._connection_pool.disconnect()
            self._connection_pool = None

        self._is_connected = False
        logger.debug("Redis connections closed")


# Singleton instance
redis_manager = RedisClientManager()
