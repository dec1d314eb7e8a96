"""
JSON cache on top of Redis with graceful degradation.

Cache failures must never fail a redirect: when Redis is disabled or an
operation raises, reads behave as a cache miss and writes are skipped.
"""

import json
from typing import Any, Optional

from loguru import logger
from redis.exceptions import RedisError

from app.core.redis import redis_manager

ROUTING_CACHE_PREFIX = "routing:"
URL_SLUG_CACHE_PREFIX = "url:slug:"


def routing_cache_key(url_id: Any) -> str:
    """Key of the cached active rule set of a link."""
    return f"{ROUTING_CACHE_PREFIX}{url_id}"


def url_slug_cache_key(slug: str) -> str:
    """Key of the cached slug -> link resolution entry."""
    return f"{URL_SLUG_CACHE_PREFIX}{slug}"


class CacheService:
    """
    Key-value cache storing JSON documents with a TTL.

    Args:
        client: Optional Redis-compatible async client. When omitted the
            shared pool from ``redis_manager`` is used.
        enabled: Turn the cache off entirely (every get is a miss)
    """

    def __init__(self, client: Any = None, enabled: Optional[bool] = None):
        self._client = client
        self.enabled = redis_manager.is_enabled if enabled is None else enabled

    async def _get_client(self) -> Any:
        if self._client is None:
            self._client = await redis_manager.get_client()
        return self._client

    async def get(self, key: str) -> Optional[Any]:
        """Return the decoded value stored at ``key`` or None."""
        if not self.enabled:
            return None

        try:
            client = await self._get_client()
            raw = await client.get(key)
        except (RedisError, ConnectionError, OSError) as e:
            logger.warning(f"Cache get error for key {key}: {e}")
            return None

        if raw is None:
            return None

        try:
            return json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Discarding undecodable cache entry {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Store ``value`` as JSON, expiring after ``ttl`` seconds when given."""
        if not self.enabled:
            return

        try:
            payload = json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            logger.error(f"Cache value for key {key} is not serializable: {e}")
            return

        try:
            client = await self._get_client()
            if ttl:
                await client.set(key, payload, ex=ttl)
            else:
                await client.set(key, payload)
        except (RedisError, ConnectionError, OSError) as e:
            logger.warning(f"Cache set error for key {key}: {e}")

    async def delete(self, *keys: str) -> None:
        """Remove ``keys`` from the cache."""
        if not self.enabled or not keys:
            return

        try:
            client = await self._get_client()
            await client.delete(*keys)
        except (RedisError, ConnectionError, OSError) as e:
            logger.warning(f"Cache delete error for keys {keys}: {e}")
