"""
Redis Caching Layer

An explicitly constructed cache client that services receive through their
constructors. Every operation degrades gracefully: if Redis is unavailable
or errors, reads behave as misses and writes report failure.
"""
import json
import logging
from typing import Optional, Any
import redis
from redis.exceptions import ConnectionError, TimeoutError, RedisError
from core.config import settings

logger = logging.getLogger(__name__)


def connect_redis(url: Optional[str] = None) -> Optional[redis.Redis]:
    """Open a pooled Redis connection. Returns None if Redis unavailable."""
    try:
        client = redis.from_url(
            url or settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
            retry_on_timeout=True,
            health_check_interval=30
        )
        client.ping()
        logger.info("Redis connection established")
        return client
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Redis unavailable: {e}. Caching disabled.")
        return None


class CacheClient:
    """JSON cache over a Redis client. A ``None`` client disables caching."""

    def __init__(self, client: Optional[redis.Redis], default_ttl: Optional[int] = None):
        self._client = client
        self.default_ttl = default_ttl or settings.CACHE_TTL_DEFAULT

    @classmethod
    def from_settings(cls) -> "CacheClient":
        return cls(connect_redis(), settings.CACHE_TTL_DEFAULT)

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def get(self, key: str) -> Optional[Any]:
        """Get value from cache. Returns None if not found or Redis unavailable."""
        if not self._client:
            return None

        try:
            value = self._client.get(key)
            if value:
                return json.loads(value)
            return None
        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.warning(f"Cache get error for key {key}: {e}")
            return None

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Set value in cache. Returns True if successful, False otherwise."""
        if not self._client:
            return False

        try:
            self._client.setex(
                key,
                ttl if ttl is not None else self.default_ttl,
                json.dumps(value, default=str)  # default=str handles datetime, UUID, etc.
            )
            return True
        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.warning(f"Cache set error for key {key}: {e}")
            return False

    def delete(self, key: str) -> bool:
        """Delete key from cache. Returns True if successful, False otherwise."""
        if not self._client:
            return False

        try:
            self._client.delete(key)
            return True
        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.warning(f"Cache delete error for key {key}: {e}")
            return False

    def invalidate_pattern(self, pattern: str) -> int:
        """Invalidate all keys matching pattern. Returns count of deleted keys."""
        if not self._client:
            return 0

        try:
            keys = list(self._client.scan_iter(match=pattern))
            if keys:
                return self._client.delete(*keys)
            return 0
        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.warning(f"Cache invalidation error for pattern {pattern}: {e}")
            return 0
