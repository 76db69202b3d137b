# /telepharma/services/cache_service.py

import json
import logging
from typing import Any, Awaitable, Callable, Optional
import redis.asyncio as redis

from telepharma.config.settings import settings
from telepharma.utils.circuit_breaker import CircuitBreaker
from telepharma.utils.metrics import cache_operations

# This service manages all interactions with Redis. Redis only ever holds
# derived or short-lived data (recent order lists, processed message ids),
# so every method degrades to a cache miss when Redis is unavailable.

logger = logging.getLogger(__name__)


class CacheKeys:
    """A single source of truth for all cache keys."""
    RECENT_ORDERS = "orders:recent:{phone}"
    PROCESSED_MESSAGE = "webhook:processed:{message_id}"


class CacheService:
    def __init__(self, redis_url: Optional[str]):
        self.circuit_breaker = CircuitBreaker("redis")
        self.redis = None
        if not redis_url:
            logger.warning("No Redis URL configured; caching is disabled.")
            return
        try:
            self.redis_pool = redis.ConnectionPool.from_url(redis_url, max_connections=20)
            self.redis = redis.Redis(connection_pool=self.redis_pool)
        except (redis.RedisError, ValueError) as e:
            logger.critical(f"Failed to configure Redis at {redis_url}: {e}")
            self.redis = None

    async def get(self, key: str) -> Optional[str]:
        if not self.redis:
            return None
        try:
            result = await self.circuit_breaker.call(self.redis.get, key)
            cache_operations.labels(operation="get", status="hit" if result else "miss").inc()
            return result.decode('utf-8') if result else None
        except Exception as e:
            cache_operations.labels(operation="get", status="error").inc()
            logger.warning(f"Cache get failed for key {key}: {e}")
            return None

    async def set(self, key: str, value: str, ttl: int = 300):
        if not self.redis:
            return
        try:
            await self.circuit_breaker.call(self.redis.setex, key, ttl, value)
            cache_operations.labels(operation="set", status="success").inc()
        except Exception as e:
            cache_operations.labels(operation="set", status="error").inc()
            logger.warning(f"Cache set failed for key {key}: {e}")

    async def delete(self, key: str):
        if not self.redis:
            return
        try:
            await self.circuit_breaker.call(self.redis.delete, key)
            cache_operations.labels(operation="delete", status="success").inc()
        except Exception as e:
            cache_operations.labels(operation="delete", status="error").inc()
            logger.warning(f"Cache delete failed for key {key}: {e}")

    async def claim(self, key: str, ttl: int = 3600) -> bool:
        """
        Set-if-absent. Returns True when this caller is the first to claim
        ``key``. Without Redis every claim succeeds, so duplicates are
        processed rather than dropped.
        """
        if not self.redis:
            return True
        try:
            claimed = await self.circuit_breaker.call(self.redis.set, key, "1", ex=ttl, nx=True)
            cache_operations.labels(operation="claim", status="success" if claimed else "duplicate").inc()
            return bool(claimed)
        except Exception as e:
            cache_operations.labels(operation="claim", status="error").inc()
            logger.warning(f"Cache claim failed for key {key}: {e}")
            return True

    async def get_or_set(self, key: str, fetch_func: Callable[[], Awaitable[Any]], ttl: int = 300) -> Any:
        """
        Read-through: returns the cached JSON value, or awaits ``fetch_func``,
        caches its result and returns it. Errors from ``fetch_func`` propagate;
        only cache failures are absorbed.
        """
        cached_value = await self.get(key)
        if cached_value is not None:
            try:
                return json.loads(cached_value)
            except json.JSONDecodeError:
                logger.warning(f"Discarding undecodable cache entry for key {key}")
                await self.delete(key)

        fetched_value = await fetch_func()
        await self.set(key, json.dumps(fetched_value, default=str), ttl)
        return fetched_value

    async def ping(self) -> bool:
        if not self.redis:
            return False
        return bool(await self.redis.ping())

    async def close(self):
        if self.redis:
            await self.redis.aclose()


# Globally accessible instance
cache_service = CacheService(settings.redis_url)
