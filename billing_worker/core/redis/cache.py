"""
Short-TTL read-through cache keyed by (shop, resource)

The database stays the system of record: the cache is only consulted for
reads served to clients, writers invalidate after committing, and any Redis
failure degrades to a direct load.
"""

import json
from typing import Any, Awaitable, Callable, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from billing_worker.core.config.settings import settings
from billing_worker.core.logging import get_logger
from billing_worker.shared.constants.redis import CACHE_KEY_PREFIX
from .client import get_redis_client

logger = get_logger(__name__)


class ReadThroughCache:
    """JSON read-through cache; a None client disables caching"""

    def __init__(self, redis: Optional[Redis], ttl_seconds: int = 30):
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    @property
    def enabled(self) -> bool:
        return self.redis is not None

    @staticmethod
    def key(shop: str, resource: str) -> str:
        return f"{CACHE_KEY_PREFIX}:{shop}:{resource}"

    async def get_or_load(
        self,
        shop: str,
        resource: str,
        loader: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Return the cached value or load, store and return it"""
        if not self.enabled:
            return await loader()

        key = self.key(shop, resource)
        try:
            cached = await self.redis.get(key)
            if cached is not None:
                return json.loads(cached)
        except RedisError as e:
            logger.warning("Cache read failed, loading directly", key=key, error=str(e))
            return await loader()

        value = await loader()
        try:
            await self.redis.set(key, json.dumps(value, default=str), ex=self.ttl_seconds)
        except RedisError as e:
            logger.warning("Cache write failed", key=key, error=str(e))
        return value

    async def invalidate(self, shop: str, resource: Optional[str] = None) -> int:
        """Drop one resource, or every cached resource for the shop"""
        if not self.enabled:
            return 0

        try:
            if resource is not None:
                return await self.redis.delete(self.key(shop, resource))

            keys = [k async for k in self.redis.scan_iter(match=self.key(shop, "*"))]
            if not keys:
                return 0
            return await self.redis.delete(*keys)
        except RedisError as e:
            # Entries expire on their own within the TTL
            logger.warning("Cache invalidation failed", shop=shop, error=str(e))
            return 0


async def get_cache() -> ReadThroughCache:
    """Build the application cache from settings"""
    if not settings.redis.CACHE_ENABLED:
        return ReadThroughCache(None)
    return ReadThroughCache(
        await get_redis_client(), ttl_seconds=settings.redis.CACHE_TTL_SECONDS
    )
