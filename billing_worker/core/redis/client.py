"""
Redis client for the billing worker
"""

import asyncio
from typing import Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from billing_worker.core.config.settings import settings
from billing_worker.core.logging import get_logger

logger = get_logger(__name__)

# Global Redis instance
_redis_instance: Optional[Redis] = None


async def get_redis_client() -> Redis:
    """Get or create Redis connection"""
    global _redis_instance

    if _redis_instance is None:
        redis_config = {
            "host": settings.redis.REDIS_HOST,
            "port": settings.redis.REDIS_PORT,
            "password": settings.redis.REDIS_PASSWORD or None,
            "db": settings.redis.REDIS_DB,
            "decode_responses": True,
            "socket_connect_timeout": 5,
            "socket_timeout": 5,
            "retry_on_timeout": True,
            "health_check_interval": 30,
        }

        # Only add TLS if explicitly enabled and not localhost
        if settings.redis.REDIS_TLS and settings.redis.REDIS_HOST != "localhost":
            redis_config["ssl"] = True
            redis_config["ssl_cert_reqs"] = None

        client = Redis(**redis_config)
        try:
            await asyncio.wait_for(client.ping(), timeout=5.0)
        except (RedisError, asyncio.TimeoutError) as e:
            logger.error(
                "Redis connection failed",
                host=settings.redis.REDIS_HOST,
                error=str(e),
                error_type=type(e).__name__,
            )
            await client.aclose()
            raise
        _redis_instance = client

    return _redis_instance


async def close_redis_client() -> None:
    """Close Redis connection"""
    global _redis_instance

    if _redis_instance is not None:
        try:
            await _redis_instance.aclose()
        except RedisError as e:
            logger.warning("Redis close failed", error=str(e))
        finally:
            _redis_instance = None
