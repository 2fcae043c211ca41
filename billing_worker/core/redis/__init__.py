"""
Redis module for the billing worker
"""

from .client import get_redis_client, close_redis_client
from .cache import ReadThroughCache, get_cache

__all__ = ["get_redis_client", "close_redis_client", "ReadThroughCache", "get_cache"]
