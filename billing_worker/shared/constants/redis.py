"""
Redis-specific constants
"""

DEFAULT_REDIS_PORT = 6379
DEFAULT_REDIS_DB = 0
DEFAULT_REDIS_TLS = False

# Cache key prefix for read-through entries, keyed as <prefix>:<shop>:<resource>
CACHE_KEY_PREFIX = "billing-worker:cache"
DEFAULT_CACHE_TTL_SECONDS = 30

__all__ = [
    "DEFAULT_REDIS_PORT",
    "DEFAULT_REDIS_DB",
    "DEFAULT_REDIS_TLS",
    "CACHE_KEY_PREFIX",
    "DEFAULT_CACHE_TTL_SECONDS",
]
