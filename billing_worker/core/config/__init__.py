"""
Configuration module for the billing worker
"""

from .settings import settings, Settings
from .settings import (
    DatabaseSettings,
    RedisSettings,
    ShopifySettings,
    QueueSettings,
    UsageSettings,
    LoggingSettings,
)

__all__ = [
    "settings",
    "Settings",
    "DatabaseSettings",
    "RedisSettings",
    "ShopifySettings",
    "QueueSettings",
    "UsageSettings",
    "LoggingSettings",
]
