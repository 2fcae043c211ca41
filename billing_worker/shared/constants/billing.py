"""
Billing, queue and usage constants
"""

from decimal import Decimal

# Webhook queue
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_DRAIN_BATCH_SIZE = 5
DEFAULT_VISIBILITY_TIMEOUT_SECONDS = 300
DEFAULT_COMPLETED_RETENTION_HOURS = 24 * 7
DEFAULT_FAILED_RETENTION_DAYS = 30
DEFAULT_LOG_RETENTION_DAYS = 30

# Shopify webhook topic header -> queue topic
SHOPIFY_TOPIC_MAP = {
    "app/uninstalled": "APP_UNINSTALLED",
    "app_subscriptions/update": "APP_SUBSCRIPTIONS_UPDATE",
    "app_purchases_one_time/update": "APP_PURCHASES_ONE_TIME_UPDATE",
    "app_subscriptions/approaching_capped_amount": "APP_SUBSCRIPTIONS_APPROACHING_CAPPED_AMOUNT",
}

# Usage windows (seconds)
MINUTE_WINDOW_SECONDS = 60
DAY_WINDOW_SECONDS = 86400

# Usage notification thresholds (percent of cycle quota)
USAGE_WARNING_THRESHOLD = 80
USAGE_EXHAUSTED_THRESHOLD = 100

# Shopify rejects one-time charges below this amount
MIN_ONE_TIME_CHARGE = Decimal("0.50")

# Cancel reason written when a newer subscription takes over
SUPERSEDED_REASON = "superseded"
UNINSTALLED_REASON = "app_uninstalled"

__all__ = [
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_DRAIN_BATCH_SIZE",
    "DEFAULT_VISIBILITY_TIMEOUT_SECONDS",
    "DEFAULT_COMPLETED_RETENTION_HOURS",
    "DEFAULT_FAILED_RETENTION_DAYS",
    "DEFAULT_LOG_RETENTION_DAYS",
    "SHOPIFY_TOPIC_MAP",
    "MINUTE_WINDOW_SECONDS",
    "DAY_WINDOW_SECONDS",
    "USAGE_WARNING_THRESHOLD",
    "USAGE_EXHAUSTED_THRESHOLD",
    "MIN_ONE_TIME_CHARGE",
    "SUPERSEDED_REASON",
    "UNINSTALLED_REASON",
]
