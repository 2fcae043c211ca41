"""
Shopify webhook intake and the durable queue that processes it
"""

from .models import KNOWN_TOPICS, parse_webhook_event, webhook_event_adapter
from .processor import DrainResult, RetryPolicy, WebhookQueueProcessor, log_exhausted_item
from .repository import WebhookQueueRepository
from .shopify_webhook_verifier import ShopifyWebhookVerifier
from .topic_handlers import TopicHandler, build_topic_handlers

__all__ = [
    "KNOWN_TOPICS",
    "parse_webhook_event",
    "webhook_event_adapter",
    "DrainResult",
    "RetryPolicy",
    "WebhookQueueProcessor",
    "log_exhausted_item",
    "WebhookQueueRepository",
    "ShopifyWebhookVerifier",
    "TopicHandler",
    "build_topic_handlers",
]
