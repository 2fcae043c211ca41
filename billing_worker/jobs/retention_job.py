"""
Retention Job

Purges finished queue items, processing logs and expired usage events.
"""

from typing import Any, Dict

from billing_worker.core.database.session import with_database_retry
from billing_worker.core.logging import get_logger
from billing_worker.domains.usage.services import UsageLedger
from billing_worker.webhooks import WebhookQueueProcessor

logger = get_logger(__name__)


class RetentionJob:
    def __init__(self, processor: WebhookQueueProcessor, usage_ledger: UsageLedger):
        self.processor = processor
        self.usage_ledger = usage_ledger

    async def run(self) -> Dict[str, Any]:
        queue = await with_database_retry(self.processor.cleanup, "cleanup_webhook_queue")
        usage_events = await with_database_retry(
            self.usage_ledger.purge_expired_events, "purge_usage_events"
        )
        result = {
            "status": "completed",
            "completed_items_deleted": queue["completed"],
            "failed_items_deleted": queue["failed"],
            "logs_deleted": queue["logs"],
            "usage_events_deleted": usage_events,
        }
        logger.info("Retention job completed", **result)
        return result
