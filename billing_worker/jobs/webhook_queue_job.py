"""
Webhook Queue Job

Runs every few minutes: recovers abandoned claims, then drains a batch.
"""

from typing import Any, Dict, Optional

from billing_worker.core.database.session import with_database_retry
from billing_worker.core.logging import get_logger
from billing_worker.shared.helpers import now_utc
from billing_worker.webhooks import WebhookQueueProcessor

logger = get_logger(__name__)


class WebhookQueueJob:
    def __init__(self, processor: WebhookQueueProcessor):
        self.processor = processor

    async def run(self, max_items: Optional[int] = None) -> Dict[str, Any]:
        """
        Drain the queue once.

        Database failures propagate so the cron caller sees the run fail;
        handler failures are already retry bookkeeping inside the drain.
        """
        job_start_time = now_utc()

        released = await with_database_retry(
            self.processor.release_stale, "release_stale_claims"
        )
        drained = await with_database_retry(
            lambda: self.processor.drain(max_items), "drain_webhook_queue"
        )

        job_end_time = now_utc()
        result = {
            "status": "completed",
            "released_stale": released,
            **drained.to_dict(),
            "start_time": job_start_time.isoformat(),
            "end_time": job_end_time.isoformat(),
            "duration_seconds": (job_end_time - job_start_time).total_seconds(),
        }
        logger.info(
            "Webhook queue job completed",
            claimed=drained.claimed,
            processed=drained.processed,
            retried=drained.retried,
            failed=drained.failed,
            released_stale=released,
        )
        return result
