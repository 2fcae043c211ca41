"""
Billing Cycle Job

Daily sweep that rolls every ACTIVE subscription whose cycle ended into its
next cycle and resets the shop's usage counters.
"""

from typing import Any, Dict, List

from billing_worker.core.database.session import with_database_retry
from billing_worker.core.exceptions import BillingWorkerException
from billing_worker.core.logging import get_logger
from billing_worker.domains.billing.services import SubscriptionService
from billing_worker.shared.helpers import now_utc

logger = get_logger(__name__)


class BillingCycleJob:
    def __init__(self, subscriptions: SubscriptionService, batch_size: int = 100):
        self.subscriptions = subscriptions
        self.batch_size = batch_size

    async def run(self) -> Dict[str, Any]:
        """
        Roll over due cycles.

        One shop's failure is recorded and the sweep moves on; the shop is
        picked up again by the next run since its cycle_end is unchanged.
        """
        job_start_time = now_utc()
        shops = await with_database_retry(
            lambda: self.subscriptions.list_shops_due_for_rollover(self.batch_size),
            "list_shops_due_for_rollover",
        )

        advanced = 0
        skipped = 0
        errors: List[Dict[str, str]] = []
        for shop in shops:
            try:
                if await self.subscriptions.handle_cycle_transition(shop):
                    advanced += 1
                else:
                    skipped += 1
            except BillingWorkerException as e:
                logger.error("Cycle rollover failed", shop=shop, error=str(e))
                errors.append({"shop": shop, "error": str(e)})

        job_end_time = now_utc()
        result = {
            "status": "completed" if not errors else "completed_with_errors",
            "due_shops": len(shops),
            "advanced": advanced,
            "skipped": skipped,
            "errors": errors,
            "start_time": job_start_time.isoformat(),
            "end_time": job_end_time.isoformat(),
            "duration_seconds": (job_end_time - job_start_time).total_seconds(),
        }
        logger.info(
            "Billing cycle job completed",
            due_shops=len(shops),
            advanced=advanced,
            skipped=skipped,
            errors=len(errors),
        )
        return result
