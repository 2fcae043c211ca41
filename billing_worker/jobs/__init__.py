"""
Cron-triggered jobs
"""

from .webhook_queue_job import WebhookQueueJob
from .billing_cycle_job import BillingCycleJob
from .retention_job import RetentionJob

__all__ = ["WebhookQueueJob", "BillingCycleJob", "RetentionJob"]
