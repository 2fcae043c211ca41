from unittest.mock import AsyncMock

import pytest

from billing_worker.core.exceptions import ShopNotFoundError
from billing_worker.jobs import BillingCycleJob, RetentionJob, WebhookQueueJob
from billing_worker.webhooks import DrainResult, RetryPolicy, WebhookQueueProcessor
from conftest import SHOP


class TestBillingCycleJob:
    @pytest.mark.asyncio
    async def test_rolls_over_due_subscriptions_once(self, subscriptions, active_subscription, clock):
        job = BillingCycleJob(subscriptions)

        assert (await job.run())["due_shops"] == 0

        clock.advance(days=30, minutes=1)
        result = await job.run()

        assert result["status"] == "completed"
        assert result["due_shops"] == 1
        assert result["advanced"] == 1
        assert (await job.run())["due_shops"] == 0

    @pytest.mark.asyncio
    async def test_one_failing_shop_does_not_stop_the_sweep(self):
        subscriptions = AsyncMock()
        subscriptions.list_shops_due_for_rollover.return_value = ["a.myshopify.com", "b.myshopify.com"]
        subscriptions.handle_cycle_transition.side_effect = [
            ShopNotFoundError("a.myshopify.com"),
            True,
        ]

        result = await BillingCycleJob(subscriptions).run()

        assert result["status"] == "completed_with_errors"
        assert result["advanced"] == 1
        assert result["errors"][0]["shop"] == "a.myshopify.com"


class TestWebhookQueueJob:
    @pytest.mark.asyncio
    async def test_releases_stale_claims_before_draining(self):
        processor = AsyncMock()
        processor.release_stale.return_value = 1
        processor.drain.return_value = DrainResult(claimed=2, processed=1, retried=1)

        result = await WebhookQueueJob(processor).run(max_items=5)

        processor.drain.assert_awaited_once_with(5)
        assert result["released_stale"] == 1
        assert result["processed"] == 1
        assert result["retried"] == 1
        assert result["status"] == "completed"


class TestRetentionJob:
    @pytest.mark.asyncio
    async def test_reports_every_purge(self):
        processor = AsyncMock()
        processor.cleanup.return_value = {"completed": 3, "failed": 1, "logs": 7}
        usage_ledger = AsyncMock()
        usage_ledger.purge_expired_events.return_value = 12

        result = await RetentionJob(processor, usage_ledger).run()

        assert result == {
            "status": "completed",
            "completed_items_deleted": 3,
            "failed_items_deleted": 1,
            "logs_deleted": 7,
            "usage_events_deleted": 12,
        }

    @pytest.mark.asyncio
    async def test_purges_against_the_database(self, session_factory, ledger, clock):
        processor = WebhookQueueProcessor(
            {}, retry_policy=RetryPolicy(), session_factory=session_factory, clock=clock
        )
        await ledger.record_usage(SHOP, "AI_API")
        clock.advance(days=2)

        result = await RetentionJob(processor, ledger).run()

        assert result["usage_events_deleted"] == 1
