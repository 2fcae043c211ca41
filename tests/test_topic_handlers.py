from unittest.mock import AsyncMock

import pytest

from billing_worker.core.database.models import (
    CreditPurchaseStatus,
    SubscriptionStatus,
    WebhookQueueStatus,
)
from billing_worker.domains.billing.repositories import BillingRepository
from billing_worker.webhooks import (
    RetryPolicy,
    WebhookQueueProcessor,
    WebhookQueueRepository,
    build_topic_handlers,
)
from billing_worker.webhooks.models import AppUninstalledPayload
from conftest import OTHER_SHOP, SHOP


@pytest.fixture
def processor(session_factory, clock, subscriptions, credits, notifier):
    handlers = build_topic_handlers(subscriptions, credits, notifier)
    return WebhookQueueProcessor(
        handlers=handlers,
        retry_policy=RetryPolicy(max_attempts=3),
        session_factory=session_factory,
        alert=AsyncMock(),
        clock=clock,
    )


def subscription_update(charge_id, status, updated_at="2026-01-01T12:00:00Z"):
    return {
        "app_subscription": {
            "admin_graphql_api_id": f"gid://shopify/AppSubscription/{charge_id}",
            "name": "STANDARD",
            "status": status,
            "admin_graphql_api_shop_id": "gid://shopify/Shop/1",
            "updated_at": updated_at,
        }
    }


async def _status(session_factory, item_id):
    async with session_factory() as session:
        return (await WebhookQueueRepository(session).get_item(item_id)).status


class TestAppUninstalled:
    @pytest.mark.asyncio
    async def test_uninstall_clears_shop_state(
        self, processor, active_subscription, session_factory, seeded
    ):
        item = await processor.enqueue(
            "APP_UNINSTALLED", SHOP, {"id": 1, "myshopify_domain": SHOP}
        )

        assert (await processor.drain()).processed == 1

        assert await _status(session_factory, item.id) == WebhookQueueStatus.COMPLETED
        async with session_factory() as session:
            repo = BillingRepository(session)
            assert await repo.get_offline_access_token(SHOP) is None
            assert await repo.get_offline_access_token(OTHER_SHOP) == "shpat_other"
            subscription = await repo.get_subscription(active_subscription.id)
            shop = await repo.get_shop(seeded["shop_id"])
        assert subscription.status == SubscriptionStatus.CANCELLED
        assert subscription.cancel_reason == "app_uninstalled"
        assert shop.is_active is False
        assert shop.uninstalled_at is not None

    @pytest.mark.asyncio
    async def test_uninstall_is_idempotent(self, processor, active_subscription):
        handler = processor.handlers["APP_UNINSTALLED"]
        payload = AppUninstalledPayload(id=1)

        await handler.handle(SHOP, payload)
        await handler.handle(SHOP, payload)

    @pytest.mark.asyncio
    async def test_uninstall_of_unknown_shop(self, processor):
        handler = processor.handlers["APP_UNINSTALLED"]

        await handler.handle("gone.myshopify.com", AppUninstalledPayload(id=2))


class TestAppSubscriptionsUpdate:
    @pytest.mark.asyncio
    async def test_active_status_confirms_pending_subscription(
        self, processor, subscriptions, session_factory
    ):
        pending = await subscriptions.create(SHOP, "STANDARD", "1001")
        await processor.enqueue("APP_SUBSCRIPTIONS_UPDATE", SHOP, subscription_update("1001", "active"))

        assert (await processor.drain()).processed == 1

        async with session_factory() as session:
            subscription = await BillingRepository(session).get_subscription(pending.id)
        assert subscription.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_legacy_accepted_status_is_pending(
        self, processor, subscriptions, session_factory
    ):
        pending = await subscriptions.create(SHOP, "STANDARD", "1001")
        item = await processor.enqueue(
            "APP_SUBSCRIPTIONS_UPDATE", SHOP, subscription_update("1001", "ACCEPTED")
        )

        assert (await processor.drain()).processed == 1

        assert await _status(session_factory, item.id) == WebhookQueueStatus.COMPLETED
        async with session_factory() as session:
            subscription = await BillingRepository(session).get_subscription(pending.id)
        assert subscription.status == SubscriptionStatus.PENDING

    @pytest.mark.asyncio
    async def test_cancelled_status(self, processor, active_subscription, session_factory):
        await processor.enqueue(
            "APP_SUBSCRIPTIONS_UPDATE", SHOP, subscription_update("1001", "CANCELLED")
        )
        await processor.drain()

        async with session_factory() as session:
            subscription = await BillingRepository(session).get_subscription(active_subscription.id)
        assert subscription.status == SubscriptionStatus.CANCELLED
        assert subscription.cancel_reason == "provider_cancelled"

    @pytest.mark.asyncio
    async def test_unknown_charge_is_retried(self, processor, session_factory):
        item = await processor.enqueue(
            "APP_SUBSCRIPTIONS_UPDATE", SHOP, subscription_update("777", "ACTIVE")
        )

        assert (await processor.drain()).retried == 1
        assert await _status(session_factory, item.id) == WebhookQueueStatus.PENDING


class TestAppPurchasesOneTimeUpdate:
    @pytest.mark.asyncio
    async def test_purchase_activated(self, processor, credits, session_factory):
        result = await credits.purchase(SHOP, "BOOST_500", "https://app.example.com/callback")
        payload = {
            "app_purchase_one_time": {
                "admin_graphql_api_id": f"gid://shopify/AppPurchaseOneTime/{result.charge_id}",
                "name": "BOOST_500",
                "status": "ACTIVE",
                "updated_at": "2026-01-01T12:00:00Z",
            }
        }
        await processor.enqueue("APP_PURCHASES_ONE_TIME_UPDATE", SHOP, payload)

        assert (await processor.drain()).processed == 1

        async with session_factory() as session:
            purchase = await BillingRepository(session).get_credit_purchase_by_charge_id(
                result.charge_id
            )
        assert purchase.status == CreditPurchaseStatus.ACTIVE


class TestApproachingCappedAmount:
    @pytest.mark.asyncio
    async def test_merchant_is_warned(self, processor, notifier):
        payload = {
            "app_subscription": {
                "admin_graphql_api_id": "gid://shopify/AppSubscription/1001",
                "name": "STANDARD",
                "balance_used": 81.0,
                "capped_amount": 100.0,
            }
        }
        await processor.enqueue("APP_SUBSCRIPTIONS_APPROACHING_CAPPED_AMOUNT", SHOP, payload)

        assert (await processor.drain()).processed == 1

        notifier.notify.assert_awaited_once_with(SHOP, "owner@test-shop.com", 80)
