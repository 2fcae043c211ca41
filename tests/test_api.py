import base64
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from billing_worker.api.dependencies import ServiceContainer
from billing_worker.core.config.settings import settings
from billing_worker.core.database.models import (
    BillingEvent,
    Plan,
    PlanName,
    Subscription,
    SubscriptionStatus,
    WebhookQueueStatus,
)
from billing_worker.core.exceptions import (
    AlreadyTerminatedError,
    BillingProviderError,
    RateLimitExceededError,
    SubscriptionNotFoundError,
    WebhookPayloadError,
)
from billing_worker.main import create_app
from billing_worker.webhooks import ShopifyWebhookVerifier
from conftest import SHOP

SECRET = "test-secret"
CRON_SECRET = "cron-secret"


def sign(body: bytes) -> str:
    return base64.b64encode(hmac.new(SECRET.encode(), body, hashlib.sha256).digest()).decode()


@pytest.fixture
def container():
    processor = AsyncMock()
    processor.enqueue.return_value = SimpleNamespace(id="item-1")
    return ServiceContainer(
        subscriptions=AsyncMock(),
        payments=AsyncMock(),
        credits=AsyncMock(),
        usage_ledger=AsyncMock(),
        processor=processor,
        verifier=ShopifyWebhookVerifier(secret=SECRET),
        webhook_queue_job=AsyncMock(),
        billing_cycle_job=AsyncMock(),
        retention_job=AsyncMock(),
    )


@pytest.fixture
def client(container, monkeypatch):
    monkeypatch.setattr(settings, "CRON_SECRET", CRON_SECRET)
    return TestClient(create_app(container))


def active_subscription_model():
    return Subscription(
        id="sub-1",
        status=SubscriptionStatus.ACTIVE,
        plan=Plan(name=PlanName.STANDARD),
        shopify_subscription_id="1001",
        price=Decimal("30.00"),
        currency_code="USD",
        cycle_start=datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc),
        cycle_end=datetime(2026, 1, 31, 12, 0, tzinfo=timezone.utc),
    )


class TestWebhookReceipt:
    def post(self, client, body, topic="app/uninstalled", signature=None, shop=SHOP):
        headers = {
            "X-Shopify-Hmac-Sha256": signature if signature is not None else sign(body),
            "X-Shopify-Topic": topic,
            "Content-Type": "application/json",
        }
        if shop:
            headers["X-Shopify-Shop-Domain"] = shop
        return client.post("/webhooks/shopify", content=body, headers=headers)

    def test_valid_delivery_is_queued(self, client, container):
        body = json.dumps({"id": 4242, "myshopify_domain": SHOP}).encode()

        response = self.post(client, body)

        assert response.status_code == 200
        assert response.json() == {"status": "queued", "item_id": "item-1", "topic": "APP_UNINSTALLED"}
        container.processor.enqueue.assert_awaited_once_with(
            "APP_UNINSTALLED", SHOP, {"id": 4242, "myshopify_domain": SHOP}
        )

    def test_bad_signature(self, client, container):
        response = self.post(client, b'{"id": 1}', signature="bm9wZQ==")

        assert response.status_code == 401
        container.processor.enqueue.assert_not_awaited()

    def test_unknown_topic(self, client):
        assert self.post(client, b'{"id": 1}', topic="orders/create").status_code == 400

    def test_missing_shop_header(self, client):
        assert self.post(client, b'{"id": 1}', shop=None).status_code == 400

    def test_invalid_json(self, client):
        assert self.post(client, b"not json").status_code == 400

    def test_invalid_payload(self, client, container):
        container.processor.enqueue.side_effect = WebhookPayloadError(
            "Invalid APP_UNINSTALLED payload", topic="APP_UNINSTALLED"
        )

        response = self.post(client, b'{"name": "no id"}')

        assert response.status_code == 400
        assert response.json()["error"] == "WEBHOOK_PAYLOAD_ERROR"


class TestCronEndpoints:
    def test_requires_secret(self, client, container):
        assert client.post("/api/cron/webhooks/drain").status_code == 401
        assert (
            client.post("/api/cron/webhooks/drain", headers={"X-Cron-Secret": "wrong"}).status_code
            == 401
        )
        container.webhook_queue_job.run.assert_not_awaited()

    def test_drain(self, client, container):
        container.webhook_queue_job.run.return_value = {"status": "completed", "processed": 2}

        response = client.post(
            "/api/cron/webhooks/drain?max_items=10", headers={"X-Cron-Secret": CRON_SECRET}
        )

        assert response.status_code == 200
        assert response.json()["processed"] == 2
        container.webhook_queue_job.run.assert_awaited_once_with(10)

    def test_drain_rejects_oversized_batch(self, client):
        response = client.post(
            "/api/cron/webhooks/drain?max_items=1000", headers={"X-Cron-Secret": CRON_SECRET}
        )

        assert response.status_code == 422

    def test_billing_cycles_and_cleanup(self, client, container):
        container.billing_cycle_job.run.return_value = {"status": "completed", "advanced": 1}
        container.retention_job.run.return_value = {"status": "completed"}
        headers = {"X-Cron-Secret": CRON_SECRET}

        assert client.post("/api/cron/billing/cycles", headers=headers).json()["advanced"] == 1
        assert client.post("/api/cron/webhooks/cleanup", headers=headers).status_code == 200

    def test_failed_items_and_replay(self, client, container):
        container.processor.list_failed.return_value = [
            SimpleNamespace(
                id="item-9",
                topic="APP_UNINSTALLED",
                shop=SHOP,
                attempts=3,
                error="RuntimeError: boom",
                processed_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
            )
        ]
        container.processor.replay.return_value = SimpleNamespace(
            id="item-9", status=WebhookQueueStatus.PENDING, attempts=0
        )
        headers = {"X-Cron-Secret": CRON_SECRET}

        failed = client.get("/api/cron/webhooks/failed", headers=headers).json()
        replayed = client.post("/api/cron/webhooks/item-9/replay", headers=headers).json()

        assert failed[0]["id"] == "item-9"
        assert failed[0]["error"] == "RuntimeError: boom"
        assert replayed == {"status": "pending", "item_id": "item-9", "attempts": 0}


class TestBillingEndpoints:
    def test_confirm_callback(self, client, container):
        container.subscriptions.confirm.return_value = active_subscription_model()

        response = client.get("/api/billing/callback", params={"charge_id": "1001"})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ACTIVE"
        assert body["plan"] == "STANDARD"
        assert body["price"] == "30.00"

    def test_unknown_charge_is_404(self, client, container):
        container.subscriptions.confirm.side_effect = SubscriptionNotFoundError(
            "No subscription for charge 404", {"charge_id": "404"}
        )

        response = client.get("/api/billing/callback", params={"charge_id": "404"})

        assert response.status_code == 404
        assert response.json()["details"] == {"charge_id": "404"}

    def test_cancel_terminated_subscription_is_409(self, client, container):
        container.subscriptions.cancel_current.side_effect = AlreadyTerminatedError("sub-1", "CANCELLED")

        response = client.post(f"/api/billing/{SHOP}/cancel", json={"prorate": True})

        assert response.status_code == 409

    def test_provider_failure_is_502(self, client, container):
        container.subscriptions.subscribe.side_effect = BillingProviderError(
            "Could not create subscription charge", operation="create_recurring_charge"
        )

        response = client.post(
            f"/api/billing/{SHOP}/subscribe",
            json={"plan_name": "PRO", "return_url": "https://app.example.com/callback"},
        )

        assert response.status_code == 502

    def test_rate_limit_is_429_with_retry_after(self, client, container):
        container.usage_ledger.get_usage_state.side_effect = RateLimitExceededError(
            shop=SHOP,
            service="AI_API",
            limit_type="RPM",
            limit=3,
            remaining=0,
            reset_at=datetime.now(timezone.utc) + timedelta(seconds=30),
        )

        response = client.get(f"/api/billing/{SHOP}/usage/AI_API")

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) > 0
        assert response.json()["details"]["limit_type"] == "RPM"

    def test_unknown_service_is_422(self, client):
        assert client.get(f"/api/billing/{SHOP}/usage/IMAGE_API").status_code == 422

    def test_billing_event(self, client, container):
        container.subscriptions.check_subscription_status.return_value = BillingEvent.UPDATE

        response = client.get(f"/api/billing/{SHOP}/event", params={"plan_name": "PRO"})

        assert response.json() == {"shop": SHOP, "event": "UPDATE"}
        container.subscriptions.check_subscription_status.assert_awaited_once_with(
            "PRO", SHOP, canceled=False
        )

    def test_refund_requires_cron_secret(self, client, container):
        assert client.post("/api/billing/payments/p-1/refund").status_code == 401
        container.payments.refund.assert_not_awaited()


class TestApplication:
    def test_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"

    def test_uninitialized_services(self):
        client = TestClient(create_app(None))

        assert client.get(f"/api/billing/{SHOP}/status").status_code == 503
