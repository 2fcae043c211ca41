from decimal import Decimal

import pytest

from billing_worker.core.database.models import (
    CreditPurchaseStatus,
    PaymentStatus,
    UsageService,
)
from billing_worker.core.exceptions import (
    BillingProviderError,
    CreditPackageNotFoundError,
    ShopifyBillingApiError,
)
from billing_worker.domains.billing.repositories import BillingRepository
from conftest import SHOP

RETURN_URL = "https://app.example.com/billing/callback"


async def _purchase_payment(session_factory, purchase_id):
    async with session_factory() as session:
        return await BillingRepository(session).get_payment_for_purchase(purchase_id)


async def _shop(session_factory, shop_id):
    async with session_factory() as session:
        return await BillingRepository(session).get_shop(shop_id)


class TestPurchase:
    @pytest.mark.asyncio
    async def test_purchase_creates_pending_rows(self, credits, provider, session_factory):
        result = await credits.purchase(SHOP, "BOOST_500", RETURN_URL)

        assert result.charge_id == "9001"
        assert result.price == Decimal("10.00")
        assert result.credit_applied == Decimal("0")
        provider.create_one_time_charge.assert_awaited_once_with(
            SHOP, "BOOST_500", Decimal("10.00"), "USD", RETURN_URL
        )

        payment = await _purchase_payment(session_factory, result.purchase_id)
        assert payment.status == PaymentStatus.PENDING
        assert payment.transaction_id == "9001"

    @pytest.mark.asyncio
    async def test_unknown_package(self, credits, provider):
        with pytest.raises(CreditPackageNotFoundError):
            await credits.purchase(SHOP, "BOOST_9000", RETURN_URL)
        provider.create_one_time_charge.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_provider_failure(self, credits, provider):
        provider.create_one_time_charge.side_effect = ShopifyBillingApiError("HTTP 500")

        with pytest.raises(BillingProviderError):
            await credits.purchase(SHOP, "BOOST_500", RETURN_URL)

    @pytest.mark.asyncio
    async def test_billing_credit_keeps_minimum_charge(
        self, credits, provider, session_factory, seeded
    ):
        async with session_factory() as session:
            shop = await BillingRepository(session).get_shop(seeded["shop_id"])
            shop.billing_credit = Decimal("15.00")
            await session.commit()

        result = await credits.purchase(SHOP, "BOOST_500", RETURN_URL)

        assert result.credit_applied == Decimal("9.50")
        assert result.price == Decimal("0.50")

        await credits.apply_one_time_update(SHOP, result.charge_id, "ACTIVE")
        assert (await _shop(session_factory, seeded["shop_id"])).billing_credit == Decimal("5.50")


class TestOneTimeUpdate:
    @pytest.mark.asyncio
    async def test_active_purchase_extends_quota(self, credits, ledger, session_factory):
        before = await ledger.get_usage_state(SHOP, UsageService.AI_API)
        result = await credits.purchase(SHOP, "BOOST_500", RETURN_URL)

        purchase = await credits.apply_one_time_update(SHOP, result.charge_id, "active")

        assert purchase.status == CreditPurchaseStatus.ACTIVE
        payment = await _purchase_payment(session_factory, result.purchase_id)
        assert payment.status == PaymentStatus.SUCCEEDED
        after = await ledger.get_usage_state(SHOP, UsageService.AI_API)
        assert after.remaining_requests == before.remaining_requests + 500

    @pytest.mark.asyncio
    async def test_replayed_update_is_noop(self, credits, session_factory, seeded):
        result = await credits.purchase(SHOP, "BOOST_500", RETURN_URL)
        await credits.apply_one_time_update(SHOP, result.charge_id, "ACTIVE")

        purchase = await credits.apply_one_time_update(SHOP, result.charge_id, "DECLINED")

        assert purchase.status == CreditPurchaseStatus.ACTIVE
        async with session_factory() as session:
            rows = await BillingRepository(session).list_payments(seeded["shop_id"])
        assert [row.status for row in rows] == [PaymentStatus.SUCCEEDED]

    @pytest.mark.asyncio
    async def test_declined_purchase(self, credits, session_factory):
        result = await credits.purchase(SHOP, "BOOST_500", RETURN_URL)

        purchase = await credits.apply_one_time_update(SHOP, result.charge_id, "DECLINED")

        assert purchase.status == CreditPurchaseStatus.DECLINED
        payment = await _purchase_payment(session_factory, result.purchase_id)
        assert payment.status == PaymentStatus.FAILED

    @pytest.mark.asyncio
    async def test_pending_status_is_ignored(self, credits):
        result = await credits.purchase(SHOP, "BOOST_500", RETURN_URL)

        purchase = await credits.apply_one_time_update(SHOP, result.charge_id, "PENDING")

        assert purchase.status == CreditPurchaseStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_charge(self, credits):
        assert await credits.apply_one_time_update(SHOP, "404", "ACTIVE") is None


class TestCreditExpiry:
    @pytest.mark.asyncio
    async def test_rollover_expires_active_purchase(
        self, credits, ledger, subscriptions, active_subscription, session_factory, clock
    ):
        result = await credits.purchase(SHOP, "BOOST_500", RETURN_URL)
        await credits.apply_one_time_update(SHOP, result.charge_id, "ACTIVE")
        boosted = await ledger.get_usage_state(SHOP, UsageService.AI_API)
        assert boosted.remaining_requests == 600

        clock.advance(days=31)
        assert await subscriptions.handle_cycle_transition(SHOP) is True

        state = await ledger.get_usage_state(SHOP, UsageService.AI_API)
        assert state.remaining_requests == 100
        async with session_factory() as session:
            purchase = await BillingRepository(session).get_credit_purchase_by_charge_id(
                result.charge_id
            )
        assert purchase.status == CreditPurchaseStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_expired_purchase_ignores_late_update(self, credits, ledger):
        result = await credits.purchase(SHOP, "BOOST_500", RETURN_URL)
        await credits.apply_one_time_update(SHOP, result.charge_id, "ACTIVE")
        await ledger.reset_usage_counts(SHOP)

        purchase = await credits.apply_one_time_update(SHOP, result.charge_id, "ACTIVE")

        assert purchase.status == CreditPurchaseStatus.EXPIRED
