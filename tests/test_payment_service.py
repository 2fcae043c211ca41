from decimal import Decimal

import pytest

from billing_worker.core.database.models import BillingType, PaymentStatus
from billing_worker.core.exceptions import (
    DuplicateChargeError,
    InvalidTransitionError,
    PaymentNotFoundError,
    ShopNotFoundError,
)
from billing_worker.domains.billing.repositories import BillingRepository
from conftest import SHOP


@pytest.fixture
async def succeeded_payment(payments, seeded):
    return await payments.record_payment(
        seeded["shop_id"],
        Decimal("30.00"),
        status=PaymentStatus.SUCCEEDED,
        transaction_id="txn-1",
    )


class TestRecordPayment:
    @pytest.mark.asyncio
    async def test_defaults_to_pending_recurring(self, payments, seeded):
        payment = await payments.record_payment(seeded["shop_id"], Decimal("12.50"))

        assert payment.status == PaymentStatus.PENDING
        assert payment.billing_type == BillingType.RECURRING
        assert payment.currency_code == "USD"

    @pytest.mark.asyncio
    async def test_duplicate_transaction_id(self, payments, seeded, succeeded_payment):
        with pytest.raises(DuplicateChargeError):
            await payments.record_payment(
                seeded["shop_id"], Decimal("30.00"), transaction_id="txn-1"
            )

        assert len(await payments.list_payments(SHOP)) == 1

    @pytest.mark.asyncio
    async def test_list_payments_unknown_shop(self, payments):
        with pytest.raises(ShopNotFoundError):
            await payments.list_payments("missing.myshopify.com")


class TestRefund:
    @pytest.mark.asyncio
    async def test_refund_adds_one_compensating_row(
        self, payments, succeeded_payment, session_factory
    ):
        original, compensation = await payments.refund(succeeded_payment.id)

        assert original.status == PaymentStatus.REFUNDED
        assert original.amount == Decimal("30.00")
        assert compensation.status == PaymentStatus.SUCCEEDED
        assert compensation.amount == Decimal("-30.00")
        assert compensation.refund_of_id == original.id
        assert compensation.transaction_id == "txn-1:refund"

        async with session_factory() as session:
            stored = await BillingRepository(session).get_compensation_for(original.id)
        assert stored.id == compensation.id

    @pytest.mark.asyncio
    async def test_second_refund_is_rejected(self, payments, succeeded_payment):
        await payments.refund(succeeded_payment.id)

        with pytest.raises(InvalidTransitionError):
            await payments.refund(succeeded_payment.id)

        rows = await payments.list_payments(SHOP)
        assert len(rows) == 2
        assert sum(row.amount for row in rows) == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_compensation_cannot_be_refunded(self, payments, succeeded_payment):
        _, compensation = await payments.refund(succeeded_payment.id)

        with pytest.raises(InvalidTransitionError):
            await payments.refund(compensation.id)

    @pytest.mark.asyncio
    async def test_pending_payment_cannot_be_refunded(self, payments, seeded):
        payment = await payments.record_payment(seeded["shop_id"], Decimal("30.00"))

        with pytest.raises(InvalidTransitionError):
            await payments.refund(payment.id)

    @pytest.mark.asyncio
    async def test_unknown_payment(self, payments, seeded):
        with pytest.raises(PaymentNotFoundError):
            await payments.refund("does-not-exist")
