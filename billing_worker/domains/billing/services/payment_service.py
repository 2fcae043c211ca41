"""
Payment Service

Payment rows are append-only money records. A refund never edits the
original amount: the original flips SUCCEEDED -> REFUNDED and exactly one
compensating SUCCEEDED row with the negated amount is inserted.
"""

from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_worker.core.database.models import (
    Payment,
    PaymentStatus,
    BillingType,
)
from billing_worker.core.database.session import (
    get_session_context,
    transaction_scope,
)
from billing_worker.core.exceptions import (
    DuplicateChargeError,
    InvalidTransitionError,
    PaymentNotFoundError,
    ShopNotFoundError,
)
from billing_worker.core.logging import get_logger
from billing_worker.shared.helpers import now_utc
from ..repositories import BillingRepository

logger = get_logger(__name__)


class PaymentService:
    """Records payments and refunds them by compensation"""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.session_factory = session_factory
        self.clock = clock

    async def record_payment(
        self,
        shop_id: str,
        amount: Decimal,
        currency_code: str = "USD",
        status: PaymentStatus = PaymentStatus.PENDING,
        billing_type: BillingType = BillingType.RECURRING,
        subscription_id: Optional[str] = None,
        credit_purchase_id: Optional[str] = None,
        billing_period_start: Optional[datetime] = None,
        billing_period_end: Optional[datetime] = None,
        transaction_id: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ) -> Payment:
        """
        Insert a payment row.

        Raises DuplicateChargeError when transaction_id is already recorded.
        """
        async with transaction_scope(session, self.session_factory) as tx:
            repo = BillingRepository(tx)
            try:
                payment = await repo.create_payment(
                    shop_id=shop_id,
                    amount=amount,
                    currency_code=currency_code,
                    status=status,
                    billing_type=billing_type,
                    subscription_id=subscription_id,
                    credit_purchase_id=credit_purchase_id,
                    billing_period_start=billing_period_start,
                    billing_period_end=billing_period_end,
                    transaction_id=transaction_id,
                )
            except IntegrityError as e:
                raise DuplicateChargeError(transaction_id or "", cause=e) from e

        logger.info(
            "Payment recorded",
            payment_id=payment.id,
            shop_id=shop_id,
            amount=str(amount),
            status=PaymentStatus(status).value,
            billing_type=BillingType(billing_type).value,
        )
        return payment

    async def refund(
        self, payment_id: str, session: Optional[AsyncSession] = None
    ) -> Tuple[Payment, Payment]:
        """
        Refund a SUCCEEDED payment.

        Returns (original, compensation). A second refund, or a refund of a
        compensating row, raises InvalidTransitionError.
        """
        async with transaction_scope(session, self.session_factory) as tx:
            repo = BillingRepository(tx)
            original = await repo.get_payment(payment_id)
            if original is None:
                raise PaymentNotFoundError(payment_id)

            if original.refund_of_id is not None:
                raise InvalidTransitionError(
                    "Compensating payments cannot be refunded",
                    entity_id=payment_id,
                    current_status=PaymentStatus(original.status).value,
                    target_status=PaymentStatus.REFUNDED.value,
                )

            refunded = await repo.transition_payment(
                payment_id, PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED
            )
            if not refunded:
                current = await repo.get_payment(payment_id)
                raise InvalidTransitionError(
                    f"Payment {payment_id} cannot be refunded from {current.status.value}",
                    entity_id=payment_id,
                    current_status=current.status.value,
                    target_status=PaymentStatus.REFUNDED.value,
                )

            compensation = await repo.create_payment(
                shop_id=original.shop_id,
                subscription_id=original.subscription_id,
                credit_purchase_id=original.credit_purchase_id,
                amount=-original.amount,
                currency_code=original.currency_code,
                status=PaymentStatus.SUCCEEDED,
                billing_type=original.billing_type,
                billing_period_start=original.billing_period_start,
                billing_period_end=original.billing_period_end,
                transaction_id=(
                    f"{original.transaction_id}:refund" if original.transaction_id else None
                ),
                refund_of_id=original.id,
            )
            original = await repo.get_payment(payment_id)

        logger.info(
            "Payment refunded",
            payment_id=payment_id,
            compensation_id=compensation.id,
            amount=str(original.amount),
        )
        return original, compensation

    async def list_payments(self, shop_domain: str) -> List[Payment]:
        async with get_session_context(self.session_factory) as session:
            repo = BillingRepository(session)
            shop = await repo.get_shop_by_domain(shop_domain)
            if shop is None:
                raise ShopNotFoundError(shop_domain)
            return await repo.list_payments(shop.id)
