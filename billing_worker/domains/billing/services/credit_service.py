"""
Credit Service

One-time credit package purchases. They reuse the Payment state machine
(ONE_TIME billing type) but have no cycle: an ACTIVE purchase adds its
request credits to the shop's quota until the next usage reset.
"""

from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_worker.core.database.models import (
    BillingType,
    CreditPurchase,
    CreditPurchaseStatus,
    PaymentStatus,
)
from billing_worker.core.database.session import transaction_scope
from billing_worker.core.exceptions import (
    BillingProviderError,
    CreditPackageNotFoundError,
    DuplicateChargeError,
    ShopifyBillingApiError,
    ShopNotFoundError,
)
from billing_worker.core.logging import get_logger
from billing_worker.shared.constants.billing import MIN_ONE_TIME_CHARGE
from billing_worker.shared.helpers import now_utc
from ..models import CreditPurchaseResult
from ..repositories import BillingRepository
from .shopify_billing_client import BillingProviderClient

logger = get_logger(__name__)

# Provider one-time statuses that end a purchase without payment
FAILED_PURCHASE_STATUSES = {
    "DECLINED": CreditPurchaseStatus.DECLINED,
    "CANCELLED": CreditPurchaseStatus.CANCELLED,
    "EXPIRED": CreditPurchaseStatus.EXPIRED,
}


class CreditService:
    """Credit package purchases and their provider status updates"""

    def __init__(
        self,
        provider: Optional[BillingProviderClient] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.provider = provider
        self.session_factory = session_factory
        self.clock = clock

    @staticmethod
    def _credit_to_apply(billing_credit: Decimal, package_price: Decimal) -> Decimal:
        """Spend proration credit, keeping the charge at or above the provider minimum"""
        spendable = max(Decimal("0.00"), Decimal(package_price) - MIN_ONE_TIME_CHARGE)
        return min(Decimal(billing_credit or 0), spendable)

    async def purchase(
        self, shop: str, package_name: str, return_url: str
    ) -> CreditPurchaseResult:
        """Create the provider charge and a PENDING purchase + payment"""
        if self.provider is None:
            raise BillingProviderError("No billing provider configured", operation="purchase")

        async with transaction_scope(None, self.session_factory) as session:
            repo = BillingRepository(session)
            shop_row = await repo.get_shop_by_domain(shop)
            if shop_row is None:
                raise ShopNotFoundError(shop)
            package = await repo.get_credit_package_by_name(package_name)
            if package is None:
                raise CreditPackageNotFoundError(package_name)
            credit_applied = self._credit_to_apply(shop_row.billing_credit, package.price)
            price = Decimal(package.price) - credit_applied
            snapshot = {
                "shop_id": shop_row.id,
                "package_id": package.id,
                "currency_code": package.currency_code,
                "ai_requests": package.ai_requests,
                "crawl_requests": package.crawl_requests,
                "name": package.name,
            }

        try:
            charge = await self.provider.create_one_time_charge(
                shop, snapshot["name"], price, snapshot["currency_code"], return_url
            )
        except ShopifyBillingApiError as e:
            raise BillingProviderError(
                f"Could not create credit charge for {shop}: {e.message}",
                operation="create_one_time_charge",
                details=e.details,
                cause=e,
            ) from e

        try:
            async with transaction_scope(None, self.session_factory) as session:
                repo = BillingRepository(session)
                purchase = await repo.create_credit_purchase(
                    shop_id=snapshot["shop_id"],
                    package_id=snapshot["package_id"],
                    shopify_charge_id=charge.external_id,
                    status=CreditPurchaseStatus.PENDING,
                    price=price,
                    credit_applied=credit_applied,
                    ai_requests=snapshot["ai_requests"],
                    crawl_requests=snapshot["crawl_requests"],
                )
                await repo.create_payment(
                    shop_id=snapshot["shop_id"],
                    credit_purchase_id=purchase.id,
                    amount=price,
                    currency_code=snapshot["currency_code"],
                    status=PaymentStatus.PENDING,
                    billing_type=BillingType.ONE_TIME,
                    transaction_id=charge.external_id,
                )
        except IntegrityError as e:
            raise DuplicateChargeError(charge.external_id, cause=e) from e

        logger.info(
            "Credit purchase created",
            shop=shop,
            package=package_name,
            charge_id=charge.external_id,
            price=str(price),
            credit_applied=str(credit_applied),
        )
        return CreditPurchaseResult(
            purchase_id=purchase.id,
            charge_id=charge.external_id,
            confirmation_url=charge.confirmation_url,
            price=price,
            credit_applied=credit_applied,
        )

    async def apply_one_time_update(
        self,
        shop: str,
        charge_id: str,
        provider_status: str,
        session: Optional[AsyncSession] = None,
    ) -> Optional[CreditPurchase]:
        """
        Apply a provider status to a purchase and its payment.

        Guarded on the payment still being PENDING, so replayed webhooks are
        no-ops. Returns the purchase, or None when the charge is unknown.
        """
        provider_status = (provider_status or "").upper()

        async with transaction_scope(session, self.session_factory) as tx:
            repo = BillingRepository(tx)
            purchase = await repo.get_credit_purchase_by_charge_id(charge_id)
            if purchase is None:
                logger.warning("One-time update for unknown charge", shop=shop, charge_id=charge_id)
                return None

            payment = await repo.get_payment_for_purchase(purchase.id)
            if payment is None or payment.status != PaymentStatus.PENDING:
                logger.debug(
                    "One-time update already applied",
                    shop=shop,
                    charge_id=charge_id,
                    provider_status=provider_status,
                )
                return purchase

            if provider_status == "ACTIVE":
                if not await repo.transition_payment(
                    payment.id, PaymentStatus.PENDING, PaymentStatus.SUCCEEDED
                ):
                    return purchase
                await repo.transition_credit_purchase(
                    purchase.id, CreditPurchaseStatus.PENDING, CreditPurchaseStatus.ACTIVE
                )
                if purchase.credit_applied and not await repo.consume_billing_credit(
                    purchase.shop_id, purchase.credit_applied
                ):
                    logger.warning(
                        "Billing credit spent elsewhere before purchase activated",
                        shop=shop,
                        charge_id=charge_id,
                        credit_applied=str(purchase.credit_applied),
                    )
                logger.info("Credit purchase activated", shop=shop, charge_id=charge_id)

            elif provider_status in FAILED_PURCHASE_STATUSES:
                if not await repo.transition_payment(
                    payment.id, PaymentStatus.PENDING, PaymentStatus.FAILED
                ):
                    return purchase
                await repo.transition_credit_purchase(
                    purchase.id,
                    CreditPurchaseStatus.PENDING,
                    FAILED_PURCHASE_STATUSES[provider_status],
                )
                logger.info(
                    "Credit purchase not completed",
                    shop=shop,
                    charge_id=charge_id,
                    provider_status=provider_status,
                )

            else:
                logger.debug(
                    "Ignoring one-time status", shop=shop, charge_id=charge_id, provider_status=provider_status
                )
                return purchase

            return await repo.get_credit_purchase_by_charge_id(charge_id)
