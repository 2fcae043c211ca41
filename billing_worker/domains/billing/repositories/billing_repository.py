"""
Billing Repository for database operations

All status changes go through conditional updates (``WHERE <field> =
<expected>``) and report whether the row was actually changed, so callers can
tell a lost race from a successful transition.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, update, delete, and_, or_, func
from sqlalchemy.ext.asyncio import AsyncSession

from billing_worker.core.database.models import (
    Shop,
    ShopifySession,
    Plan,
    PlanName,
    Promotion,
    PromotionType,
    Subscription,
    SubscriptionStatus,
    Payment,
    PaymentStatus,
    CreditPackage,
    CreditPurchase,
    CreditPurchaseStatus,
    UsageService,
)
from billing_worker.core.logging import get_logger
from billing_worker.shared.constants.billing import SUPERSEDED_REASON

logger = get_logger(__name__)

OPEN_SUBSCRIPTION_STATUSES = (
    SubscriptionStatus.PENDING,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.FROZEN,
)


class BillingRepository:
    """
    Repository for billing-related database operations.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _conditional_update(self, model, criteria: Iterable[Any], values: Dict[str, Any]) -> int:
        """Run UPDATE model SET values WHERE criteria and return the affected row count"""
        stmt = (
            update(model)
            .where(and_(*criteria))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount

    async def _reload(self, model, entity_id: str):
        return await self.session.get(model, entity_id, populate_existing=True)

    # ============= SHOP OPERATIONS =============

    async def get_shop(self, shop_id: str) -> Optional[Shop]:
        return await self.session.get(Shop, shop_id)

    async def get_shop_by_domain(self, shop_domain: str) -> Optional[Shop]:
        result = await self.session.execute(
            select(Shop).where(Shop.shop_domain == shop_domain)
        )
        return result.scalar_one_or_none()

    async def mark_shop_uninstalled(self, shop_id: str, now: datetime) -> bool:
        updated = await self._conditional_update(
            Shop,
            [Shop.id == shop_id, Shop.is_active.is_(True)],
            {"is_active": False, "uninstalled_at": now},
        )
        return updated == 1

    async def add_billing_credit(self, shop_id: str, amount: Decimal) -> None:
        await self._conditional_update(
            Shop,
            [Shop.id == shop_id],
            {"billing_credit": Shop.billing_credit + amount},
        )

    async def consume_billing_credit(self, shop_id: str, amount: Decimal) -> bool:
        """Deduct credit only if the balance still covers it"""
        if amount <= 0:
            return True
        updated = await self._conditional_update(
            Shop,
            [Shop.id == shop_id, Shop.billing_credit >= amount],
            {"billing_credit": Shop.billing_credit - amount},
        )
        return updated == 1

    # ============= SESSION OPERATIONS =============

    async def get_offline_access_token(self, shop_domain: str) -> Optional[str]:
        result = await self.session.execute(
            select(ShopifySession.access_token)
            .where(
                and_(
                    ShopifySession.shop == shop_domain,
                    ShopifySession.is_online.is_(False),
                )
            )
            .order_by(ShopifySession.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def delete_sessions(self, shop_domain: str) -> int:
        result = await self.session.execute(
            delete(ShopifySession)
            .where(ShopifySession.shop == shop_domain)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    # ============= PLAN & PROMOTION OPERATIONS =============

    async def get_plan_by_name(self, name: str) -> Optional[Plan]:
        try:
            plan_name = PlanName(name.upper())
        except ValueError:
            return None
        result = await self.session.execute(select(Plan).where(Plan.name == plan_name))
        return result.scalar_one_or_none()

    async def get_active_promotions(
        self,
        plan_id: str,
        promotion_type: PromotionType,
        now: datetime,
    ) -> List[Promotion]:
        """Active promotions of a type that apply to the plan and are inside their window"""
        query = select(Promotion).where(
            and_(
                Promotion.is_active.is_(True),
                Promotion.promotion_type == promotion_type,
                or_(Promotion.plan_id.is_(None), Promotion.plan_id == plan_id),
                or_(Promotion.valid_from.is_(None), Promotion.valid_from <= now),
                or_(Promotion.valid_until.is_(None), Promotion.valid_until > now),
            )
        )
        result = await self.session.execute(query.order_by(Promotion.created_at))
        return list(result.scalars().all())

    async def increment_promotion_usage(self, promotion_id: str) -> bool:
        updated = await self._conditional_update(
            Promotion,
            [
                Promotion.id == promotion_id,
                or_(Promotion.max_uses.is_(None), Promotion.used_count < Promotion.max_uses),
            ],
            {"used_count": Promotion.used_count + 1},
        )
        return updated == 1

    # ============= SUBSCRIPTION OPERATIONS =============

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return await self._reload(Subscription, subscription_id)

    async def get_subscription_by_charge_id(self, charge_id: str) -> Optional[Subscription]:
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.shopify_subscription_id == charge_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_current_subscription(self, shop_id: str) -> Optional[Subscription]:
        """The shop's ACTIVE subscription, or its FROZEN one when none is active"""
        result = await self.session.execute(
            select(Subscription)
            .where(
                and_(
                    Subscription.shop_id == shop_id,
                    Subscription.status.in_(
                        [SubscriptionStatus.ACTIVE, SubscriptionStatus.FROZEN]
                    ),
                )
            )
            .order_by(Subscription.confirmed_at.desc())
            .execution_options(populate_existing=True)
        )
        subscriptions = list(result.scalars().unique().all())
        for subscription in subscriptions:
            if subscription.status == SubscriptionStatus.ACTIVE:
                return subscription
        return subscriptions[0] if subscriptions else None

    async def get_latest_subscription(
        self, shop_id: str, statuses: Iterable[SubscriptionStatus]
    ) -> Optional[Subscription]:
        result = await self.session.execute(
            select(Subscription)
            .where(
                and_(
                    Subscription.shop_id == shop_id,
                    Subscription.status.in_(list(statuses)),
                )
            )
            .order_by(Subscription.updated_at.desc(), Subscription.created_at.desc())
            .limit(1)
        )
        return result.scalars().unique().one_or_none()

    async def count_active_subscriptions(self, shop_id: str) -> int:
        result = await self.session.execute(
            select(func.count(Subscription.id)).where(
                and_(
                    Subscription.shop_id == shop_id,
                    Subscription.status == SubscriptionStatus.ACTIVE,
                )
            )
        )
        return result.scalar_one()

    async def create_subscription(self, **values: Any) -> Subscription:
        subscription = Subscription(**values)
        self.session.add(subscription)
        await self.session.flush()
        return subscription

    async def transition_subscription(
        self,
        subscription_id: str,
        expected_status: SubscriptionStatus,
        new_status: SubscriptionStatus,
        **values: Any,
    ) -> bool:
        """Compare-and-swap on status"""
        updated = await self._conditional_update(
            Subscription,
            [Subscription.id == subscription_id, Subscription.status == expected_status],
            {"status": new_status, **values},
        )
        return updated == 1

    async def supersede_open_subscriptions(
        self, shop_id: str, exclude_id: str, now: datetime
    ) -> int:
        """Cancel the shop's other ACTIVE/FROZEN subscriptions, without proration"""
        return await self._conditional_update(
            Subscription,
            [
                Subscription.shop_id == shop_id,
                Subscription.id != exclude_id,
                Subscription.status.in_(
                    [SubscriptionStatus.ACTIVE, SubscriptionStatus.FROZEN]
                ),
            ],
            {
                "status": SubscriptionStatus.CANCELLED,
                "cancelled_at": now,
                "cancel_reason": SUPERSEDED_REASON,
            },
        )

    async def cancel_open_subscriptions(self, shop_id: str, reason: str, now: datetime) -> int:
        return await self._conditional_update(
            Subscription,
            [
                Subscription.shop_id == shop_id,
                Subscription.status.in_(list(OPEN_SUBSCRIPTION_STATUSES)),
            ],
            {
                "status": SubscriptionStatus.CANCELLED,
                "cancelled_at": now,
                "cancel_reason": reason,
            },
        )

    async def advance_cycle(
        self,
        subscription_id: str,
        expected_cycle_end: datetime,
        new_cycle_start: datetime,
        new_cycle_end: datetime,
    ) -> bool:
        """Compare-and-swap on cycle_end; a second caller for the same cycle gets False"""
        updated = await self._conditional_update(
            Subscription,
            [
                Subscription.id == subscription_id,
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.cycle_end == expected_cycle_end,
            ],
            {"cycle_start": new_cycle_start, "cycle_end": new_cycle_end},
        )
        return updated == 1

    async def list_shops_due_for_rollover(self, now: datetime, limit: int = 100) -> List[str]:
        result = await self.session.execute(
            select(Shop.shop_domain)
            .join(Subscription, Subscription.shop_id == Shop.id)
            .where(
                and_(
                    Subscription.status == SubscriptionStatus.ACTIVE,
                    Subscription.cycle_end <= now,
                )
            )
            .order_by(Subscription.cycle_end)
            .limit(limit)
        )
        return list(result.scalars().all())

    # ============= PAYMENT OPERATIONS =============

    async def create_payment(self, **values: Any) -> Payment:
        payment = Payment(**values)
        self.session.add(payment)
        await self.session.flush()
        return payment

    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        return await self._reload(Payment, payment_id)

    async def get_payment_by_transaction_id(self, transaction_id: str) -> Optional[Payment]:
        result = await self.session.execute(
            select(Payment)
            .where(Payment.transaction_id == transaction_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_payment_for_purchase(self, credit_purchase_id: str) -> Optional[Payment]:
        result = await self.session.execute(
            select(Payment)
            .where(
                and_(
                    Payment.credit_purchase_id == credit_purchase_id,
                    Payment.refund_of_id.is_(None),
                )
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_compensation_for(self, payment_id: str) -> Optional[Payment]:
        result = await self.session.execute(
            select(Payment).where(Payment.refund_of_id == payment_id)
        )
        return result.scalar_one_or_none()

    async def transition_payment(
        self,
        payment_id: str,
        expected_status: PaymentStatus,
        new_status: PaymentStatus,
    ) -> bool:
        updated = await self._conditional_update(
            Payment,
            [Payment.id == payment_id, Payment.status == expected_status],
            {"status": new_status},
        )
        return updated == 1

    async def list_payments(self, shop_id: str) -> List[Payment]:
        result = await self.session.execute(
            select(Payment).where(Payment.shop_id == shop_id).order_by(Payment.created_at)
        )
        return list(result.scalars().all())

    # ============= CREDIT PACKAGE OPERATIONS =============

    async def get_credit_package_by_name(self, name: str) -> Optional[CreditPackage]:
        result = await self.session.execute(
            select(CreditPackage).where(
                and_(CreditPackage.name == name, CreditPackage.is_active.is_(True))
            )
        )
        return result.scalar_one_or_none()

    async def create_credit_purchase(self, **values: Any) -> CreditPurchase:
        purchase = CreditPurchase(**values)
        self.session.add(purchase)
        await self.session.flush()
        return purchase

    async def get_credit_purchase_by_charge_id(self, charge_id: str) -> Optional[CreditPurchase]:
        result = await self.session.execute(
            select(CreditPurchase)
            .where(CreditPurchase.shopify_charge_id == charge_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def transition_credit_purchase(
        self,
        purchase_id: str,
        expected_status: CreditPurchaseStatus,
        new_status: CreditPurchaseStatus,
    ) -> bool:
        updated = await self._conditional_update(
            CreditPurchase,
            [CreditPurchase.id == purchase_id, CreditPurchase.status == expected_status],
            {"status": new_status},
        )
        return updated == 1

    async def expire_active_credit_purchases(self, shop_id: str) -> int:
        """ACTIVE -> EXPIRED for every purchase of the shop"""
        return await self._conditional_update(
            CreditPurchase,
            [
                CreditPurchase.shop_id == shop_id,
                CreditPurchase.status == CreditPurchaseStatus.ACTIVE,
            ],
            {"status": CreditPurchaseStatus.EXPIRED},
        )

    async def sum_active_credit_requests(self, shop_id: str, service: UsageService) -> int:
        column = (
            CreditPurchase.ai_requests
            if service == UsageService.AI_API
            else CreditPurchase.crawl_requests
        )
        result = await self.session.execute(
            select(func.coalesce(func.sum(column), 0)).where(
                and_(
                    CreditPurchase.shop_id == shop_id,
                    CreditPurchase.status == CreditPurchaseStatus.ACTIVE,
                )
            )
        )
        return int(result.scalar_one())
