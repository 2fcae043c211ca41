"""
Shared fixtures: an on-disk SQLite database per test, seeded plans and a
shop, a controllable clock and the services wired against them.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_worker.core.database import create_all_tables, create_engine, set_session_factory
from billing_worker.core.database.models import (
    CreditPackage,
    Plan,
    PlanInterval,
    PlanName,
    Shop,
    ShopifySession,
)
from billing_worker.domains.billing.models import CancelledCharge, ChargeCreation
from billing_worker.domains.billing.services import (
    CreditService,
    PaymentService,
    SubscriptionService,
)
from billing_worker.domains.usage.services import UsageLedger

SHOP = "test-shop.myshopify.com"
OTHER_SHOP = "other-shop.myshopify.com"
START = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to"""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'billing.db'}")
    await create_all_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def session_factory(engine):
    factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    set_session_factory(factory)
    yield factory
    set_session_factory(None)


@pytest.fixture
async def seeded(session_factory):
    """Plans, two shops with offline sessions and one credit package"""
    async with session_factory() as session:
        free = Plan(
            name=PlanName.FREE,
            price=Decimal("0.00"),
            interval=PlanInterval.EVERY_30_DAYS,
            ai_request_limit=20,
            ai_rpm=5,
            ai_rpd=10,
            crawl_request_limit=10,
            crawl_rpm=5,
            crawl_rpd=10,
        )
        standard = Plan(
            name=PlanName.STANDARD,
            price=Decimal("30.00"),
            interval=PlanInterval.EVERY_30_DAYS,
            ai_request_limit=100,
            ai_token_limit=10000,
            ai_rpm=3,
            ai_rpd=5,
            ai_tpm=5000,
            ai_tpd=8000,
            crawl_request_limit=50,
            crawl_rpm=10,
            crawl_rpd=40,
        )
        pro = Plan(
            name=PlanName.PRO,
            price=Decimal("99.00"),
            interval=PlanInterval.EVERY_30_DAYS,
            ai_request_limit=1000,
            crawl_request_limit=500,
        )
        shop = Shop(shop_domain=SHOP, email="owner@test-shop.com", installed_at=START)
        other = Shop(shop_domain=OTHER_SHOP, email="owner@other-shop.com", installed_at=START)
        package = CreditPackage(
            name="BOOST_500",
            price=Decimal("10.00"),
            ai_requests=500,
            crawl_requests=100,
        )
        session.add_all([free, standard, pro, shop, other, package])
        session.add_all(
            [
                ShopifySession(id=f"offline_{SHOP}", shop=SHOP, access_token="shpat_test"),
                ShopifySession(id=f"offline_{OTHER_SHOP}", shop=OTHER_SHOP, access_token="shpat_other"),
            ]
        )
        await session.commit()
        return {
            "shop_id": shop.id,
            "other_shop_id": other.id,
            "free_plan_id": free.id,
            "standard_plan_id": standard.id,
            "pro_plan_id": pro.id,
            "package_id": package.id,
        }


@pytest.fixture
def provider():
    """Billing provider stand-in that hands out sequential charge ids"""
    provider = AsyncMock()
    counter = {"next": 9000}

    async def create_charge(shop, *args, **kwargs):
        counter["next"] += 1
        charge_id = str(counter["next"])
        return ChargeCreation(
            confirmation_url=f"https://{shop}/admin/charges/{charge_id}/confirm",
            external_id=charge_id,
        )

    provider.create_recurring_charge.side_effect = create_charge
    provider.create_one_time_charge.side_effect = create_charge
    provider.cancel_recurring_charge.return_value = CancelledCharge(
        status="CANCELLED", created_at=None, updated_at=None, price=None
    )
    return provider


@pytest.fixture
def notifier():
    notifier = AsyncMock()
    notifier.notify.return_value = True
    return notifier


@pytest.fixture
def ledger(session_factory, seeded, clock, notifier):
    return UsageLedger(session_factory=session_factory, notifier=notifier, clock=clock)


@pytest.fixture
def subscriptions(session_factory, seeded, clock, ledger):
    return SubscriptionService(usage_ledger=ledger, session_factory=session_factory, clock=clock)


@pytest.fixture
def payments(session_factory, seeded, clock):
    return PaymentService(session_factory=session_factory, clock=clock)


@pytest.fixture
def credits(session_factory, seeded, clock, provider):
    return CreditService(provider=provider, session_factory=session_factory, clock=clock)


@pytest.fixture
async def active_subscription(subscriptions):
    """STANDARD subscription confirmed at START"""
    await subscriptions.create(SHOP, "STANDARD", "1001")
    return await subscriptions.confirm("1001")
