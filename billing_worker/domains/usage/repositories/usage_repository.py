"""
Usage Repository for database operations
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update, delete, and_, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from billing_worker.core.database.models import UsageCounter, UsageEvent, UsageService


@dataclass(frozen=True)
class WindowTotals:
    calls: int
    tokens: int
    oldest_at: Optional[datetime]


class UsageRepository:
    """Counter and event-log access for the usage ledger"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _insert(self, model):
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert(model)
        if dialect == "sqlite":
            return sqlite_insert(model)
        raise NotImplementedError(f"Upsert not supported on {dialect}")

    # ============= COUNTERS =============

    async def get_counter(self, shop_id: str, service: UsageService) -> Optional[UsageCounter]:
        result = await self.session.execute(
            select(UsageCounter)
            .where(and_(UsageCounter.shop_id == shop_id, UsageCounter.service == service))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_or_create_counter(
        self, shop_id: str, service: UsageService, now: datetime
    ) -> UsageCounter:
        counter = await self.get_counter(shop_id, service)
        if counter is not None:
            return counter

        # Concurrent first calls for the same shop race on the unique constraint
        stmt = (
            self._insert(UsageCounter)
            .values(shop_id=shop_id, service=service, cycle_start=now)
            .on_conflict_do_nothing(index_elements=["shop_id", "service"])
        )
        await self.session.execute(stmt)
        return await self.get_counter(shop_id, service)

    async def increment_counter(
        self, counter_id: str, expected_version: int, calls: int, tokens: int
    ) -> bool:
        result = await self.session.execute(
            update(UsageCounter)
            .where(and_(UsageCounter.id == counter_id, UsageCounter.version == expected_version))
            .values(
                total_requests=UsageCounter.total_requests + calls,
                total_tokens=UsageCounter.total_tokens + tokens,
                version=UsageCounter.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def release_counter(
        self, counter_id: str, expected_version: int, calls: int, tokens: int
    ) -> bool:
        """Undo a reservation whose external call never happened"""
        floor_at_zero = (
            func.max if self.session.get_bind().dialect.name == "sqlite" else func.greatest
        )
        result = await self.session.execute(
            update(UsageCounter)
            .where(and_(UsageCounter.id == counter_id, UsageCounter.version == expected_version))
            .values(
                total_requests=floor_at_zero(UsageCounter.total_requests - calls, 0),
                total_tokens=floor_at_zero(UsageCounter.total_tokens - tokens, 0),
                version=UsageCounter.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def claim_notification_threshold(
        self, counter_id: str, expected_threshold: int, new_threshold: int
    ) -> bool:
        result = await self.session.execute(
            update(UsageCounter)
            .where(
                and_(
                    UsageCounter.id == counter_id,
                    UsageCounter.last_notified_threshold == expected_threshold,
                )
            )
            .values(last_notified_threshold=new_threshold)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def reset_counters(self, shop_id: str, now: datetime) -> int:
        result = await self.session.execute(
            update(UsageCounter)
            .where(UsageCounter.shop_id == shop_id)
            .values(
                total_requests=0,
                total_tokens=0,
                last_notified_threshold=0,
                cycle_start=now,
                version=UsageCounter.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(
            delete(UsageEvent)
            .where(UsageEvent.shop_id == shop_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    # ============= EVENTS =============

    async def add_event(
        self,
        shop_id: str,
        service: UsageService,
        calls: int,
        tokens: int,
        occurred_at: datetime,
    ) -> UsageEvent:
        event = UsageEvent(
            shop_id=shop_id,
            service=service,
            calls=calls,
            tokens=tokens,
            occurred_at=occurred_at,
        )
        self.session.add(event)
        await self.session.flush()
        return event

    async def get_event(self, event_id: str) -> Optional[UsageEvent]:
        return await self.session.get(UsageEvent, event_id)

    async def delete_event(self, event_id: str) -> bool:
        result = await self.session.execute(
            delete(UsageEvent)
            .where(UsageEvent.id == event_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def window_totals(
        self, shop_id: str, service: UsageService, since: datetime
    ) -> WindowTotals:
        """Calls and tokens recorded after ``since`` (exclusive)"""
        result = await self.session.execute(
            select(
                func.coalesce(func.sum(UsageEvent.calls), 0),
                func.coalesce(func.sum(UsageEvent.tokens), 0),
                func.min(UsageEvent.occurred_at),
            ).where(
                and_(
                    UsageEvent.shop_id == shop_id,
                    UsageEvent.service == service,
                    UsageEvent.occurred_at > since,
                )
            )
        )
        calls, tokens, oldest_at = result.one()
        return WindowTotals(calls=int(calls), tokens=int(tokens), oldest_at=oldest_at)

    async def purge_events_before(self, cutoff: datetime) -> int:
        result = await self.session.execute(
            delete(UsageEvent)
            .where(UsageEvent.occurred_at <= cutoff)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
