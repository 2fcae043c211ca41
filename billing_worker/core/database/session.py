"""
SQLAlchemy async session management for the billing worker

Every public operation of the engine is one unit of work: it opens a
transaction through get_transaction_context()/run_in_transaction(), performs
its conditional updates, and commits or rolls back as a whole.
"""

import asyncio
from contextlib import asynccontextmanager
from functools import wraps
from typing import AsyncGenerator, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_worker.core.logging import get_logger
from .engine import get_engine

logger = get_logger(__name__)

T = TypeVar("T")

# Global session factory
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None
_session_factory_lock = asyncio.Lock()


async def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the async session factory"""
    global _session_factory

    if _session_factory is None:
        async with _session_factory_lock:
            if _session_factory is None:
                engine = await get_engine()
                _session_factory = async_sessionmaker(
                    bind=engine,
                    class_=AsyncSession,
                    expire_on_commit=False,  # Keep objects accessible after commit
                    autoflush=True,
                )

    return _session_factory


def set_session_factory(factory: Optional[async_sessionmaker[AsyncSession]]) -> None:
    """Install the global session factory (bootstrap and tests)"""
    global _session_factory
    _session_factory = factory


async def _resolve_factory(
    session_factory: Optional[async_sessionmaker[AsyncSession]],
) -> async_sessionmaker[AsyncSession]:
    if session_factory is not None:
        return session_factory
    return await get_session_factory()


@asynccontextmanager
async def get_session_context(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Context manager for read-only database sessions with automatic cleanup.

    Usage:
        async with get_session_context() as session:
            result = await session.execute(query)
    """
    factory = await _resolve_factory(session_factory)
    session = factory()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


@asynccontextmanager
async def get_transaction_context(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Context manager for database transactions with automatic rollback on error.

    Usage:
        async with get_transaction_context() as session:
            # committed automatically when the block exits cleanly
            await session.execute(query)
    """
    factory = await _resolve_factory(session_factory)
    session = factory()
    try:
        yield session
        await session.commit()
    except Exception as e:
        logger.debug(
            "Database transaction rolled back",
            error_type=type(e).__name__,
            error=str(e),
        )
        await session.rollback()
        raise
    finally:
        await session.close()


@asynccontextmanager
async def transaction_scope(
    session: Optional[AsyncSession] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Join the caller's session when one is given, otherwise open a new transaction"""
    if session is not None:
        yield session
        return

    async with get_transaction_context(session_factory) as new_session:
        yield new_session


async def run_in_transaction(
    fn: Callable[[AsyncSession], Awaitable[T]],
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> T:
    """Run fn(session) inside a single transaction and return its result"""
    async with get_transaction_context(session_factory) as session:
        return await fn(session)


def _is_retryable(error: Exception) -> bool:
    error_str = str(error).lower()
    return (
        "connection" in error_str
        or "timeout" in error_str
        or "database is locked" in error_str
        or "server has gone away" in error_str
    )


async def with_database_retry(
    operation: Callable[[], Awaitable[T]],
    operation_name: str,
    max_retries: int = 3,
    retry_delay: float = 1.0,
    backoff_multiplier: float = 2.0,
) -> T:
    """
    Execute a database operation, retrying transient connection failures.

    Non-transient errors propagate immediately so the caller (usually a cron
    endpoint) can alert.
    """
    for attempt in range(max_retries + 1):
        try:
            return await operation()
        except (DisconnectionError, OperationalError) as e:
            if _is_retryable(e) and attempt < max_retries:
                logger.warning(
                    f"Database error in {operation_name}, retrying",
                    attempt=attempt + 1,
                    max_retries=max_retries,
                    error_type=type(e).__name__,
                )
                await asyncio.sleep(retry_delay * (backoff_multiplier**attempt))
                continue

            logger.error(
                f"Database operation {operation_name} failed",
                attempt=attempt + 1,
                error=str(e),
            )
            raise


def database_retry(operation_name: str, max_retries: int = 3, retry_delay: float = 1.0):
    """
    Decorator form of with_database_retry.

    Usage:
        @database_retry("drain_webhook_queue")
        async def drain():
            ...
    """

    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            async def operation():
                return await func(*args, **kwargs)

            return await with_database_retry(
                operation, operation_name, max_retries=max_retries, retry_delay=retry_delay
            )

        return wrapper

    return decorator
