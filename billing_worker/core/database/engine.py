"""
SQLAlchemy async engine configuration for the billing worker
"""

import asyncio
from typing import Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine
from sqlalchemy.pool import NullPool

from billing_worker.core.config.settings import settings
from billing_worker.core.logging import get_logger

logger = get_logger(__name__)

# Global engine instance
_engine: Optional[AsyncEngine] = None
_engine_lock = asyncio.Lock()


def get_database_url(database_url: Optional[str] = None) -> str:
    """Get the database URL with proper async driver"""
    database_url = database_url or settings.database.DATABASE_URL

    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql+asyncpg://", 1)
    elif database_url.startswith("sqlite://"):
        database_url = database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)

    return database_url


def create_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Create SQLAlchemy async engine"""
    database_url = get_database_url(database_url)
    is_postgres = database_url.startswith("postgresql")

    engine = create_async_engine(
        database_url,
        echo=settings.database.SQLALCHEMY_ECHO,
        echo_pool=settings.database.SQLALCHEMY_ECHO_POOL,
        poolclass=NullPool,
        connect_args=(
            {
                "command_timeout": settings.database.DATABASE_QUERY_TIMEOUT,
                "server_settings": {"application_name": "billing-worker"},
            }
            if is_postgres
            else {}
        ),
    )

    if database_url.startswith("sqlite"):

        @event.listens_for(engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            """Enable WAL and wait on locks instead of failing immediately"""
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


async def get_engine() -> AsyncEngine:
    """Get or create the global async database engine"""
    global _engine

    if _engine is None:
        async with _engine_lock:
            # Double-check pattern to avoid race conditions
            if _engine is None:
                _engine = create_engine()
                logger.info(
                    "Database engine created",
                    dialect=_engine.dialect.name,
                )

    return _engine


async def close_engine() -> None:
    """Dispose the global engine"""
    global _engine

    if _engine is not None:
        try:
            await _engine.dispose()
        finally:
            _engine = None
