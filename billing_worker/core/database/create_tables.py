"""
Create all database tables from SQLAlchemy models
"""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from billing_worker.core.logging import get_logger
from .engine import get_engine
from .models import Base

logger = get_logger(__name__)


async def create_all_tables(engine: Optional[AsyncEngine] = None) -> None:
    """Create all tables and indexes; existing ones are left untouched"""
    engine = engine or await get_engine()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database tables verified/created", tables=len(Base.metadata.tables))


async def drop_all_tables(engine: Optional[AsyncEngine] = None) -> None:
    """Drop all tables (use with caution!)"""
    engine = engine or await get_engine()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    logger.warning("Database tables dropped")
