"""
Database module for the billing worker

Uses SQLAlchemy async for all database operations.
"""

from .engine import get_engine, close_engine, create_engine, get_database_url
from .create_tables import create_all_tables, drop_all_tables
from .session import (
    get_session_factory,
    set_session_factory,
    get_session_context,
    get_transaction_context,
    transaction_scope,
    run_in_transaction,
    with_database_retry,
    database_retry,
)

__all__ = [
    "get_engine",
    "close_engine",
    "create_engine",
    "get_database_url",
    "create_all_tables",
    "drop_all_tables",
    "get_session_factory",
    "set_session_factory",
    "get_session_context",
    "get_transaction_context",
    "transaction_scope",
    "run_in_transaction",
    "with_database_retry",
    "database_retry",
]
