"""
Base model class for SQLAlchemy models

Provides common functionality and base configuration for all models.
"""

import uuid
from typing import Any, Dict

from sqlalchemy import Column, String, DateTime, ForeignKey
from sqlalchemy.orm import declarative_base, declared_attr
from sqlalchemy.types import TypeDecorator

from billing_worker.shared.helpers.datetime_utils import now_utc, ensure_utc

# Create the declarative base
Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC timestamp on every backend.

    Postgres stores TIMESTAMP WITH TIME ZONE natively; SQLite has no zone
    support, so values are written as naive UTC and re-tagged on read.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = ensure_utc(value)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        return ensure_utc(value)


class TimestampMixin:
    """Mixin for models that need created_at and updated_at timestamps"""

    created_at = Column("created_at", UTCDateTime(), default=now_utc, nullable=False)
    updated_at = Column(
        "updated_at",
        UTCDateTime(),
        default=now_utc,
        onupdate=now_utc,
        nullable=False,
    )


class IDMixin:
    """Mixin for models that need a primary key ID"""

    @declared_attr
    def id(cls):
        return Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))


class BaseModel(Base, IDMixin, TimestampMixin):
    """
    Base model class with common functionality.

    All models should inherit from this class to get:
    - Automatic ID generation
    - Created/updated timestamps
    - Common utility methods
    """

    __abstract__ = True

    def to_dict(self) -> Dict[str, Any]:
        """Convert model instance to dictionary"""
        return {
            column.name: getattr(self, column.key)
            for column in self.__table__.columns
        }

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(id={self.id})>"


class ShopMixin:
    """Mixin for models that belong to a shop"""

    @declared_attr
    def shop_id(cls):
        return Column(
            "shop_id",
            String,
            ForeignKey("shops.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        )
