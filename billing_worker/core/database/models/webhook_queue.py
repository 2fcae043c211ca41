"""
Webhook queue models for SQLAlchemy
"""

from sqlalchemy import (
    Column,
    String,
    Integer,
    Text,
    JSON,
    Index,
    Enum as SQLEnum,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB

from .base import BaseModel, UTCDateTime
from .enums import WebhookQueueStatus, WebhookLogOutcome


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class WebhookQueueItem(BaseModel):
    """
    Unit of webhook work.

    Only the queue processor mutates these rows. (topic, shop,
    idempotency_key) is unique among non-failed rows, so a replayed delivery
    resolves to the existing item.
    """

    __tablename__ = "webhook_queue"

    topic = Column(String(100), nullable=False)
    shop = Column(String(255), nullable=False, index=True)
    idempotency_key = Column(String(255), nullable=True)
    payload = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False)

    status = Column(
        SQLEnum(
            WebhookQueueStatus,
            name="webhook_queue_status_enum",
            values_callable=_enum_values,
        ),
        nullable=False,
        default=WebhookQueueStatus.PENDING,
    )
    attempts = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)

    available_at = Column(UTCDateTime(), nullable=False)
    claimed_at = Column(UTCDateTime(), nullable=True)
    processed_at = Column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_webhook_queue_status_available", "status", "available_at"),
        Index(
            "uq_webhook_queue_idempotency",
            "topic",
            "shop",
            "idempotency_key",
            unique=True,
            postgresql_where=text("status <> 'failed' AND idempotency_key IS NOT NULL"),
            sqlite_where=text("status <> 'failed' AND idempotency_key IS NOT NULL"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<WebhookQueueItem(id={self.id}, topic={self.topic}, shop={self.shop}, "
            f"status={self.status}, attempts={self.attempts})>"
        )


class WebhookLog(BaseModel):
    """Append-only record of each processing attempt"""

    __tablename__ = "webhook_logs"

    queue_item_id = Column(String, nullable=False, index=True)
    topic = Column(String(100), nullable=False)
    shop = Column(String(255), nullable=False, index=True)
    outcome = Column(SQLEnum(WebhookLogOutcome, name="webhook_log_outcome_enum"), nullable=False)
    attempt_number = Column(Integer, nullable=False)
    processing_time_ms = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
