"""
Session model for SQLAlchemy

Shopify OAuth sessions; offline sessions carry the Admin API access token.
"""

from sqlalchemy import Column, String, Boolean, Index

from .base import Base, UTCDateTime
from billing_worker.shared.helpers.datetime_utils import now_utc


class ShopifySession(Base):
    """Shopify app session"""

    __tablename__ = "sessions"

    id = Column(String, primary_key=True)
    shop = Column(String(255), nullable=False)
    state = Column(String(255), nullable=False, default="")
    is_online = Column(Boolean, nullable=False, default=False)
    scope = Column(String(500), nullable=True)
    expires = Column(UTCDateTime(), nullable=True)
    access_token = Column(String(1000), nullable=False)
    created_at = Column(UTCDateTime(), nullable=False, default=now_utc)

    __table_args__ = (Index("ix_sessions_shop", "shop"),)

    def __repr__(self) -> str:
        return f"<ShopifySession(id={self.id}, shop={self.shop}, online={self.is_online})>"
