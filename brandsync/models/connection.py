"""
Platform Connection Model

One brand's credential/link to one external platform (Meta Ads or Shopify).
"""
from sqlalchemy import Column, Integer, String, DateTime, Date, Text, UniqueConstraint
from brandsync.utils.helpers import utcnow

from brandsync.models.base import Base


class Platform:
    META = "meta"
    SHOPIFY = "shopify"

    ALL = (META, SHOPIFY)


class ConnectionStatus:
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class PlatformConnection(Base):
    """
    Per-brand, per-platform OAuth credential and sync cursor

    Created on OAuth callback, expired when the platform rejects the token,
    revoked and deleted on disconnect.
    """
    __tablename__ = "platform_connections"
    __table_args__ = (
        UniqueConstraint("brand_id", "platform", name="uq_platform_connections_brand_platform"),
    )

    id = Column(Integer, primary_key=True, index=True)

    brand_id = Column(String, index=True, nullable=False)
    platform = Column(String, index=True, nullable=False)  # meta, shopify

    # Credential (opaque secret, never logged)
    access_token = Column(Text, nullable=False)
    # Meta ad account id (act_123) or Shopify shop domain (store.myshopify.com)
    account_id = Column(String, nullable=False)

    status = Column(String, index=True, default=ConnectionStatus.PENDING, nullable=False)
    last_error = Column(Text, nullable=True)

    # Sync cursor
    last_synced_at = Column(DateTime, nullable=True)
    last_synced_date = Column(Date, nullable=True)  # Newest data date written by a completed job

    # Timestamps
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    expired_at = Column(DateTime, nullable=True)
