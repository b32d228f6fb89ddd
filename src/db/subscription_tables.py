"""Subscription tables: store-backed subscriptions and their immutable event log."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Integer, DateTime, JSON, Boolean, Text,
    ForeignKey, Index, UniqueConstraint, text,
)

from src.db.tables import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionRow(Base):
    """One purchase lifecycle: single source of truth for entitlements.

    A user may have several rows over time (a lapsed purchase followed by a new
    one); only one row per (platform, original_transaction_id) is ever live.
    """
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), nullable=False, index=True)

    # Platform: apple | android
    platform = Column(String(20), nullable=False)
    product_id = Column(String(255), nullable=False)

    # Tier: free | consumer | creator
    tier = Column(String(20), nullable=False, default="consumer")

    # Status: active | trialing | past_due | paused | canceled | expired | unpaid
    status = Column(String(20), nullable=False, default="active", index=True)

    # Store identity: original_transaction_id links every renewal to the purchase
    transaction_id = Column(String(255), nullable=True)
    original_transaction_id = Column(String(500), nullable=False)

    # Dates
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    grace_period_end = Column(DateTime(timezone=True), nullable=True)

    # Store state
    auto_renewing = Column(Boolean, nullable=False, default=False)
    payment_state = Column(Integer, nullable=True)
    acknowledgment_state = Column(Integer, nullable=True)  # Android only
    environment = Column(String(20), nullable=True)  # production | sandbox

    # Apple receipt blob or Google purchase token, kept for re-validation
    receipt_or_token = Column(Text, nullable=True)

    # Ordering watermark: store time of the last applied event
    last_event_at = Column(DateTime(timezone=True), nullable=True)
    last_event_kind = Column(String(50), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_subscriptions_platform_otid", "platform", "original_transaction_id"),
        Index("ix_subscriptions_user_created", "user_id", "created_at"),
        # At most one live row per purchase, across every worker process
        Index(
            "uq_subscriptions_live_purchase", "platform", "original_transaction_id",
            unique=True,
            postgresql_where=text("status <> 'expired'"),
            sqlite_where=text("status <> 'expired'"),
        ),
    )

    def to_dict(self) -> dict:
        def _iso(dt):
            return dt.isoformat() if dt else None

        return {
            "id": self.id,
            "user_id": self.user_id,
            "platform": self.platform,
            "product_id": self.product_id,
            "tier": self.tier,
            "status": self.status,
            "transaction_id": self.transaction_id,
            "original_transaction_id": self.original_transaction_id,
            "current_period_start": _iso(self.current_period_start),
            "current_period_end": _iso(self.current_period_end),
            "canceled_at": _iso(self.canceled_at),
            "grace_period_end": _iso(self.grace_period_end),
            "auto_renewing": bool(self.auto_renewing),
            "payment_state": self.payment_state,
            "acknowledgment_state": self.acknowledgment_state,
            "environment": self.environment,
        }


class SubscriptionEventRow(Base):
    """Immutable log of every lifecycle input (validations, notifications, cancels)."""
    __tablename__ = "subscription_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    subscription_id = Column(
        String(36), ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True
    )
    user_id = Column(String(36), nullable=True, index=True)

    # Source: validation | apple | google | user | system
    source = Column(String(20), nullable=False)

    # Lifecycle event kind, or the raw store notification type when unmapped
    event_type = Column(String(100), nullable=False)

    # Apple notificationUUID / Pub/Sub messageId
    external_id = Column(String(255), nullable=True)

    # received | applied | ignored | stale | duplicate | unknown_subscription | failed
    status = Column(String(30), nullable=False, default="received", index=True)

    event_time = Column(DateTime(timezone=True), nullable=True)
    payload = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("source", "external_id", name="uq_subscription_events_source_external"),
        Index("ix_subscription_events_source_type", "source", "event_type"),
    )
