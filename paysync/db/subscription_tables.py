"""Subscription tables — one billing cycle per user, and the payment ledger."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, DateTime, JSON, ForeignKey, Index

from paysync.db.tables import Base


class SubscriptionRow(Base):
    """A user's subscription — at most one row per user."""
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True, unique=True)

    # Status: active | canceled | past_due | expired
    status = Column(String(20), nullable=False, default="active")
    plan_id = Column(String(100), nullable=False)

    current_period_start = Column(DateTime(timezone=True), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=False)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class PaymentRow(Base):
    """A payment fact reported by the provider, keyed by its provider payment id."""
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    # Set only once the subscription transition for this payment has run
    subscription_id = Column(String(36), ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True)

    provider_payment_id = Column(String(255), nullable=False, unique=True)

    # Amount in minor units (cents, kobo, ...)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)

    # Status: pending | succeeded | failed | refunded
    status = Column(String(20), nullable=False)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    # Latest raw payload (for debugging / reconciliation)
    payload = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_payments_status_created", "status", "created_at"),
    )
