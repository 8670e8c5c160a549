"""Webhook event table — one row per inbound delivery attempt."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, Text, DateTime, JSON, Index, UniqueConstraint, text

from paysync.db.tables import Base


class WebhookEventRow(Base):
    """A delivery, not a fact. Failed rows double as the retry queue."""
    __tablename__ = "webhook_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    provider = Column(String(40), nullable=False)
    # Provider's event id; absent for providers that don't send one
    event_id = Column(String(255), nullable=True)
    event_type = Column(String(100), nullable=False)
    provider_payment_id = Column(String(255), nullable=True, index=True)

    payload = Column(JSON, nullable=True)

    # Status: received | processed | failed | ignored
    status = Column(String(20), nullable=False, default="received")
    error_code = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    processed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event_id"),
        # A payment fact is marked fully applied by at most one event record
        Index(
            "uq_webhook_events_processed_payment",
            "provider_payment_id",
            unique=True,
            postgresql_where=text("status = 'processed'"),
            sqlite_where=text("status = 'processed'"),
        ),
        Index("ix_webhook_events_status_created", "status", "created_at"),
    )
