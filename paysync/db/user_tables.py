"""User table — identity anchor that payments resolve to.

Users are provisioned outside the webhook pipeline; the pipeline only matches
(and row-locks) them.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime

from paysync.db.tables import Base


class UserRow(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    # Both are optional; NULLs never collide on a unique constraint
    email = Column(String(320), nullable=True, unique=True, index=True)
    external_customer_id = Column(String(255), nullable=True, unique=True, index=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
