"""Billing data models — statuses, outcome codes and the inbound webhook payload."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    EXPIRED = "expired"


class WebhookStatus(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"
    IGNORED = "ignored"


TERMINAL_STATUSES = frozenset({WebhookStatus.PROCESSED.value, WebhookStatus.IGNORED.value})


class ErrorCode(str, Enum):
    AMOUNT_MISMATCH = "amount_mismatch"
    UNKNOWN_PLAN = "unknown_plan"
    USER_MISSING = "user_missing"
    INTERNAL_ERROR = "internal_error"
    PAYMENT_NOT_SUCCEEDED = "payment_not_succeeded"
    DUPLICATE_PAYMENT = "duplicate_payment"
    UNSUPPORTED_EVENT = "unsupported_event"


# Failed rows with these codes may succeed on a later attempt without a new payload
RETRYABLE_ERROR_CODES = frozenset({ErrorCode.INTERNAL_ERROR.value, ErrorCode.USER_MISSING.value})


# Provider event types → payment status, used when the payload carries no explicit status
EVENT_TYPE_STATUS: dict[str, PaymentStatus] = {
    "payment.succeeded": PaymentStatus.SUCCEEDED,
    "charge.succeeded": PaymentStatus.SUCCEEDED,
    "charge.success": PaymentStatus.SUCCEEDED,
    "invoice.paid": PaymentStatus.SUCCEEDED,
    "payment.pending": PaymentStatus.PENDING,
    "payment.failed": PaymentStatus.FAILED,
    "charge.failed": PaymentStatus.FAILED,
    "invoice.payment_failed": PaymentStatus.FAILED,
    "payment.refunded": PaymentStatus.REFUNDED,
    "charge.refunded": PaymentStatus.REFUNDED,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class WebhookPayload(BaseModel):
    """Minimum fields a payment webhook must carry. Extra provider fields are kept."""
    model_config = ConfigDict(extra="allow")

    event_id: Optional[str] = None
    event_type: str = Field(min_length=1)
    external_payment_id: str = Field(min_length=1)
    amount: int = Field(ge=0)  # minor units
    currency: str = Field(min_length=3, max_length=3)

    external_customer_id: Optional[str] = None
    email: Optional[str] = None
    plan_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    status: Optional[PaymentStatus] = None

    @field_validator("event_id", "external_payment_id", "external_customer_id", mode="before")
    @classmethod
    def _ids_as_strings(cls, value: Any) -> Any:
        # Some providers send numeric ids
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("event_id", "external_customer_id", "email", "plan_id", mode="before")
    @classmethod
    def _blank_is_missing(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @field_validator("email")
    @classmethod
    def _lower_email(cls, value: Optional[str]) -> Optional[str]:
        return value.strip().lower() if value else value

    def payment_status(self) -> Optional[PaymentStatus]:
        """Explicit status wins; otherwise derive it from the event type."""
        if self.status is not None:
            return self.status
        return EVENT_TYPE_STATUS.get(self.event_type)
