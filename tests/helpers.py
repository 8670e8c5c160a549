"""Payload builders shared by test modules."""
from __future__ import annotations


def webhook_body(**overrides) -> dict:
    """A successful pro_monthly payment (499 USD) unless overridden. ``None`` drops a field."""
    body = {
        "event_id": "evt_1",
        "event_type": "payment.succeeded",
        "external_payment_id": "pay_1",
        "amount": 499,
        "currency": "USD",
        "external_customer_id": "cus_1",
        "paid_at": "2026-01-01T00:00:00+00:00",
    }
    body.update(overrides)
    return {k: v for k, v in body.items() if v is not None}
