"""Tests for the webhook processor — the exactly-once pipeline end to end."""
from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from paysync.db.engine import build_engine
from paysync.db.subscription_tables import PaymentRow, SubscriptionRow
from paysync.db.tables import Base
from paysync.db.user_tables import UserRow
from paysync.db.webhook_tables import WebhookEventRow
from paysync.models.billing import PaymentStatus, as_utc
from paysync.services.ledger import PaymentLedger
from paysync.services.plans import PlanCatalog
from paysync.services.processor import WebhookProcessor
from paysync.services.subscription_machine import SubscriptionStateMachine
from paysync.services.signatures import sign_payload
from tests.helpers import webhook_body

PAID = datetime(2026, 1, 1, tzinfo=timezone.utc)
MONTH = timedelta(days=30)


async def _deliver(processor, body: dict, provider: str = "generic"):
    raw = json.dumps(body).encode()
    headers = sign_payload(provider, raw, processor.secret_for(provider))
    return await processor.handle(provider, raw, headers)


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def _event(session_factory, event_id: str) -> WebhookEventRow:
    async with session_factory() as session:
        result = await session.execute(select(WebhookEventRow).where(WebhookEventRow.event_id == event_id))
        return result.scalar_one()


async def _payment(session_factory, payment_id: str) -> PaymentRow | None:
    async with session_factory() as session:
        return await PaymentLedger(session).get(payment_id)


async def _subscription(session_factory, user_id: str) -> SubscriptionRow | None:
    async with session_factory() as session:
        result = await session.execute(select(SubscriptionRow).where(SubscriptionRow.user_id == user_id))
        return result.scalar_one_or_none()


# ── Rejections (nothing persisted) ──


@pytest.mark.asyncio
class TestRejections:
    async def test_empty_body(self, processor, session_factory):
        result = await processor.handle("generic", b"", {})
        assert (result.status_code, result.outcome) == (400, "rejected")
        assert await _count(session_factory, WebhookEventRow) == 0

    async def test_bad_signature(self, processor, session_factory):
        raw = json.dumps(webhook_body()).encode()
        result = await processor.handle("generic", raw, {"x-webhook-signature": "sha256=00"})
        assert result.status_code == 401
        assert await _count(session_factory, WebhookEventRow) == 0

    async def test_malformed_json(self, processor):
        raw = b"{not json"
        result = await processor.handle("generic", raw, sign_payload("generic", raw, processor.secret_for("generic")))
        assert result.status_code == 400

    async def test_json_array_is_malformed(self, processor):
        raw = b"[1, 2]"
        result = await processor.handle("generic", raw, sign_payload("generic", raw, processor.secret_for("generic")))
        assert result.status_code == 400

    async def test_missing_fields(self, processor, session_factory):
        result = await _deliver(processor, {"event_id": "evt_1", "event_type": "payment.succeeded"})
        assert result.status_code == 422
        assert "amount" in result.message
        assert await _count(session_factory, WebhookEventRow) == 0
        assert await _count(session_factory, PaymentRow) == 0


# ── Scenarios ──


@pytest.mark.asyncio
class TestScenarios:
    async def test_a_first_payment_creates_subscription(self, processor, session_factory, make_user):
        user = await make_user(external_customer_id="cus_1")

        result = await _deliver(processor, webhook_body(event_id="e1", external_payment_id="p1"))

        assert result.status_code == 200
        assert result.body() == {"status": "processed", "event_id": "e1", "error": None}
        sub = await _subscription(session_factory, user.id)
        assert sub.status == "active"
        assert as_utc(sub.current_period_start) == PAID
        assert as_utc(sub.current_period_end) == PAID + MONTH

        event = await _event(session_factory, "e1")
        assert event.status == "processed"
        assert event.processed_at is not None
        payment = await _payment(session_factory, "p1")
        assert payment.subscription_id == sub.id
        assert payment.user_id == user.id

    async def test_b_redelivery_is_acknowledged_without_changes(self, processor, session_factory, make_user):
        user = await make_user(external_customer_id="cus_1")
        body = webhook_body(event_id="e1", external_payment_id="p1")
        await _deliver(processor, body)
        before = await _subscription(session_factory, user.id)

        result = await _deliver(processor, body)

        assert result.status_code == 200
        assert result.outcome == "duplicate"
        assert await _count(session_factory, WebhookEventRow) == 1
        assert await _count(session_factory, PaymentRow) == 1
        assert await _count(session_factory, SubscriptionRow) == 1
        after = await _subscription(session_factory, user.id)
        assert as_utc(after.current_period_end) == as_utc(before.current_period_end)

    async def test_c_amount_mismatch_conflicts(self, processor, session_factory, make_user):
        user = await make_user(external_customer_id="cus_1")
        await _deliver(processor, webhook_body(event_id="e1", external_payment_id="p1"))
        before = await _subscription(session_factory, user.id)

        result = await _deliver(processor, webhook_body(event_id="e2", external_payment_id="p2", amount=1))

        assert result.status_code == 409
        assert result.error == "amount_mismatch"
        event = await _event(session_factory, "e2")
        assert (event.status, event.error_code) == ("failed", "amount_mismatch")
        # Recorded for audit, never applied
        payment = await _payment(session_factory, "p2")
        assert payment.amount == 1
        assert payment.subscription_id is None
        after = await _subscription(session_factory, user.id)
        assert as_utc(after.current_period_end) == as_utc(before.current_period_end)
        assert after.updated_at == before.updated_at

    async def test_d_user_missing_then_provisioned(self, processor, session_factory, make_user):
        body = webhook_body(event_id="e1", external_payment_id="p1", external_customer_id="cus_late")

        first = await _deliver(processor, body)

        assert first.status_code == 202
        assert first.error == "user_missing"
        event = await _event(session_factory, "e1")
        assert (event.status, event.error_code) == ("failed", "user_missing")
        payment = await _payment(session_factory, "p1")
        assert payment is not None
        assert payment.user_id is None
        assert await _count(session_factory, SubscriptionRow) == 0

        user = await make_user(external_customer_id="cus_late")
        second = await _deliver(processor, body)

        assert second.status_code == 200
        assert second.outcome == "processed"
        event = await _event(session_factory, "e1")
        assert event.status == "processed"
        assert event.error_code is None
        assert event.attempts == 2
        assert await _count(session_factory, WebhookEventRow) == 1
        assert await _count(session_factory, PaymentRow) == 1
        sub = await _subscription(session_factory, user.id)
        assert as_utc(sub.current_period_end) == PAID + MONTH
        assert (await _payment(session_factory, "p1")).user_id == user.id

    async def test_second_payment_extends(self, processor, session_factory, make_user):
        user = await make_user(external_customer_id="cus_1")
        await _deliver(processor, webhook_body(event_id="e1", external_payment_id="p1"))
        result = await _deliver(processor, webhook_body(event_id="e2", external_payment_id="p2"))

        assert result.status_code == 200
        sub = await _subscription(session_factory, user.id)
        assert as_utc(sub.current_period_end) == PAID + 2 * MONTH

    async def test_email_resolves_user(self, processor, session_factory, make_user):
        user = await make_user(email="ada@example.com")
        result = await _deliver(
            processor, webhook_body(external_customer_id=None, email="ADA@example.com"),
        )
        assert result.status_code == 200
        assert await _subscription(session_factory, user.id) is not None


# ── Idempotency across keys ──


@pytest.mark.asyncio
class TestIdempotency:
    async def test_same_payment_new_event_id_extends_once(self, processor, session_factory, make_user):
        user = await make_user(external_customer_id="cus_1")
        await _deliver(processor, webhook_body(event_id="e1", external_payment_id="p1"))

        result = await _deliver(processor, webhook_body(event_id="e1-retry", external_payment_id="p1"))

        assert result.status_code == 200
        assert result.error == "duplicate_payment"
        event = await _event(session_factory, "e1-retry")
        assert (event.status, event.error_code) == ("ignored", "duplicate_payment")
        sub = await _subscription(session_factory, user.id)
        assert as_utc(sub.current_period_end) == PAID + MONTH
        assert await _count(session_factory, PaymentRow) == 1

    async def test_applied_payment_redelivered_for_another_customer(self, processor, session_factory, make_user):
        owner = await make_user(external_customer_id="cus_1")
        other = await make_user(external_customer_id="cus_2")
        await _deliver(processor, webhook_body(event_id="e1", external_payment_id="p1"))

        result = await _deliver(
            processor, webhook_body(event_id="e2", external_payment_id="p1", external_customer_id="cus_2")
        )

        assert (result.status_code, result.outcome, result.error) == (200, "duplicate", "duplicate_payment")
        event = await _event(session_factory, "e2")
        assert (event.status, event.error_code) == ("ignored", "duplicate_payment")
        assert await _count(session_factory, SubscriptionRow) == 1
        assert await _subscription(session_factory, other.id) is None
        owner_sub = await _subscription(session_factory, owner.id)
        assert as_utc(owner_sub.current_period_end) == PAID + MONTH
        payment = await _payment(session_factory, "p1")
        assert payment.subscription_id == owner_sub.id
        assert payment.user_id == owner.id

    async def test_applied_payment_redelivered_without_customer(self, processor, session_factory, make_user):
        user = await make_user(external_customer_id="cus_1")
        await _deliver(processor, webhook_body(event_id="e1", external_payment_id="p1"))

        result = await _deliver(
            processor, webhook_body(event_id="e2", external_payment_id="p1", external_customer_id=None)
        )

        assert (result.status_code, result.error) == (200, "duplicate_payment")
        event = await _event(session_factory, "e2")
        # Terminal, so the retry sweep never picks it up
        assert (event.status, event.error_code) == ("ignored", "duplicate_payment")
        sub = await _subscription(session_factory, user.id)
        assert as_utc(sub.current_period_end) == PAID + MONTH

    async def test_missing_event_id_falls_back_to_payment_key(self, processor, session_factory, make_user):
        user = await make_user(external_customer_id="cus_1")
        body = webhook_body(event_id=None, external_payment_id="p1")

        first = await _deliver(processor, body)
        second = await _deliver(processor, body)

        assert first.outcome == "processed"
        assert second.status_code == 200
        assert second.error == "duplicate_payment"
        assert await _count(session_factory, WebhookEventRow) == 2
        assert await _count(session_factory, PaymentRow) == 1
        sub = await _subscription(session_factory, user.id)
        assert as_utc(sub.current_period_end) == PAID + MONTH

    async def test_payment_recorded_but_never_applied_is_completed(self, processor, session_factory, make_user):
        """A payment row left without its subscription step is picked up by the next delivery."""
        user = await make_user(external_customer_id="cus_1")
        async with session_factory() as session:
            await PaymentLedger(session).upsert("p1", 499, "USD", PaymentStatus.SUCCEEDED, PAID, {})
            await session.commit()

        result = await _deliver(processor, webhook_body(event_id="e1", external_payment_id="p1"))

        assert result.outcome == "processed"
        sub = await _subscription(session_factory, user.id)
        assert as_utc(sub.current_period_end) == PAID + MONTH
        assert await _count(session_factory, PaymentRow) == 1


# ── Crash recovery ──


@pytest.mark.asyncio
class TestCrashRecovery:
    async def test_crash_then_retry_extends_exactly_once(self, processor, session_factory, make_user, monkeypatch):
        user = await make_user(external_customer_id="cus_1")
        await _deliver(processor, webhook_body(event_id="e1", external_payment_id="p1"))

        original_apply = SubscriptionStateMachine.apply
        calls = {"n": 0}

        async def crash_once(self, *args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("connection reset mid-transaction")
            return await original_apply(self, *args, **kwargs)

        monkeypatch.setattr(SubscriptionStateMachine, "apply", crash_once)
        body = webhook_body(event_id="e2", external_payment_id="p2")

        crashed = await _deliver(processor, body)

        assert crashed.status_code == 500
        assert crashed.error == "internal_error"
        event = await _event(session_factory, "e2")
        assert (event.status, event.error_code) == ("failed", "internal_error")
        assert "connection reset" in event.error_message
        # The whole atomic scope rolled back, payment included
        assert await _payment(session_factory, "p2") is None
        sub = await _subscription(session_factory, user.id)
        assert as_utc(sub.current_period_end) == PAID + MONTH

        retried = await _deliver(processor, body)

        assert retried.status_code == 200
        assert retried.outcome == "processed"
        sub = await _subscription(session_factory, user.id)
        assert as_utc(sub.current_period_end) == PAID + 2 * MONTH
        assert (await _payment(session_factory, "p2")).subscription_id == sub.id

        # And a third delivery after success changes nothing
        again = await _deliver(processor, body)
        assert again.outcome == "duplicate"
        sub = await _subscription(session_factory, user.id)
        assert as_utc(sub.current_period_end) == PAID + 2 * MONTH

    async def test_failed_recovery_write_does_not_mask_error(self, processor, monkeypatch, make_user):
        await make_user(external_customer_id="cus_1")

        async def boom(*args, **kwargs):
            raise RuntimeError("store unavailable")

        monkeypatch.setattr(SubscriptionStateMachine, "apply", boom)
        monkeypatch.setattr("paysync.services.webhook_events.WebhookEventStore.finalize", boom)

        result = await _deliver(processor, webhook_body())

        assert result.status_code == 500
        assert result.error == "internal_error"


# ── Ignored deliveries ──


@pytest.mark.asyncio
class TestIgnored:
    async def test_unsupported_event_type(self, processor, session_factory):
        result = await _deliver(processor, webhook_body(event_type="customer.updated"))
        assert result.status_code == 200
        assert result.outcome == "ignored"
        event = await _event(session_factory, "evt_1")
        assert (event.status, event.error_code) == ("ignored", "unsupported_event")
        assert await _count(session_factory, PaymentRow) == 0

    async def test_failed_payment_is_recorded_not_applied(self, processor, session_factory, make_user):
        user = await make_user(external_customer_id="cus_1")
        result = await _deliver(processor, webhook_body(event_type="payment.failed", paid_at=None))

        assert result.status_code == 200
        assert result.error == "payment_not_succeeded"
        payment = await _payment(session_factory, "pay_1")
        assert payment.status == "failed"
        assert payment.paid_at is None
        assert await _subscription(session_factory, user.id) is None

    async def test_ignored_event_is_terminal(self, processor, session_factory, make_user):
        await make_user(external_customer_id="cus_1")
        await _deliver(processor, webhook_body(event_type="payment.pending"))
        result = await _deliver(processor, webhook_body(event_type="payment.pending"))
        assert result.outcome == "duplicate"
        assert (await _event(session_factory, "evt_1")).attempts == 1


# ── Unknown plan ──


@pytest.mark.asyncio
async def test_unknown_plan_conflicts(processor, session_factory, make_user):
    user = await make_user(external_customer_id="cus_1")
    result = await _deliver(processor, webhook_body(plan_id="gold_forever"))
    assert result.status_code == 409
    assert result.error == "unknown_plan"
    assert await _subscription(session_factory, user.id) is None


# ── Replay ──


@pytest.mark.asyncio
class TestReplay:
    async def test_replay_missing_row(self, processor):
        assert await processor.replay("00000000-0000-0000-0000-000000000000") is None

    async def test_replay_failed_row_after_user_appears(self, processor, session_factory, make_user):
        await _deliver(processor, webhook_body(external_customer_id="cus_late"))
        event = await _event(session_factory, "evt_1")
        user = await make_user(external_customer_id="cus_late")

        result = await processor.replay(event.id)

        assert result.outcome == "processed"
        assert result.record_id == event.id
        assert await _subscription(session_factory, user.id) is not None
        assert await _count(session_factory, WebhookEventRow) == 1

    async def test_replay_processed_row_is_noop(self, processor, session_factory, make_user):
        user = await make_user(external_customer_id="cus_1")
        await _deliver(processor, webhook_body())
        event = await _event(session_factory, "evt_1")

        result = await processor.replay(event.id)

        assert result.outcome == "duplicate"
        sub = await _subscription(session_factory, user.id)
        assert as_utc(sub.current_period_end) == PAID + MONTH


# ── Concurrency ──


@pytest.mark.asyncio
async def test_e_concurrent_payments_both_extend(tmp_path):
    """Two deliveries for different payments on one subscription serialize on the store lock."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'concurrency.db'}", poolclass=NullPool)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with factory() as session:
            user = UserRow(external_customer_id="cus_1")
            session.add(user)
            await session.commit()

        processor = WebhookProcessor(factory, PlanCatalog())
        first = await _deliver(processor, webhook_body(event_id="e0", external_payment_id="p0"))
        assert first.outcome == "processed"

        results = await asyncio.gather(
            _deliver(processor, webhook_body(event_id="e1", external_payment_id="p1")),
            _deliver(processor, webhook_body(event_id="e2", external_payment_id="p2")),
        )

        assert [r.status_code for r in results] == [200, 200]
        sub = await _subscription(factory, user.id)
        assert as_utc(sub.current_period_end) == PAID + 3 * MONTH
        assert await _count(factory, PaymentRow) == 3
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_concurrent_redeliveries_apply_once(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'redelivery.db'}", poolclass=NullPool)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with factory() as session:
            user = UserRow(external_customer_id="cus_1")
            session.add(user)
            await session.commit()

        processor = WebhookProcessor(factory, PlanCatalog())
        body = webhook_body(event_id="e1", external_payment_id="p1")
        results = await asyncio.gather(*[_deliver(processor, body) for _ in range(3)])

        assert all(r.status_code == 200 for r in results)
        assert sum(r.outcome == "processed" for r in results) == 1
        sub = await _subscription(factory, user.id)
        assert as_utc(sub.current_period_end) == PAID + MONTH
        assert await _count(factory, WebhookEventRow) == 1
    finally:
        await engine.dispose()
