"""Tests for the failed-webhook retry sweep."""
from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import select

from paysync.db.subscription_tables import SubscriptionRow
from paysync.db.webhook_tables import WebhookEventRow
from paysync.services.scheduler import scheduler, start_scheduler, stop_scheduler, sweep_failed_events
from tests.helpers import webhook_body


async def _deliver(processor, signed, body):
    raw, headers = signed(body)
    return await processor.handle("generic", raw, headers)


async def _statuses(session_factory) -> dict[str, tuple[str, str | None]]:
    async with session_factory() as session:
        rows = (await session.execute(select(WebhookEventRow))).scalars().all()
        return {r.event_id: (r.status, r.error_code) for r in rows}


@pytest.mark.asyncio
class TestRetrySweep:
    async def test_nothing_to_do(self):
        assert sum((await sweep_failed_events()).values()) == 0

    async def test_replays_user_missing_once_user_exists(self, processor, signed, make_user, session_factory):
        await _deliver(processor, signed, webhook_body(event_id="e1", external_customer_id="cus_late"))
        await make_user(external_customer_id="cus_late")

        outcomes = await sweep_failed_events()

        assert outcomes["processed"] == 1
        assert (await _statuses(session_factory))["e1"] == ("processed", None)
        async with session_factory() as session:
            assert (await session.execute(select(SubscriptionRow))).scalar_one() is not None

    async def test_skips_business_conflicts(self, processor, signed, make_user, session_factory):
        await make_user(external_customer_id="cus_1")
        await _deliver(processor, signed, webhook_body(event_id="bad", external_payment_id="p_bad", amount=1))
        await _deliver(processor, signed, webhook_body(event_id="late", external_payment_id="p_late", external_customer_id="cus_x"))

        outcomes = await sweep_failed_events()

        # user still missing: replayed and deferred again, the conflict is never retried
        assert dict(outcomes) == {"deferred": 1}
        statuses = await _statuses(session_factory)
        assert statuses["bad"] == ("failed", "amount_mismatch")
        assert statuses["late"] == ("failed", "user_missing")

    async def test_limit(self, processor, signed):
        for i in range(3):
            await _deliver(processor, signed, webhook_body(event_id=f"e{i}", external_payment_id=f"p{i}", external_customer_id="cus_x"))
        outcomes = await sweep_failed_events(limit=2)
        assert sum(outcomes.values()) == 2


@pytest.mark.asyncio
async def test_scheduler_registers_sweep_job():
    start_scheduler(interval_minutes=5)
    try:
        job = scheduler.get_job("webhook_retry_sweep")
        assert job is not None
        assert job.trigger.interval.total_seconds() == 300
    finally:
        stop_scheduler()
    assert scheduler.get_job("webhook_retry_sweep") is None

    for _ in range(10):
        if not scheduler.running:
            break
        await asyncio.sleep(0)
    assert not scheduler.running
