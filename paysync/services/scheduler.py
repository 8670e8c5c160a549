"""Scheduled retry sweep of failed webhook events using APScheduler.

Providers retry on their own schedule; the sweep covers the cases they give up
on. Only retryable failures are replayed (internal errors and users that may
have been provisioned since). Amount/plan conflicts are never retried.
"""
from __future__ import annotations

import logging
from collections import Counter
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

import paysync.db.engine as db
from config.settings import settings
from paysync.models.billing import RETRYABLE_ERROR_CODES, WebhookStatus
from paysync.services.plans import PlanCatalog
from paysync.services.processor import WebhookProcessor
from paysync.services.webhook_events import WebhookEventStore

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


async def sweep_failed_events(
    limit: Optional[int] = None,
    plans: Optional[PlanCatalog] = None,
) -> Counter:
    """Replay the oldest retryable failed events. Returns a count per outcome."""
    limit = limit or settings.RETRY_SWEEP_BATCH
    session_factory = db.async_session

    async with session_factory() as session:
        rows = await WebhookEventStore(session).list_events(
            status=WebhookStatus.FAILED.value,
            error_codes=RETRYABLE_ERROR_CODES,
            limit=limit,
            oldest_first=True,
        )
        record_ids = [row.id for row in rows]

    processor = WebhookProcessor(session_factory, plans)
    outcomes: Counter = Counter()
    for record_id in record_ids:
        result = await processor.replay(record_id)
        outcomes[result.outcome if result else "missing"] += 1

    if record_ids:
        logger.info("Retry sweep replayed %d events: %s", len(record_ids), dict(outcomes))
    return outcomes


async def scheduled_sweep():
    try:
        await sweep_failed_events()
    except Exception:
        logger.exception("Retry sweep failed")


def start_scheduler(interval_minutes: int):
    """Start the background scheduler for periodic retry sweeps."""
    scheduler.add_job(
        scheduled_sweep,
        trigger=IntervalTrigger(minutes=interval_minutes),
        id="webhook_retry_sweep",
        name="Failed webhook retry sweep",
        replace_existing=True,
        max_instances=1,
    )
    scheduler.start()
    logger.info(f"Scheduler started — sweeping failed webhooks every {interval_minutes}m")


def stop_scheduler():
    """Gracefully shut down the scheduler."""
    if scheduler.running:
        # AsyncIOScheduler finishes shutting down on a later loop turn
        scheduler.remove_all_jobs()
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
