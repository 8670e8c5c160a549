"""Webhook event store — delivery-level dedup, independent of payment semantics.

Rows are keyed by (provider, event_id) when the provider sends an event id.
``processed``/``ignored`` are terminal; ``received``/``failed`` rows are
reprocessed from scratch on the next delivery.
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paysync.db.upsert import insert_or_merge
from paysync.db.webhook_tables import WebhookEventRow
from paysync.models.billing import TERMINAL_STATUSES, WebhookStatus, utcnow

logger = logging.getLogger(__name__)

_MAX_ERROR_MESSAGE = 1000


class WebhookEventStore:
    """Async access to ``webhook_events`` on a caller-owned session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def precheck(self, provider: str, event_id: Optional[str]) -> Optional[str]:
        """Status of a previous delivery with this key, or None.

        Without an event id there is nothing to dedupe on.
        """
        if not event_id:
            return None
        result = await self.session.execute(
            select(WebhookEventRow.status).where(
                WebhookEventRow.provider == provider,
                WebhookEventRow.event_id == event_id,
            )
        )
        return result.scalar_one_or_none()

    async def record_received(
        self,
        provider: str,
        event_id: Optional[str],
        event_type: str,
        provider_payment_id: Optional[str],
        payload: dict,
    ) -> WebhookEventRow:
        """Insert the delivery, or reset an earlier one with the same key to ``received``.

        The latest payload replaces the stored copy so a previously failed
        delivery is reprocessed with what the provider sent this time. A row
        that reached a terminal status in the meantime is returned unchanged.
        """

        def build() -> WebhookEventRow:
            return WebhookEventRow(
                provider=provider,
                event_id=event_id,
                event_type=event_type,
                provider_payment_id=provider_payment_id,
                payload=payload,
                status=WebhookStatus.RECEIVED.value,
                attempts=1,
            )

        if not event_id:
            row = build()
            self.session.add(row)
            await self.session.flush()
            return row

        def merge(row: WebhookEventRow) -> None:
            if row.status in TERMINAL_STATUSES:
                # Lost a race with a delivery that already finished
                return
            row.event_type = event_type
            row.provider_payment_id = provider_payment_id
            row.payload = payload
            row.status = WebhookStatus.RECEIVED.value
            row.error_code = None
            row.error_message = None
            row.attempts = (row.attempts or 0) + 1

        row, created = await insert_or_merge(
            self.session,
            select(WebhookEventRow)
            .where(
                WebhookEventRow.provider == provider,
                WebhookEventRow.event_id == event_id,
            )
            .with_for_update(),
            build,
            merge,
        )
        if not created and row.status not in TERMINAL_STATUSES:
            logger.info("Redelivery of %s event %s (attempt %s)", provider, event_id, row.attempts)
        return row

    async def reopen(self, row: WebhookEventRow) -> WebhookEventRow:
        """Put a stored delivery back to ``received`` for a replay."""
        row.status = WebhookStatus.RECEIVED.value
        row.error_code = None
        row.error_message = None
        row.attempts = (row.attempts or 0) + 1
        await self.session.flush()
        return row

    async def finalize(
        self,
        row: WebhookEventRow,
        status: WebhookStatus,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        """Record the outcome. Call inside the transaction that produced it."""
        row.status = status.value
        row.error_code = error_code
        row.error_message = error_message[:_MAX_ERROR_MESSAGE] if error_message else None
        if status is WebhookStatus.PROCESSED:
            row.processed_at = utcnow()
        await self.session.flush()

    async def get(self, row_id: str) -> Optional[WebhookEventRow]:
        return await self.session.get(WebhookEventRow, row_id)

    async def get_for_update(self, row_id: str) -> Optional[WebhookEventRow]:
        result = await self.session.execute(
            select(WebhookEventRow).where(WebhookEventRow.id == row_id).with_for_update()
        )
        return result.scalar_one_or_none()

    async def processed_event_for_payment(
        self, provider_payment_id: str, exclude_id: Optional[str] = None
    ) -> Optional[WebhookEventRow]:
        """The event record already marking this payment as applied, if any."""
        stmt = select(WebhookEventRow).where(
            WebhookEventRow.provider_payment_id == provider_payment_id,
            WebhookEventRow.status == WebhookStatus.PROCESSED.value,
        )
        if exclude_id:
            stmt = stmt.where(WebhookEventRow.id != exclude_id)
        result = await self.session.execute(stmt.limit(1))
        return result.scalar_one_or_none()

    async def list_events(
        self,
        status: Optional[str] = None,
        error_codes: Optional[Iterable[str]] = None,
        limit: int = 50,
        oldest_first: bool = False,
    ) -> list[WebhookEventRow]:
        """Most recent first by default; ``status='failed'`` is the retry queue."""
        stmt = select(WebhookEventRow)
        if status:
            stmt = stmt.where(WebhookEventRow.status == status)
        if error_codes is not None:
            stmt = stmt.where(WebhookEventRow.error_code.in_(list(error_codes)))
        order = WebhookEventRow.created_at.asc() if oldest_first else WebhookEventRow.created_at.desc()
        stmt = stmt.order_by(order).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
