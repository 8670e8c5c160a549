"""Payment ledger — idempotent record of payment facts keyed by provider payment id."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paysync.db.subscription_tables import PaymentRow, SubscriptionRow
from paysync.db.upsert import insert_or_merge
from paysync.models.billing import PaymentStatus

logger = logging.getLogger(__name__)


class PaymentLedger:
    """Never rejects a fact: amount/plan validation happens downstream."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def upsert(
        self,
        provider_payment_id: str,
        amount: int,
        currency: str,
        status: PaymentStatus,
        paid_at: Optional[datetime],
        payload: Optional[dict],
        user_id: Optional[str] = None,
    ) -> PaymentRow:
        """Insert the payment, or update the existing row for this provider payment id.

        ``paid_at`` is first-writer-wins so a reordered duplicate can't move the
        settlement time. ``subscription_id`` is never touched here; a non-null
        value on the returned row means the payment was already applied.
        """

        def build() -> PaymentRow:
            return PaymentRow(
                provider_payment_id=provider_payment_id,
                user_id=user_id,
                amount=amount,
                currency=currency,
                status=status.value,
                paid_at=paid_at,
                payload=payload,
            )

        def merge(row: PaymentRow) -> None:
            row.amount = amount
            row.currency = currency
            row.status = status.value
            row.payload = payload
            if row.paid_at is None:
                row.paid_at = paid_at
            if row.user_id is None:
                row.user_id = user_id

        row, created = await insert_or_merge(
            self.session,
            select(PaymentRow).where(PaymentRow.provider_payment_id == provider_payment_id),
            build,
            merge,
        )
        logger.debug(
            "Payment %s %s (status=%s, applied=%s)",
            provider_payment_id, "recorded" if created else "updated",
            row.status, row.subscription_id is not None,
        )
        return row

    async def attach_subscription(self, payment: PaymentRow, subscription: SubscriptionRow) -> None:
        payment.subscription_id = subscription.id
        if payment.user_id is None:
            payment.user_id = subscription.user_id
        await self.session.flush()

    async def get(self, provider_payment_id: str) -> Optional[PaymentRow]:
        result = await self.session.execute(
            select(PaymentRow).where(PaymentRow.provider_payment_id == provider_payment_id)
        )
        return result.scalar_one_or_none()
