"""
Subscription state machine
---
Applies a validated payment to a user's subscription. States:

    no-subscription --payment--> active
    active | past_due | canceled | expired --payment--> active (period extended)

Only payment-driven transitions into ``active`` live here; cancellation,
expiry and past-due marking belong to scheduled jobs elsewhere.

Replay safety: a payment whose ``subscription_id`` is already set has been
applied and is a no-op, whichever user or subscription the redelivery
resolves to. Extensions start from the current period end, never
from the payment's paid time, so out-of-order deliveries don't drift.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from paysync.db.subscription_tables import PaymentRow, SubscriptionRow
from paysync.db.user_tables import UserRow
from paysync.models.billing import SubscriptionStatus, as_utc, utcnow
from paysync.services.ledger import PaymentLedger
from paysync.services.plans import PlanCatalog, PlanConfig

logger = logging.getLogger(__name__)


class Transition(str, Enum):
    CREATED = "created"
    EXTENDED = "extended"
    ALREADY_APPLIED = "already_applied"
    USER_MISSING = "user_missing"
    AMOUNT_MISMATCH = "amount_mismatch"
    UNKNOWN_PLAN = "unknown_plan"


@dataclass
class TransitionResult:
    transition: Transition
    subscription: Optional[SubscriptionRow] = None
    detail: str = ""


class SubscriptionStateMachine:
    def __init__(self, session: AsyncSession, plans: PlanCatalog):
        self.session = session
        self.plans = plans
        self.ledger = PaymentLedger(session)

    # ── Resolution (row-locked) ───────────────────────────────────────────────

    async def resolve_user(
        self, external_customer_id: Optional[str], email: Optional[str]
    ) -> Optional[UserRow]:
        """Match by external customer id first, then by email. Locks the user row.

        The lock serializes deliveries for one user even before a subscription
        row exists to lock.
        """
        if external_customer_id:
            result = await self.session.execute(
                select(UserRow)
                .where(UserRow.external_customer_id == external_customer_id)
                .with_for_update()
            )
            user = result.scalar_one_or_none()
            if user:
                return user
        if email:
            # emails are unique case-sensitively: prefer the exact spelling, then the oldest account
            result = await self.session.execute(
                select(UserRow)
                .where(func.lower(UserRow.email) == email.lower())
                .order_by(case((UserRow.email == email, 0), else_=1), UserRow.created_at, UserRow.id)
                .limit(1)
                .with_for_update()
            )
            return result.scalars().first()
        return None

    async def subscription_for_update(self, user_id: str) -> Optional[SubscriptionRow]:
        result = await self.session.execute(
            select(SubscriptionRow).where(SubscriptionRow.user_id == user_id).with_for_update()
        )
        return result.scalar_one_or_none()

    # ── Transition ───────────────────────────────────────────────────────────

    async def apply(
        self,
        payment: PaymentRow,
        user: Optional[UserRow],
        subscription: Optional[SubscriptionRow],
        plan_id: Optional[str],
    ) -> TransitionResult:
        # Checked before anything about the current user: the payment may have
        # been applied for someone else, or before the customer stopped matching
        if payment.subscription_id is not None:
            return TransitionResult(Transition.ALREADY_APPLIED, subscription)

        plan = self.plans.get(plan_id)
        if plan is None:
            return TransitionResult(
                Transition.UNKNOWN_PLAN, subscription,
                f"unknown plan {plan_id or self.plans.default_plan_id!r}",
            )
        if not plan.matches(payment.amount, payment.currency):
            return TransitionResult(
                Transition.AMOUNT_MISMATCH, subscription,
                f"expected {plan.amount} {plan.currency} for {plan.plan_id}, "
                f"got {payment.amount} {payment.currency}",
            )

        if subscription is None:
            if user is None:
                return TransitionResult(Transition.USER_MISSING, None, "no user matches the payment's customer")
            subscription = await self._create(user, plan, payment)
            await self.ledger.attach_subscription(payment, subscription)
            return TransitionResult(Transition.CREATED, subscription)

        self._extend(subscription, plan)
        await self.ledger.attach_subscription(payment, subscription)
        return TransitionResult(Transition.EXTENDED, subscription)

    async def _create(self, user: UserRow, plan: PlanConfig, payment: PaymentRow) -> SubscriptionRow:
        start = as_utc(payment.paid_at) or utcnow()
        subscription = SubscriptionRow(
            user_id=user.id,
            status=SubscriptionStatus.ACTIVE.value,
            plan_id=plan.plan_id,
            current_period_start=start,
            current_period_end=start + plan.duration,
        )
        self.session.add(subscription)
        await self.session.flush()
        logger.info(
            "Subscription created: user=%s plan=%s until %s",
            user.id, plan.plan_id, subscription.current_period_end.isoformat(),
        )
        return subscription

    def _extend(self, subscription: SubscriptionRow, plan: PlanConfig) -> None:
        new_end = as_utc(subscription.current_period_end) + plan.duration
        subscription.current_period_end = new_end
        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.plan_id = plan.plan_id
        subscription.updated_at = utcnow()
        logger.info(
            "Subscription extended: user=%s plan=%s until %s",
            subscription.user_id, plan.plan_id, new_end.isoformat(),
        )
