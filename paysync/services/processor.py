"""
Webhook processor — the transaction coordinator.

Pipeline per delivery:

    empty body                      -> 400
    signature                       -> 401
    JSON object                     -> 400
    minimum fields                  -> 422
    precheck (provider, event_id)   -> 200 if already terminal
    record 'received'               (own transaction, survives a later rollback)
    atomic scope:
        lock event row, user, subscription
        ledger upsert
        plan / amount check         -> 409, event failed
        subscription transition     -> 202 when the user isn't provisioned yet
        finalize event              -> 200
    unexpected error                -> rollback, best-effort 'internal_error' write, 500

Every phase opens its own session from the factory; there is no shared
in-memory state between deliveries, only the store's locks and constraints.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import async_sessionmaker

from config.settings import settings
from paysync.logging_config import webhook_context
from paysync.models.billing import (
    TERMINAL_STATUSES,
    ErrorCode,
    PaymentStatus,
    WebhookPayload,
    WebhookStatus,
    as_utc,
    utcnow,
)
from paysync.services.plans import PlanCatalog, load_catalog
from paysync.services.signatures import verify_signature
from paysync.services.subscription_machine import SubscriptionStateMachine, Transition
from paysync.services.webhook_events import WebhookEventStore

logger = logging.getLogger(__name__)


@dataclass
class WebhookResult:
    status_code: int
    outcome: str
    error: Optional[str] = None
    event_id: Optional[str] = None
    record_id: Optional[str] = None
    message: str = ""

    @property
    def rejected(self) -> bool:
        """Refused before anything was persisted."""
        return self.outcome == "rejected"

    def body(self) -> dict[str, Any]:
        return {"status": self.outcome, "event_id": self.event_id, "error": self.error}


def _rejected(status_code: int, message: str) -> WebhookResult:
    return WebhookResult(status_code, "rejected", message=message)


def _describe_validation_error(exc: ValidationError) -> str:
    fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
    return "missing or invalid fields: " + ", ".join(fields)


class WebhookProcessor:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        plans: Optional[PlanCatalog] = None,
        secret_for: Callable[[str], str] = settings.webhook_secret,
        tolerance: int = settings.SIGNATURE_TOLERANCE_SECONDS,
    ):
        self.session_factory = session_factory
        self.plans = plans or load_catalog()
        self.secret_for = secret_for
        self.tolerance = tolerance

    # ── Entry points ─────────────────────────────────────────────────────────

    async def handle(self, provider: str, body: bytes, headers: Mapping[str, str]) -> WebhookResult:
        """Authenticate, validate and process one raw delivery."""
        if not body or not body.strip():
            return _rejected(400, "Empty request body")

        if not verify_signature(provider, body, headers, self.secret_for(provider), self.tolerance):
            return _rejected(401, "Invalid signature")

        try:
            data = json.loads(body)
        except (ValueError, UnicodeDecodeError):
            return _rejected(400, "Malformed JSON body")
        if not isinstance(data, dict):
            return _rejected(400, "Webhook body must be a JSON object")

        try:
            payload = WebhookPayload.model_validate(data)
        except ValidationError as exc:
            message = _describe_validation_error(exc)
            logger.warning("Rejected %s webhook: %s", provider, message)
            return _rejected(422, message)

        return await self.process(provider, payload, data)

    async def replay(self, record_id: str) -> Optional[WebhookResult]:
        """Re-run a stored delivery on its own row. None when the row doesn't exist.

        The stored payload was authenticated when it arrived, so no signature check.
        """
        async with self.session_factory() as session:
            row = await WebhookEventStore(session).get(record_id)
            if row is None:
                return None
            provider, raw = row.provider, row.payload or {}

        try:
            payload = WebhookPayload.model_validate(raw)
        except ValidationError as exc:
            return _rejected(422, _describe_validation_error(exc))
        return await self.process(provider, payload, raw, record_id=record_id)

    async def process(
        self,
        provider: str,
        payload: WebhookPayload,
        raw: dict,
        record_id: Optional[str] = None,
    ) -> WebhookResult:
        with webhook_context(provider, payload.event_id):
            return await self._process(provider, payload, raw, record_id)

    async def _process(
        self,
        provider: str,
        payload: WebhookPayload,
        raw: dict,
        record_id: Optional[str],
    ) -> WebhookResult:
        event_id = payload.event_id
        try:
            if record_id is None:
                if event_id:
                    async with self.session_factory() as session:
                        previous = await WebhookEventStore(session).precheck(provider, event_id)
                    if previous in TERMINAL_STATUSES:
                        logger.info("Duplicate %s event %s (already %s)", provider, event_id, previous)
                        return WebhookResult(200, "duplicate", event_id=event_id)
                record_id, status = await self._record_received(provider, payload, raw)
                if status in TERMINAL_STATUSES:
                    return WebhookResult(200, "duplicate", event_id=event_id, record_id=record_id)
            else:
                previous = await self._reopen(record_id)
                if previous in TERMINAL_STATUSES:
                    return WebhookResult(200, "duplicate", event_id=event_id, record_id=record_id)

            # Once the atomic scope starts it runs to commit or rollback, even if
            # the request is cancelled underneath it.
            return await asyncio.shield(self._apply(provider, payload, raw, record_id))
        except Exception as exc:
            logger.exception("Webhook processing failed: provider=%s event=%s", provider, event_id)
            await self._record_internal_error(record_id, exc)
            return WebhookResult(
                500, "error", error=ErrorCode.INTERNAL_ERROR.value,
                event_id=event_id, record_id=record_id,
            )

    # ── Phases ───────────────────────────────────────────────────────────────

    async def _record_received(self, provider: str, payload: WebhookPayload, raw: dict) -> tuple[str, str]:
        async with self.session_factory() as session:
            row = await WebhookEventStore(session).record_received(
                provider,
                payload.event_id,
                payload.event_type,
                payload.external_payment_id,
                raw,
            )
            await session.commit()
            return row.id, row.status

    async def _reopen(self, record_id: str) -> Optional[str]:
        """Status before reopening; terminal rows are left alone."""
        async with self.session_factory() as session:
            store = WebhookEventStore(session)
            row = await store.get_for_update(record_id)
            if row is None:
                raise LookupError(f"webhook event {record_id} disappeared")
            previous = row.status
            if previous not in TERMINAL_STATUSES:
                await store.reopen(row)
                await session.commit()
            return previous

    async def _apply(self, provider: str, payload: WebhookPayload, raw: dict, record_id: str) -> WebhookResult:
        event_id = payload.event_id

        def result(code: int, outcome: str, error: Optional[str] = None) -> WebhookResult:
            return WebhookResult(code, outcome, error=error, event_id=event_id, record_id=record_id)

        async with self.session_factory() as session:
            async with session.begin():
                store = WebhookEventStore(session)
                event = await store.get_for_update(record_id)
                if event is None:
                    raise LookupError(f"webhook event {record_id} disappeared")
                if event.status in TERMINAL_STATUSES:
                    # A concurrent delivery of the same event finished first
                    return result(200, "duplicate")
                machine = SubscriptionStateMachine(session, self.plans)

                payment_status = payload.payment_status()
                if payment_status is None:
                    await store.finalize(
                        event, WebhookStatus.IGNORED, ErrorCode.UNSUPPORTED_EVENT.value,
                        f"event type {payload.event_type!r} carries no payment status",
                    )
                    logger.info("Ignored %s event %s of type %s", provider, event_id, payload.event_type)
                    return result(200, "ignored", ErrorCode.UNSUPPORTED_EVENT.value)

                user = await machine.resolve_user(payload.external_customer_id, payload.email)
                subscription = await machine.subscription_for_update(user.id) if user else None

                paid_at = as_utc(payload.paid_at)
                if paid_at is None and payment_status is PaymentStatus.SUCCEEDED:
                    paid_at = utcnow()
                payment = await machine.ledger.upsert(
                    payload.external_payment_id,
                    payload.amount,
                    payload.currency,
                    payment_status,
                    paid_at,
                    raw,
                    user_id=user.id if user else None,
                )

                if payment_status is not PaymentStatus.SUCCEEDED:
                    await store.finalize(
                        event, WebhookStatus.IGNORED, ErrorCode.PAYMENT_NOT_SUCCEEDED.value,
                        f"payment status is {payment_status.value}",
                    )
                    return result(200, "ignored", ErrorCode.PAYMENT_NOT_SUCCEEDED.value)

                outcome = await machine.apply(payment, user, subscription, payload.plan_id)

                if outcome.transition in (Transition.AMOUNT_MISMATCH, Transition.UNKNOWN_PLAN):
                    code = outcome.transition.value
                    await store.finalize(event, WebhookStatus.FAILED, code, outcome.detail)
                    logger.warning(
                        "Payment %s rejected (%s): %s", payload.external_payment_id, code, outcome.detail
                    )
                    return result(409, "conflict", code)

                if outcome.transition is Transition.USER_MISSING:
                    await store.finalize(
                        event, WebhookStatus.FAILED, ErrorCode.USER_MISSING.value, outcome.detail
                    )
                    logger.warning(
                        "Payment %s recorded, user not provisioned yet (customer=%s email=%s)",
                        payload.external_payment_id, payload.external_customer_id, payload.email,
                    )
                    return result(202, "deferred", ErrorCode.USER_MISSING.value)

                # Only one event record may mark a payment as applied
                applied_by = await store.processed_event_for_payment(payment.provider_payment_id, exclude_id=event.id)
                if applied_by is not None:
                    await store.finalize(
                        event, WebhookStatus.IGNORED, ErrorCode.DUPLICATE_PAYMENT.value,
                        f"payment already applied by webhook event {applied_by.id}",
                    )
                    logger.info("Payment %s already applied, event %s ignored", payment.provider_payment_id, event_id)
                    return result(200, "duplicate", ErrorCode.DUPLICATE_PAYMENT.value)

                await store.finalize(event, WebhookStatus.PROCESSED)
                logger.info(
                    "Processed %s event %s: payment=%s %s",
                    provider, event_id, payment.provider_payment_id, outcome.transition.value,
                )
                return result(200, "processed")

    async def _record_internal_error(self, record_id: Optional[str], exc: Exception) -> None:
        """Best effort, outside the failed transaction; may itself fail."""
        if record_id is None:
            return
        try:
            async with self.session_factory() as session:
                store = WebhookEventStore(session)
                row = await store.get(record_id)
                if row is not None:
                    await store.finalize(
                        row, WebhookStatus.FAILED, ErrorCode.INTERNAL_ERROR.value,
                        f"{type(exc).__name__}: {exc}",
                    )
                    await session.commit()
        except Exception:
            logger.exception("Could not mark webhook event %s as failed", record_id)
