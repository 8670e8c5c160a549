"""Admin API for the webhook retry queue — protected by X-Admin-Key."""
from __future__ import annotations

import hmac
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from paysync.api.webhooks import get_processor
from paysync.db.engine import get_session
from paysync.models.billing import WebhookStatus
from paysync.services.processor import WebhookProcessor
from paysync.services.webhook_events import WebhookEventStore

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])


def verify_admin_key(x_admin_key: str = Header(None)) -> None:
    """Verify admin API key from request header (timing-safe)."""
    expected_key = settings.ADMIN_API_KEY
    if not expected_key:
        raise HTTPException(503, "Admin endpoints disabled (ADMIN_API_KEY not set)")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, expected_key):
        raise HTTPException(403, "Invalid admin key")


class WebhookEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    provider: str
    event_id: Optional[str] = None
    event_type: str
    provider_payment_id: Optional[str] = None
    status: str
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    attempts: int
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


class WebhookEventDetail(WebhookEventOut):
    payload: Optional[dict[str, Any]] = None


@router.get("/webhook-events", response_model=list[WebhookEventOut])
async def list_webhook_events(
    status: Optional[WebhookStatus] = Query(WebhookStatus.FAILED),
    limit: int = Query(50, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
    _auth: None = Depends(verify_admin_key),
):
    """List webhook deliveries; defaults to the failed ones (the retry queue)."""
    rows = await WebhookEventStore(session).list_events(status=status.value if status else None, limit=limit)
    return [WebhookEventOut.model_validate(row) for row in rows]


@router.get("/webhook-events/{record_id}", response_model=WebhookEventDetail)
async def get_webhook_event(
    record_id: str,
    session: AsyncSession = Depends(get_session),
    _auth: None = Depends(verify_admin_key),
):
    row = await WebhookEventStore(session).get(record_id)
    if row is None:
        raise HTTPException(404, "Webhook event not found")
    return WebhookEventDetail.model_validate(row)


@router.post("/webhook-events/{record_id}/replay")
async def replay_webhook_event(
    record_id: str,
    processor: WebhookProcessor = Depends(get_processor),
    _auth: None = Depends(verify_admin_key),
):
    """Re-run a stored delivery through the pipeline on the same event row."""
    result = await processor.replay(record_id)
    if result is None:
        raise HTTPException(404, "Webhook event not found")
    if result.rejected:
        raise HTTPException(result.status_code, result.message)
    return JSONResponse(status_code=result.status_code, content=result.body())
