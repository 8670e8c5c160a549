"""
Payment webhook endpoint.

POST /api/v1/webhooks/{provider} — provider in: stripe, paystack, generic

Status codes tell the provider whether to retry:
  200 processed / already processed     202 deferred, retry later
  400 malformed body                    401 bad signature
  409 amount or plan mismatch           422 missing required fields
  500 internal error, safe to retry
"""
from __future__ import annotations

import logging
from functools import lru_cache

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import async_sessionmaker

from paysync.db.engine import get_sessionmaker
from paysync.middleware.metrics import metrics
from paysync.services.plans import PlanCatalog, load_catalog
from paysync.services.processor import WebhookProcessor
from paysync.services.signatures import SUPPORTED_PROVIDERS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@lru_cache(maxsize=1)
def get_plan_catalog() -> PlanCatalog:
    return load_catalog()


def get_processor(
    session_factory: async_sessionmaker = Depends(get_sessionmaker),
    plans: PlanCatalog = Depends(get_plan_catalog),
) -> WebhookProcessor:
    return WebhookProcessor(session_factory, plans)


@router.post("/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    processor: WebhookProcessor = Depends(get_processor),
):
    if provider not in SUPPORTED_PROVIDERS:
        raise HTTPException(404, f"Unknown provider: {provider}")

    body = await request.body()
    result = await processor.handle(provider, body, request.headers)
    metrics.record_webhook(provider, result.outcome)

    if result.rejected:
        raise HTTPException(result.status_code, result.message)

    return JSONResponse(status_code=result.status_code, content=result.body())
