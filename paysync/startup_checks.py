"""Startup validation — catch misconfigurations before the app serves traffic."""
from __future__ import annotations

import logging
import sys

from config.settings import settings
from paysync.services.plans import load_catalog

logger = logging.getLogger(__name__)


def validate_settings() -> list[str]:
    """Validate configuration. Returns list of warnings (empty = all good).

    Raises SystemExit for critical misconfigurations in production.
    """
    warnings: list[str] = []
    is_prod = settings.DATABASE_URL and "sqlite" not in settings.DATABASE_URL

    secrets = {
        "stripe": settings.STRIPE_WEBHOOK_SECRET,
        "paystack": settings.PAYSTACK_WEBHOOK_SECRET,
        "generic": settings.WEBHOOK_SECRET,
    }
    configured = [name for name, secret in secrets.items() if secret]

    # Critical: without a secret every delivery is rejected with 401
    if is_prod and not configured:
        logger.critical("No webhook secret configured! Set STRIPE_/PAYSTACK_WEBHOOK_SECRET or WEBHOOK_SECRET.")
        sys.exit(1)
    if not configured:
        warnings.append("No webhook secret configured — all deliveries will be rejected")

    if is_prod and "*" in settings.CORS_ORIGINS:
        warnings.append("CORS_ORIGINS is set to * — restrict in production")

    if not settings.ADMIN_API_KEY:
        warnings.append("ADMIN_API_KEY not set — retry queue admin endpoints disabled")

    catalog = load_catalog()
    if catalog.get(None) is None:
        warnings.append(f"DEFAULT_PLAN_ID {settings.DEFAULT_PLAN_ID!r} is not in the plan catalog")

    for w in warnings:
        logger.warning("%s", w)

    if not warnings:
        logger.info("All startup checks passed")

    return warnings
