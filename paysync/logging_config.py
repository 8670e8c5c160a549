"""Logging setup.

Text lines locally; JSON lines (LOG_FORMAT=json) for log aggregators. Every
record carries the request id, and while a delivery is being processed, the
provider and event id it belongs to, so one webhook can be followed from
signature check to commit.
"""
from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator, Optional

from config.settings import settings

webhook_context_var: ContextVar[dict] = ContextVar("webhook_context", default={})


@contextmanager
def webhook_context(provider: str, event_id: Optional[str]) -> Iterator[None]:
    """Tag log records emitted inside the block with the delivery they belong to."""
    token = webhook_context_var.set({"provider": provider, "event_id": event_id or "-"})
    try:
        yield
    finally:
        webhook_context_var.reset(token)


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        from paysync.middleware.request_id import get_request_id

        record.request_id = get_request_id() or "-"
        ctx = webhook_context_var.get()
        record.provider = ctx.get("provider", "-")
        record.event_id = ctx.get("event_id", "-")
        return True


class JSONFormatter(logging.Formatter):
    """Emit structured JSON log lines."""

    def format(self, record: logging.LogRecord) -> str:
        log = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in ("request_id", "provider", "event_id"):
            value = getattr(record, field, "-")
            if value and value != "-":
                log[field] = value
        if record.exc_info and record.exc_info[1]:
            log["exception"] = self.formatException(record.exc_info)
        return json.dumps(log, default=str)


def setup_logging():
    """Configure the root logger from LOG_FORMAT / LOG_LEVEL."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    # Remove existing handlers
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    if settings.LOG_FORMAT == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-8s %(name)s [%(request_id)s %(provider)s:%(event_id)s] %(message)s",
            datefmt="%H:%M:%S",
        ))

    root.addHandler(handler)

    # Quiet noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
