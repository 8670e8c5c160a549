"""App settings — loaded from environment."""
from __future__ import annotations

import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    # API
    API_HOST = os.getenv("API_HOST", "0.0.0.0")
    API_PORT = int(os.getenv("API_PORT", "8000"))

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///paysync.db")

    # Webhook signing secrets, one per provider
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    PAYSTACK_WEBHOOK_SECRET = os.getenv("PAYSTACK_WEBHOOK_SECRET", "")
    WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")  # "generic" provider

    # Max age of a timestamped signature (stripe scheme)
    SIGNATURE_TOLERANCE_SECONDS = int(os.getenv("SIGNATURE_TOLERANCE_SECONDS", "300"))

    # Plans
    DEFAULT_PLAN_ID = os.getenv("DEFAULT_PLAN_ID", "pro_monthly")
    PLAN_CATALOG = os.getenv("PLAN_CATALOG", "")  # optional JSON override

    # Admin API key (retry queue endpoints)
    ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")

    # Failed-event sweeper (0 = disabled)
    RETRY_SWEEP_MINUTES = int(os.getenv("RETRY_SWEEP_MINUTES", "0"))
    RETRY_SWEEP_BATCH = int(os.getenv("RETRY_SWEEP_BATCH", "50"))

    # CORS origins (comma-separated, or * for dev)
    CORS_ORIGINS = [
        o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")
    ]

    # Observability
    SENTRY_DSN = os.getenv("SENTRY_DSN", "")
    SENTRY_ENVIRONMENT = os.getenv("SENTRY_ENVIRONMENT", "development")
    SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1"))

    # Logging
    LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" or "json"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    def webhook_secret(self, provider: str) -> str:
        """Signing secret for a provider ("" when not configured)."""
        return {
            "stripe": self.STRIPE_WEBHOOK_SECRET,
            "paystack": self.PAYSTACK_WEBHOOK_SECRET,
            "generic": self.WEBHOOK_SECRET,
        }.get(provider, "")


settings = Settings()
