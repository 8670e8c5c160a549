"""
Plan catalog
---
Expected charge and period length per plan. The webhook pipeline only needs a
lookup: "what should a payment for plan X look like, and how long does it buy?"

Built-in plans can be replaced by a JSON ``PLAN_CATALOG`` setting:
    {"pro_monthly": {"name": "Pro", "amount": 499, "currency": "USD", "duration_days": 30}}
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from config.settings import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlanConfig:
    plan_id: str
    name: str
    amount: int          # minor units
    currency: str
    duration_days: int

    @property
    def duration(self) -> timedelta:
        return timedelta(days=self.duration_days)

    def matches(self, amount: int, currency: str) -> bool:
        return self.amount == amount and self.currency == currency.upper()


DEFAULT_PLANS: dict[str, PlanConfig] = {
    "pro_monthly": PlanConfig("pro_monthly", "Pro (monthly)", amount=499, currency="USD", duration_days=30),
    "pro_annual": PlanConfig("pro_annual", "Pro (annual)", amount=3999, currency="USD", duration_days=365),
    "team_monthly": PlanConfig("team_monthly", "Team (monthly)", amount=1999, currency="USD", duration_days=30),
}


class PlanCatalog:
    def __init__(self, plans: Optional[dict[str, PlanConfig]] = None, default_plan_id: Optional[str] = None):
        self.plans = dict(plans if plans is not None else DEFAULT_PLANS)
        self.default_plan_id = default_plan_id or settings.DEFAULT_PLAN_ID

    def get(self, plan_id: Optional[str]) -> Optional[PlanConfig]:
        """Plan for ``plan_id`` (the default plan when None), or None if unknown."""
        return self.plans.get(plan_id or self.default_plan_id)

    @classmethod
    def from_json(cls, raw: str, default_plan_id: Optional[str] = None) -> "PlanCatalog":
        data = json.loads(raw)
        plans = {
            plan_id: PlanConfig(
                plan_id=plan_id,
                name=entry.get("name", plan_id),
                amount=int(entry["amount"]),
                currency=str(entry["currency"]).upper(),
                duration_days=int(entry["duration_days"]),
            )
            for plan_id, entry in data.items()
        }
        return cls(plans, default_plan_id)


def load_catalog() -> PlanCatalog:
    """Catalog from settings; falls back to the built-in plans on a bad override."""
    if settings.PLAN_CATALOG:
        try:
            return PlanCatalog.from_json(settings.PLAN_CATALOG)
        except (ValueError, KeyError, TypeError, AttributeError):
            logger.exception("PLAN_CATALOG is invalid, using built-in plans")
    return PlanCatalog()
