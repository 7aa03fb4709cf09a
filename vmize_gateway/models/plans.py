"""
Plan catalog: monthly quota, list price and overage rate per plan.

Quota and overage values can be overridden per deployment through
VMIZE_PLAN_QUOTAS / VMIZE_PLAN_OVERAGE_RATES (JSON objects keyed by plan).
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional

from vmize_gateway.config import settings


class Plan(str, Enum):
    STARTER = "starter"
    PROFESSIONAL = "professional"
    BUSINESS = "business"
    ENTERPRISE = "enterprise"


@dataclass(frozen=True)
class PlanInfo:
    plan: Plan
    display_name: str
    monthly_quota: int
    price_usd: int
    overage_rate_usd: Decimal


PLAN_CATALOG: dict[Plan, PlanInfo] = {
    Plan.STARTER: PlanInfo(Plan.STARTER, "Starter", 100, 29, Decimal("0.50")),
    Plan.PROFESSIONAL: PlanInfo(Plan.PROFESSIONAL, "Professional", 500, 79, Decimal("0.40")),
    Plan.BUSINESS: PlanInfo(Plan.BUSINESS, "Business", 2000, 199, Decimal("0.30")),
    Plan.ENTERPRISE: PlanInfo(Plan.ENTERPRISE, "Enterprise", 10000, 499, Decimal("0.20")),
}

_UPGRADE_PATH = {
    Plan.STARTER: Plan.PROFESSIONAL,
    Plan.PROFESSIONAL: Plan.BUSINESS,
    Plan.BUSINESS: Plan.ENTERPRISE,
}


def plan_limit(plan: str) -> int:
    """Monthly quota for *plan*, honouring configured overrides."""
    override = settings.plan_quotas.get(str(plan))
    if override is not None:
        return int(override)
    return PLAN_CATALOG[Plan(plan)].monthly_quota


def overage_rate(plan: str) -> Decimal:
    """Per-unit overage price in USD for *plan*."""
    override = settings.plan_overage_rates.get(str(plan))
    if override is not None:
        return Decimal(str(override))
    return PLAN_CATALOG[Plan(plan)].overage_rate_usd


def next_plan(plan: str) -> Optional[PlanInfo]:
    """The recommended upgrade for *plan*, or None at the top tier."""
    upgrade = _UPGRADE_PATH.get(Plan(plan))
    return PLAN_CATALOG[upgrade] if upgrade else None
