"""
Billing Reconciler — Monthly Overage Charge & Usage Reset
=========================================================

PURPOSE:
    Closes each customer's billing period:
      1. scan customers
      2. charge overage (``max(0, used - limit) + carried``) × plan rate
      3. archive the period's usage into history and reset the counter

    The reset happens whatever the charge outcome. A failed charge is logged
    and its units are carried into the next run; the loop always moves on to
    the next customer.

IDEMPOTENCY:
    A customer whose billing period already starts at (or after) the current
    month is skipped, so re-running the job in the same month charges and
    resets nobody twice. Each charge carries a Stripe idempotency key derived
    from the customer and the billed month, so a charge repeated after a crash
    or a failed period close is not billed twice.

FAILURE ISOLATION:
    Any error while processing one customer (lookup, charge, period close) is
    logged and reported as FAILED for that customer; the cycle continues.

STATES:
    idle → scanning → {charging, skipping} → resetting → idle

SCHEDULE:
    Monthly via Celery beat (VMIZE_BILLING_CRON_SCHEDULE, default
    ``0 0 1 * *``). The weekly usage report is read-only.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Optional

from vmize_gateway.config import settings
from vmize_gateway.core.async_utils import run_sync
from vmize_gateway.models.customer import (
    Customer,
    SubscriptionStatus,
    as_utc,
    month_key,
    period_start_for,
    utcnow,
)
from vmize_gateway.models.plans import Plan, next_plan, overage_rate, plan_limit
from vmize_gateway.services.billing_client import BillingCollaborator
from vmize_gateway.services.customer_directory import CustomerDirectory

logger = logging.getLogger(__name__)

__all__ = ["BillingReconciler", "ReconcilerState", "CustomerCycleResult", "CycleReport"]

_CENTS = Decimal("0.01")


class ReconcilerState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    CHARGING = "charging"
    SKIPPING = "skipping"
    RESETTING = "resetting"


class ChargeStatus(str, Enum):
    CHARGED = "charged"
    FAILED = "failed"
    NOT_DUE = "not_due"
    DEFERRED = "deferred"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class CustomerCycleResult:
    customer_id: str
    plan: str
    used: int
    limit: int
    overage_units: int
    cost: Decimal
    charge_status: ChargeStatus
    charge_id: Optional[str] = None
    archived: Optional[int] = None
    error: Optional[str] = None


@dataclass
class CycleReport:
    period_start: datetime
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    results: list[CustomerCycleResult] = field(default_factory=list)

    def count(self, status: ChargeStatus) -> int:
        return sum(1 for r in self.results if r.charge_status == status)

    @property
    def total_charged(self) -> Decimal:
        return sum(
            (r.cost for r in self.results if r.charge_status == ChargeStatus.CHARGED),
            Decimal("0"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "period": month_key(self.period_start),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "customers": len(self.results),
            "charged": self.count(ChargeStatus.CHARGED),
            "failed": self.count(ChargeStatus.FAILED),
            "skipped": self.count(ChargeStatus.SKIPPED),
            "total_charged_usd": str(self.total_charged),
        }


def overage_cost(units: int, rate: Decimal) -> Decimal:
    return (Decimal(units) * rate).quantize(_CENTS, rounding=ROUND_HALF_UP)


def charge_idempotency_key(customer_id: str, period_start: datetime) -> str:
    """Stable per customer and billed period, so a re-run charge is deduplicated by Stripe."""
    return f"vmize-overage-{customer_id}-{month_key(period_start)}"


def _failed_result(customer: Customer, exc: Exception) -> CustomerCycleResult:
    try:
        limit = plan_limit(customer.plan)
    except ValueError:
        limit = 0
    return CustomerCycleResult(
        customer_id=customer.id,
        plan=customer.plan,
        used=customer.current_month_tryons,
        limit=limit,
        overage_units=0,
        cost=Decimal("0.00"),
        charge_status=ChargeStatus.FAILED,
        error=f"{type(exc).__name__}: {exc}",
    )


class BillingReconciler:
    def __init__(self, directory: CustomerDirectory, billing: BillingCollaborator):
        self._directory = directory
        self._billing = billing
        self._state = ReconcilerState.IDLE
        self._run_lock = asyncio.Lock()

    @property
    def state(self) -> ReconcilerState:
        return self._state

    # ------------------------------------------------------------------
    # Monthly cycle
    # ------------------------------------------------------------------

    async def run_monthly_cycle(self, now: Optional[datetime] = None) -> CycleReport:
        """Charge overage and reset usage for every customer due a reset."""
        period_start = period_start_for(now or utcnow())
        report = CycleReport(period_start=period_start)

        async with self._run_lock:
            logger.info("Billing cycle started: period=%s", month_key(period_start))
            self._state = ReconcilerState.SCANNING
            try:
                customers = await run_sync(self._directory.list_all)
                for customer in customers:
                    try:
                        result = await self._process_customer(customer, period_start)
                    except Exception as exc:
                        result = _failed_result(customer, exc)
                        logger.exception(
                            "Billing failed for customer=%s; continuing with the next customer",
                            customer.id,
                        )
                    report.results.append(result)
                    self._state = ReconcilerState.SCANNING
            finally:
                self._state = ReconcilerState.IDLE
                report.finished_at = utcnow()

        summary = report.to_dict()
        if report.count(ChargeStatus.FAILED):
            logger.error(
                "Billing cycle finished with %d failed charge(s), carried to next run",
                report.count(ChargeStatus.FAILED),
                extra={"billing.summary": summary},
            )
        else:
            logger.info("Billing cycle finished", extra={"billing.summary": summary})
        return report

    async def _process_customer(self, customer: Customer, period_start: datetime) -> CustomerCycleResult:
        cycle = await run_sync(self._directory.billing_cycle, customer.id)
        limit = plan_limit(customer.plan)

        if as_utc(cycle.period_start) >= period_start:
            self._state = ReconcilerState.SKIPPING
            logger.debug("Billing skipped (already closed): customer=%s", customer.id)
            return CustomerCycleResult(
                customer_id=customer.id,
                plan=customer.plan,
                used=customer.current_month_tryons,
                limit=limit,
                overage_units=0,
                cost=Decimal("0.00"),
                charge_status=ChargeStatus.SKIPPED,
            )

        used = customer.current_month_tryons
        api_calls = customer.current_month_api_calls
        overage_units = max(0, used - limit) + cycle.carried_overage_units
        rate = overage_rate(customer.plan)
        cost = overage_cost(overage_units, rate)

        charge_id: Optional[str] = None
        error: Optional[str] = None
        carried = 0

        if overage_units <= 0:
            status = ChargeStatus.NOT_DUE
        elif customer.subscription_status != SubscriptionStatus.ACTIVE.value:
            status = ChargeStatus.DEFERRED
            carried = overage_units
        else:
            self._state = ReconcilerState.CHARGING
            idempotency_key = charge_idempotency_key(customer.id, cycle.period_start)
            memo = (
                f"Vmize overage {month_key(cycle.period_start)}: "
                f"{overage_units} try-ons over {customer.plan} plan at ${rate}"
            )
            try:
                receipt = await self._billing.charge(
                    customer.stripe_customer_id, cost, memo, idempotency_key=idempotency_key,
                )
                status = ChargeStatus.CHARGED
                charge_id = receipt.charge_id
                logger.info(
                    "Overage charged: customer=%s units=%d cost=%s charge=%s",
                    customer.id, overage_units, cost, charge_id,
                )
            except Exception as exc:
                status = ChargeStatus.FAILED
                error = f"{type(exc).__name__}: {exc}"
                carried = overage_units
                logger.error(
                    "Overage charge failed: customer=%s units=%d cost=%s error=%s",
                    customer.id, overage_units, cost, error,
                )

        self._state = ReconcilerState.RESETTING
        try:
            archived = await run_sync(
                self._directory.close_period, customer.id, period_start, used, api_calls,
            )
            await run_sync(
                lambda: self._directory.record_charge(
                    customer.id,
                    status=status.value,
                    charge_id=charge_id,
                    error=error,
                    carried_overage_units=carried,
                )
            )
        except Exception:
            # a failed close leaves the period open; the next run re-sends the same idempotency key
            logger.error(
                "Period close failed: customer=%s charge_status=%s charge=%s",
                customer.id, status.value, charge_id,
            )
            raise

        return CustomerCycleResult(
            customer_id=customer.id,
            plan=customer.plan,
            used=used,
            limit=limit,
            overage_units=overage_units,
            cost=cost,
            charge_status=status,
            charge_id=charge_id,
            archived=archived,
            error=error,
        )

    # ------------------------------------------------------------------
    # Reports (read-only)
    # ------------------------------------------------------------------

    async def run_usage_report(self, threshold_pct: Optional[float] = None) -> list[dict[str, Any]]:
        """Customers with usage alerts on who have used ≥ threshold of quota."""
        threshold = settings.usage_alert_threshold_pct if threshold_pct is None else threshold_pct
        customers = await run_sync(
            self._directory.list_by_status,
            [SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING],
        )

        flagged = []
        for customer in customers:
            if not customer.usage_alerts:
                continue
            entry = _usage_entry(customer)
            if entry["percentUsed"] >= threshold:
                flagged.append(entry)
                logger.warning(
                    "Usage alert: customer=%s plan=%s used=%d/%d (%.1f%%)",
                    customer.id, customer.plan, entry["used"], entry["limit"], entry["percentUsed"],
                )

        logger.info("Usage report: %d customer(s) at or above %.0f%%", len(flagged), threshold)
        return flagged

    async def upsell_opportunities(self, threshold_pct: Optional[float] = None) -> list[dict[str, Any]]:
        """Active customers near their quota who have a larger plan available."""
        threshold = settings.usage_alert_threshold_pct if threshold_pct is None else threshold_pct
        customers = await run_sync(
            self._directory.list_by_status, [SubscriptionStatus.ACTIVE],
        )

        opportunities = []
        for customer in customers:
            if customer.plan == Plan.ENTERPRISE.value:
                continue
            entry = _usage_entry(customer)
            if entry["percentUsed"] < threshold:
                continue
            upgrade = next_plan(customer.plan)
            if upgrade is None:
                continue
            entry["recommendedPlan"] = upgrade.plan.value
            entry["recommendedPlanLimit"] = plan_limit(upgrade.plan.value)
            entry["recommendedPlanPrice"] = upgrade.price_usd
            opportunities.append(entry)
        return opportunities


def _usage_entry(customer: Customer) -> dict[str, Any]:
    limit = plan_limit(customer.plan)
    used = customer.current_month_tryons
    return {
        "customerId": customer.id,
        "email": customer.email,
        "name": customer.name,
        "plan": customer.plan,
        "used": used,
        "limit": limit,
        "percentUsed": round(used / limit * 100, 1) if limit > 0 else 0.0,
    }
