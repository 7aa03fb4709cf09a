"""
Usage Accountant
================

Settles admitted calls:
  - releases the reservation on every exit path
  - on success, commits the permanent usage increment
  - answers remaining-quota and usage queries

Usage writes go through a bounded RetryPolicy. When every attempt fails the
call fails closed with PersistenceFailure and the lost increment is logged
with enough context to reconcile it by hand.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from vmize_gateway.config import settings
from vmize_gateway.core.errors import GatewayError, PersistenceFailure
from vmize_gateway.core.retry import RetryPolicy
from vmize_gateway.models.analytics import CallOutcome
from vmize_gateway.models.customer import Customer
from vmize_gateway.models.plans import plan_limit
from vmize_gateway.services.customer_directory import CustomerDirectory
from vmize_gateway.services.reservation_ledger import Reservation, ReservationLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageView:
    plan: str
    used: int
    limit: int
    remaining: int
    percent_used: float
    over_limit: bool
    api_calls: int
    last_reset: Optional[datetime] = None


class UsageAccountant:
    def __init__(
        self,
        directory: CustomerDirectory,
        ledger: ReservationLedger,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self._directory = directory
        self._ledger = ledger
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.usage_write_attempts,
            retry_on=(SQLAlchemyError,),
        )

    def record_outcome(
        self,
        customer: Customer,
        units: int,
        outcome: CallOutcome,
        reservation: Optional[Reservation],
    ) -> None:
        """Release *reservation* and, on success, commit *units*.

        Raises:
            PersistenceFailure: the increment could not be written.
        """
        try:
            if outcome == CallOutcome.SUCCESS:
                self._write(customer.id, tryons=units, api_calls=1, operation="usage increment")
        finally:
            if reservation is not None:
                self._ledger.release(reservation)

    def record_api_call(self, customer: Customer) -> None:
        """Count a non-metered call (status polls) in the api-call counters."""
        self._write(customer.id, tryons=0, api_calls=1, operation="api-call increment")

    def remaining(self, customer: Customer) -> int:
        """Committed remaining quota; repeated calls return the same value."""
        fresh = self._directory.get(customer.id) or customer
        return max(0, plan_limit(fresh.plan) - fresh.current_month_tryons)

    def usage(self, customer: Customer) -> UsageView:
        fresh = self._directory.get(customer.id) or customer
        limit = plan_limit(fresh.plan)
        used = fresh.current_month_tryons
        percent = round(used / limit * 100, 1) if limit > 0 else 0.0
        return UsageView(
            plan=fresh.plan,
            used=used,
            limit=limit,
            remaining=max(0, limit - used),
            percent_used=percent,
            over_limit=used > limit,
            api_calls=fresh.current_month_api_calls,
            last_reset=fresh.last_reset_at,
        )

    def _write(self, customer_id: str, *, tryons: int, api_calls: int, operation: str) -> None:
        try:
            self.retry_policy.call(
                lambda: self._directory.increment_usage(customer_id, tryons=tryons, api_calls=api_calls),
                operation=operation,
            )
        except GatewayError:
            raise
        except Exception as exc:
            logger.error(
                "usage_write_lost",
                extra={
                    "customer_id": customer_id,
                    "tryons": tryons,
                    "api_calls": api_calls,
                    "error.type": type(exc).__name__,
                },
            )
            raise PersistenceFailure(
                detail=f"{operation} failed: {exc}",
                context={"customer_id": customer_id, "tryons": tryons},
            ) from exc
