"""
Admission Controller
====================

Decides whether an inbound call may proceed:

  1. key present and well formed      else Unauthenticated
  2. key known to the directory       else Unauthorized
  3. subscription active / in trial   else Forbidden
  4. under the per-minute rate limit  else RateLimited
  5. used + in_flight + units <= limit, reserved atomically
                                      else QuotaExceeded

The only side effect of a successful admission is the reservation; the usage
accountant releases it once the call finishes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from vmize_gateway.auth.api_keys import is_well_formed
from vmize_gateway.core.errors import (
    Forbidden,
    QuotaExceeded,
    RateLimited,
    Unauthenticated,
    Unauthorized,
)
from vmize_gateway.models.customer import Customer, SubscriptionStatus, as_utc, utcnow
from vmize_gateway.models.plans import plan_limit
from vmize_gateway.services.customer_directory import CustomerDirectory
from vmize_gateway.services.reservation_ledger import Reservation, ReservationLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdmissionResult:
    allow: bool
    customer: Customer
    reservation: Optional[Reservation] = None
    reason: Optional[str] = None


class AdmissionController:
    def __init__(self, directory: CustomerDirectory, ledger: ReservationLedger):
        self._directory = directory
        self._ledger = ledger

    def authenticate(self, api_key: Optional[str]) -> Customer:
        """Resolve *api_key* to an entitled customer without reserving quota.

        Raises:
            Unauthenticated, Unauthorized, Forbidden
        """
        if not is_well_formed(api_key):
            raise Unauthenticated(detail="API key missing or malformed")

        customer = self._directory.get_by_api_key(api_key)
        if customer is None:
            raise Unauthorized(detail="Unknown API key")

        if not _is_entitled(customer):
            raise Forbidden(
                detail=f"subscription_status={customer.subscription_status}",
                context={"customer_id": customer.id},
            )
        return customer

    def admit(self, api_key: Optional[str], requested_units: int = 1) -> AdmissionResult:
        """Authenticate, rate-check and reserve *requested_units*.

        Raises:
            Unauthenticated, Unauthorized, Forbidden, RateLimited, QuotaExceeded
        """
        if requested_units < 1:
            raise ValueError("requested_units must be >= 1")

        customer = self.authenticate(api_key)

        if self._ledger.check_rate(customer.id):
            raise RateLimited(
                detail=f"over {self._ledger.rate_limit_rpm} requests/minute",
                context={"customer_id": customer.id},
            )
        self._ledger.record_request(customer.id)

        limit = plan_limit(customer.plan)
        reservation = self._ledger.try_reserve(
            customer.id,
            requested_units,
            limit=limit,
            read_usage=lambda: self._current_usage(customer),
        )
        if reservation is None:
            raise QuotaExceeded(
                detail=f"limit={limit} requested={requested_units}",
                context={"customer_id": customer.id, "plan": customer.plan},
            )

        logger.debug(
            "Admitted: customer=%s units=%d limit=%d",
            customer.id, requested_units, limit,
        )
        return AdmissionResult(allow=True, customer=customer, reservation=reservation)

    def _current_usage(self, customer: Customer) -> int:
        fresh = self._directory.get(customer.id)
        return (fresh or customer).current_month_tryons


def _is_entitled(customer: Customer) -> bool:
    status = customer.subscription_status
    if status == SubscriptionStatus.ACTIVE.value:
        return True
    if status == SubscriptionStatus.TRIALING.value:
        ends = as_utc(customer.trial_ends_at)
        return ends is None or ends > utcnow()
    return False
