"""
Customer Directory
==================

PURPOSE:
    Durable source of truth for customers: plan, hashed API key,
    subscription status, usage counters, usage history and billing-cycle
    state. Backed by the SQLModel tables in ``vmize_gateway.models.customer``.

CONCURRENCY:
    Usage counters are only changed with single relative UPDATE statements
    (``current = current + n`` / ``current = current - archived``), so
    concurrent increments and a period close never lose each other's writes.

All methods are synchronous; async callers go through ``run_sync``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from vmize_gateway.auth.api_keys import display_prefix, generate_api_key, hash_api_key
from vmize_gateway.config import settings
from vmize_gateway.core.database import Database, sqlite_retry
from vmize_gateway.core.errors import Conflict, NotFound
from vmize_gateway.models.customer import (
    BillingCycle,
    Customer,
    SubscriptionStatus,
    UsageHistory,
    as_utc,
    month_key,
    period_start_for,
    utcnow,
)
from vmize_gateway.models.plans import Plan

logger = logging.getLogger(__name__)

__all__ = ["CustomerDirectory"]


class CustomerDirectory:
    """CRUD and counter operations over the customer tables."""

    def __init__(self, db: Database, history_months: Optional[int] = None):
        self._db = db
        self.history_months = history_months or settings.usage_history_months

    # ------------------------------------------------------------------
    # Issuance / lookup
    # ------------------------------------------------------------------

    def create(
        self,
        email: str,
        name: Optional[str] = None,
        plan: str = Plan.STARTER.value,
        company_name: Optional[str] = None,
        subscription_status: str = SubscriptionStatus.ACTIVE.value,
        trial_ends_at: Optional[datetime] = None,
        stripe_customer_id: Optional[str] = None,
        raw_key: Optional[str] = None,
    ) -> Tuple[Customer, str]:
        """Create a customer and return it with its raw API key.

        The raw key is not recoverable afterwards.

        Raises:
            Conflict: a customer with this email already exists.
        """
        plan = Plan(plan).value
        raw_key = raw_key or generate_api_key()

        def _create() -> Customer:
            with self._db.session() as session:
                existing = session.exec(select(Customer).where(Customer.email == email)).first()
                if existing is not None:
                    raise Conflict(
                        detail="Customer already exists",
                        context={"email": email},
                    )
                customer = Customer(
                    email=email,
                    name=name,
                    company_name=company_name,
                    api_key_hash=hash_api_key(raw_key),
                    api_key_prefix=display_prefix(raw_key),
                    plan=plan,
                    subscription_status=subscription_status,
                    trial_ends_at=trial_ends_at,
                    stripe_customer_id=stripe_customer_id,
                )
                session.add(customer)
                session.add(BillingCycle(customer_id=customer.id))
                try:
                    session.commit()
                except IntegrityError as exc:
                    session.rollback()
                    raise Conflict(detail=f"Customer already exists: {exc.orig}") from exc
                session.refresh(customer)
                return customer

        customer = sqlite_retry(_create)
        logger.info("Customer created: id=%s plan=%s", customer.id, customer.plan)
        return customer, raw_key

    def ensure_customer_for_key(self, raw_key: str, email: str, plan: str = Plan.STARTER.value) -> Customer:
        """Return the customer owning *raw_key*, creating it if needed."""
        existing = self.get_by_api_key(raw_key)
        if existing is not None:
            return existing
        customer, _ = self.create(email=email, name="Demo", plan=plan, raw_key=raw_key)
        return customer

    def get(self, customer_id: str) -> Optional[Customer]:
        with self._db.session() as session:
            return session.get(Customer, customer_id)

    def get_by_api_key(self, raw_key: str) -> Optional[Customer]:
        key_hash = hash_api_key(raw_key)
        with self._db.session() as session:
            return session.exec(
                select(Customer).where(Customer.api_key_hash == key_hash)
            ).first()

    def revoke(self, raw_key: str) -> Customer:
        """Soft-delete: mark the key's customer inactive.

        Raises:
            NotFound: no customer holds this key.
        """
        key_hash = hash_api_key(raw_key)

        def _revoke() -> Customer:
            with self._db.session() as session:
                customer = session.exec(
                    select(Customer).where(Customer.api_key_hash == key_hash)
                ).first()
                if customer is None:
                    raise NotFound(detail="API key not found")
                customer.subscription_status = SubscriptionStatus.INACTIVE.value
                customer.updated_at = utcnow()
                session.add(customer)
                session.commit()
                session.refresh(customer)
                return customer

        customer = sqlite_retry(_revoke)
        logger.info("API key revoked: customer=%s prefix=%s", customer.id, customer.api_key_prefix)
        return customer

    def list_by_status(self, statuses: Iterable[str]) -> List[Customer]:
        wanted = [str(getattr(s, "value", s)) for s in statuses]
        with self._db.session() as session:
            return list(
                session.exec(
                    select(Customer)
                    .where(Customer.subscription_status.in_(wanted))  # type: ignore[union-attr]
                    .order_by(Customer.created_at)
                ).all()
            )

    def list_all(self) -> List[Customer]:
        with self._db.session() as session:
            return list(session.exec(select(Customer).order_by(Customer.created_at)).all())

    # ------------------------------------------------------------------
    # Usage counters
    # ------------------------------------------------------------------

    def increment_usage(self, customer_id: str, tryons: int = 0, api_calls: int = 0) -> None:
        """Atomically add to current-month and all-time counters."""
        if tryons < 0 or api_calls < 0:
            raise ValueError("usage increments must be non-negative")

        stmt = (
            update(Customer)
            .where(Customer.id == customer_id)
            .values(
                current_month_tryons=Customer.current_month_tryons + tryons,
                all_time_tryons=Customer.all_time_tryons + tryons,
                current_month_api_calls=Customer.current_month_api_calls + api_calls,
                all_time_api_calls=Customer.all_time_api_calls + api_calls,
                updated_at=utcnow(),
            )
        )

        def _apply() -> int:
            with self._db.engine.begin() as conn:
                return conn.execute(stmt).rowcount

        if sqlite_retry(_apply) == 0:
            raise NotFound(detail="Customer not found", context={"customer_id": customer_id})

    def set_current_usage(self, customer_id: str, tryons: int) -> None:
        """Overwrite the current-month tryon counter (admin/test seeding only)."""
        stmt = (
            update(Customer)
            .where(Customer.id == customer_id)
            .values(current_month_tryons=tryons, updated_at=utcnow())
        )

        def _apply() -> None:
            with self._db.engine.begin() as conn:
                conn.execute(stmt)

        sqlite_retry(_apply)

    def zero_all_usage(self) -> int:
        """Zero current-month counters for every customer. Returns rows touched."""
        now = utcnow()
        stmt = update(Customer).values(
            current_month_tryons=0,
            current_month_api_calls=0,
            last_reset_at=now,
            updated_at=now,
        )

        def _apply() -> int:
            with self._db.engine.begin() as conn:
                return conn.execute(stmt).rowcount

        count = sqlite_retry(_apply)
        logger.warning("Current-month usage zeroed for %d customer(s)", count)
        return count

    # ------------------------------------------------------------------
    # Billing cycle
    # ------------------------------------------------------------------

    def billing_cycle(self, customer_id: str) -> BillingCycle:
        """Return the customer's cycle state, creating it on first access."""

        def _get() -> BillingCycle:
            with self._db.session() as session:
                cycle = session.get(BillingCycle, customer_id)
                if cycle is None:
                    customer = session.get(Customer, customer_id)
                    start = period_start_for(customer.created_at if customer else utcnow())
                    cycle = BillingCycle(customer_id=customer_id, period_start=start)
                    session.add(cycle)
                    session.commit()
                    session.refresh(cycle)
                return cycle

        return sqlite_retry(_get)

    def close_period(
        self,
        customer_id: str,
        new_period_start: datetime,
        tryons: Optional[int] = None,
        api_calls: Optional[int] = None,
    ) -> Optional[int]:
        """Archive the current period's usage and start a new period.

        In one transaction: the tryon count ``v`` is written to usage history
        under the old period's month key, ``v`` is subtracted from the live
        counter and the cycle's ``period_start`` moves to *new_period_start*.
        ``v`` defaults to the counter's value inside the transaction; pass
        *tryons* / *api_calls* to archive exactly what was billed, leaving
        later increments in the new period. Returns ``v``, or None when the
        period was already closed.
        """
        new_period_start = as_utc(new_period_start)

        def _close() -> Optional[int]:
            with self._db.session() as session:
                cycle = session.get(BillingCycle, customer_id)
                customer = session.get(Customer, customer_id)
                if customer is None:
                    raise NotFound(detail="Customer not found", context={"customer_id": customer_id})
                if cycle is None:
                    cycle = BillingCycle(
                        customer_id=customer_id,
                        period_start=period_start_for(customer.created_at),
                    )
                if as_utc(cycle.period_start) >= new_period_start:
                    return None

                archived_tryons = customer.current_month_tryons if tryons is None else tryons
                archived_calls = customer.current_month_api_calls if api_calls is None else api_calls
                key = month_key(cycle.period_start)
                now = utcnow()

                history = session.exec(
                    select(UsageHistory).where(
                        UsageHistory.customer_id == customer_id,
                        UsageHistory.month_key == key,
                    )
                ).first()
                if history is None:
                    history = UsageHistory(customer_id=customer_id, month_key=key)
                history.tryons += archived_tryons
                history.api_calls += archived_calls
                history.archived_at = now
                session.add(history)

                session.exec(  # type: ignore[call-overload]
                    update(Customer)
                    .where(Customer.id == customer_id)
                    .values(
                        current_month_tryons=Customer.current_month_tryons - archived_tryons,
                        current_month_api_calls=Customer.current_month_api_calls - archived_calls,
                        last_reset_at=now,
                        updated_at=now,
                    )
                )

                cycle.period_start = new_period_start
                cycle.last_run_at = now
                session.add(cycle)
                session.commit()

                self._trim_history(session, customer_id)
                return archived_tryons

        archived = sqlite_retry(_close)
        if archived is not None:
            logger.info(
                "Usage period closed: customer=%s archived=%d new_period=%s",
                customer_id, archived, month_key(new_period_start),
            )
        return archived

    def _trim_history(self, session, customer_id: str) -> None:
        rows = session.exec(
            select(UsageHistory)
            .where(UsageHistory.customer_id == customer_id)
            .order_by(UsageHistory.month_key.desc())  # type: ignore[attr-defined]
        ).all()
        stale = rows[self.history_months:]
        if not stale:
            return
        for row in stale:
            session.delete(row)
        session.commit()

    def record_charge(
        self,
        customer_id: str,
        *,
        status: str,
        charge_id: Optional[str] = None,
        error: Optional[str] = None,
        carried_overage_units: int = 0,
    ) -> None:
        """Persist the outcome of a billing run for one customer."""

        def _record() -> None:
            with self._db.session() as session:
                cycle = session.get(BillingCycle, customer_id)
                if cycle is None:
                    cycle = BillingCycle(customer_id=customer_id)
                cycle.last_charge_status = status
                cycle.last_charge_id = charge_id
                cycle.last_charge_error = error
                cycle.carried_overage_units = carried_overage_units
                cycle.last_run_at = utcnow()
                session.add(cycle)
                session.commit()

        sqlite_retry(_record)

    def usage_history(self, customer_id: str) -> dict[str, int]:
        """Archived tryons keyed by ``YYYY-MM``, oldest first."""
        with self._db.session() as session:
            rows = session.exec(
                select(UsageHistory)
                .where(UsageHistory.customer_id == customer_id)
                .order_by(UsageHistory.month_key)
            ).all()
            return {row.month_key: row.tryons for row in rows}
