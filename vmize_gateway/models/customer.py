"""
Customer Directory Models
=========================

SQLModel tables for the durable customer directory:
- Customer: plan, hashed API key, subscription status, usage counters.
- UsageHistory: archived monthly usage, one row per (customer, month).
- BillingCycle: per-customer reconciliation state.

Counters on Customer are only ever changed through CustomerDirectory,
using single-statement relative updates.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on read; treat naive timestamps as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def month_key(value: datetime) -> str:
    return as_utc(value).strftime("%Y-%m")


def period_start_for(value: datetime) -> datetime:
    """First instant of the UTC calendar month containing *value*."""
    value = as_utc(value)
    return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    INACTIVE = "inactive"
    CANCELLED = "cancelled"


class Customer(SQLModel, table=True):
    """A gateway customer.

    The raw API key is never stored, only an HMAC-SHA256 hash and a short
    display prefix.
    """

    __tablename__ = "customers"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True, max_length=36)
    email: str = Field(index=True, unique=True, max_length=255)
    name: Optional[str] = Field(default=None, max_length=255)
    company_name: Optional[str] = Field(default=None, max_length=255)

    api_key_hash: str = Field(index=True, unique=True, max_length=64)
    api_key_prefix: str = Field(max_length=32)

    plan: str = Field(default="starter", max_length=32)
    subscription_status: str = Field(default=SubscriptionStatus.ACTIVE.value, max_length=32)
    trial_ends_at: Optional[datetime] = Field(default=None, nullable=True)
    stripe_customer_id: Optional[str] = Field(default=None, nullable=True, max_length=255)
    usage_alerts: bool = Field(default=True)

    current_month_tryons: int = Field(default=0)
    current_month_api_calls: int = Field(default=0)
    all_time_tryons: int = Field(default=0)
    all_time_api_calls: int = Field(default=0)
    last_reset_at: datetime = Field(default_factory=utcnow)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class UsageHistory(SQLModel, table=True):
    """Archived usage for one closed billing period."""

    __tablename__ = "usage_history"
    __table_args__ = (UniqueConstraint("customer_id", "month_key", name="uq_usage_history_month"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    customer_id: str = Field(index=True, max_length=36, foreign_key="customers.id")
    month_key: str = Field(max_length=7)
    tryons: int = Field(default=0)
    api_calls: int = Field(default=0)
    archived_at: datetime = Field(default_factory=utcnow)


class BillingCycle(SQLModel, table=True):
    """Reconciliation state for one customer.

    ``carried_overage_units`` holds overage from periods whose charge failed;
    it is added to the next run's overage and cleared on a successful charge.
    """

    __tablename__ = "billing_cycles"

    customer_id: str = Field(primary_key=True, max_length=36, foreign_key="customers.id")
    period_start: datetime = Field(default_factory=lambda: period_start_for(utcnow()))
    carried_overage_units: int = Field(default=0)
    last_charge_id: Optional[str] = Field(default=None, nullable=True, max_length=255)
    last_charge_status: Optional[str] = Field(default=None, nullable=True, max_length=32)
    last_charge_error: Optional[str] = Field(default=None, nullable=True)
    last_run_at: Optional[datetime] = Field(default=None, nullable=True)
