"""
Analytics data types.

Event names are a tagged union: a known ``FunnelStage`` or a ``CustomEvent``
carrying an arbitrary name. Only funnel stages feed the conversion funnel.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Union


class FunnelStage(str, Enum):
    TRYON_INITIATED = "tryon_initiated"
    PHOTO_UPLOADED = "photo_uploaded"
    RESULT_GENERATED = "result_generated"
    RESULT_VIEWED = "result_viewed"
    ADD_TO_CART = "add_to_cart"
    PURCHASE = "purchase"
    API_ERROR = "api_error"


@dataclass(frozen=True)
class CustomEvent:
    name: str


EventName = Union[FunnelStage, CustomEvent]

_STAGES = {stage.value: stage for stage in FunnelStage}


def parse_event_name(name: str) -> EventName:
    """Map a raw event name onto a funnel stage, else a custom event."""
    if not name or not name.strip():
        raise ValueError("event name must be non-empty")
    name = name.strip()
    return _STAGES.get(name) or CustomEvent(name)


class CallOutcome(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class CallRecord:
    """One gateway call. Immutable once recorded."""
    customer_id: str
    endpoint: str
    method: str
    outcome: str
    duration_ms: float
    timestamp: str = field(default_factory=_iso_now)
    error_reason: Optional[str] = None
    product_id: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def succeeded(self) -> bool:
        return self.outcome == CallOutcome.SUCCESS.value

    @property
    def date_key(self) -> str:
        """UTC calendar date (YYYY-MM-DD) of the call."""
        ts = datetime.fromisoformat(self.timestamp)
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return ts.astimezone(timezone.utc).date().isoformat()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "CallRecord":
        return cls(
            id=raw.get("id") or uuid.uuid4().hex,
            customer_id=raw["customer_id"],
            endpoint=raw["endpoint"],
            method=raw.get("method", "POST"),
            outcome=raw["outcome"],
            duration_ms=float(raw.get("duration_ms", 0)),
            timestamp=raw["timestamp"],
            error_reason=raw.get("error_reason"),
            product_id=raw.get("product_id"),
        )


@dataclass
class DailyAggregate:
    date: str
    total: int = 0
    successful: int = 0
    failed: int = 0
    customers: set[str] = field(default_factory=set)
    revenue: Decimal = Decimal("0")

    def add_call(self, record: CallRecord) -> None:
        self.total += 1
        if record.succeeded:
            self.successful += 1
        else:
            self.failed += 1
        self.customers.add(record.customer_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date,
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "customers": sorted(self.customers),
            "revenue": str(self.revenue),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "DailyAggregate":
        # Persisted as a list; back to a set so unions stay idempotent.
        return cls(
            date=raw["date"],
            total=int(raw.get("total", 0)),
            successful=int(raw.get("successful", 0)),
            failed=int(raw.get("failed", 0)),
            customers=set(raw.get("customers") or []),
            revenue=Decimal(str(raw.get("revenue", "0"))),
        )


@dataclass
class CustomerRollup:
    customer_id: str
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    total_duration_ms: float = 0.0
    first_seen: Optional[str] = None
    last_seen: Optional[str] = None
    revenue: Decimal = Decimal("0")

    def add_call(self, record: CallRecord) -> None:
        self.total_calls += 1
        if record.succeeded:
            self.successful_calls += 1
        else:
            self.failed_calls += 1
        self.total_duration_ms += record.duration_ms
        if self.first_seen is None or record.timestamp < self.first_seen:
            self.first_seen = record.timestamp
        if self.last_seen is None or record.timestamp > self.last_seen:
            self.last_seen = record.timestamp

    @property
    def success_rate(self) -> float:
        return self.successful_calls / self.total_calls if self.total_calls else 0.0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["revenue"] = str(self.revenue)
        return data

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "CustomerRollup":
        return cls(
            customer_id=raw["customer_id"],
            total_calls=int(raw.get("total_calls", 0)),
            successful_calls=int(raw.get("successful_calls", 0)),
            failed_calls=int(raw.get("failed_calls", 0)),
            total_duration_ms=float(raw.get("total_duration_ms", 0.0)),
            first_seen=raw.get("first_seen"),
            last_seen=raw.get("last_seen"),
            revenue=Decimal(str(raw.get("revenue", "0"))),
        )
