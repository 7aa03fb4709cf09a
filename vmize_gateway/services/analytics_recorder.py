"""
Analytics Recorder
==================

PURPOSE:
    Append-only call log plus derived aggregates for dashboards and billing
    reconciliation:
      - per-call records        → {data_directory}/analytics-calls.jsonl
      - aggregate snapshot      → {data_directory}/analytics-data.json

    Aggregates: totals, per-customer rollups, UTC daily aggregates (with the
    set of distinct customers per day), funnel stage counters, custom
    counters and revenue.

PERSISTENCE:
    The JSONL log is appended on every call. The snapshot is written
    atomically (tmp → fsync → rename); on load, per-day customer lists are
    turned back into sets. Daily aggregates can be rebuilt from the log at
    any time; revenue is not in the log and is carried over from the current
    aggregates.

CONCURRENCY:
    In-memory mutation happens under a short lock. Disk writes happen under a
    separate write lock so the newest snapshot always lands last. A call is
    appended to the log and folded into the aggregates under the write lock,
    and a rebuild reads the log under it, so a rebuild never sees a call that
    is later applied a second time. Lock order is always write lock, then
    state lock.

    A snapshot is only written when this process changed something since the
    last write, so a short-lived recorder (a Celery task) never overwrites the
    API server's newer snapshot with the copy it loaded at startup.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Optional

from cachetools import TTLCache

from vmize_gateway.config import settings
from vmize_gateway.models.analytics import (
    CallRecord,
    CustomEvent,
    CustomerRollup,
    DailyAggregate,
    FunnelStage,
    parse_event_name,
)

logger = logging.getLogger(__name__)

__all__ = ["AnalyticsRecorder"]

SNAPSHOT_VERSION = 1
RECENT_CALLS = 10
TOP_CUSTOMERS = 5
SERIES_DAYS = 30
COMPLETED_JOBS_MAX = 10_000
COMPLETED_JOBS_TTL_S = 24 * 3600

_ZERO = Decimal("0")


def _ratio(numerator: int, denominator: int) -> float:
    """``numerator / denominator`` clamped to [0, 1]; 0 for an empty denominator."""
    if denominator <= 0:
        return 0.0
    return round(min(1.0, max(0.0, numerator / denominator)), 4)


def _money(value: Decimal) -> float:
    return float(value.quantize(Decimal("0.01")))


@dataclass
class _AnalyticsState:
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    total_duration_ms: float = 0.0
    total_revenue: Decimal = _ZERO
    customers: dict[str, CustomerRollup] = field(default_factory=dict)
    daily: dict[str, DailyAggregate] = field(default_factory=dict)
    event_counts: dict[FunnelStage, int] = field(
        default_factory=lambda: {stage: 0 for stage in FunnelStage}
    )
    custom_counters: dict[str, int] = field(default_factory=dict)
    recent: deque = field(default_factory=lambda: deque(maxlen=RECENT_CALLS))


class AnalyticsRecorder:
    """Durable analytics store for one gateway process."""

    def __init__(
        self,
        data_dir: Optional[str] = None,
        snapshot_file: Optional[str] = None,
        log_file: Optional[str] = None,
        autosave: bool = True,
    ):
        base = Path(data_dir or settings.data_directory)
        self._snapshot_path = base / (snapshot_file or settings.analytics_snapshot_file)
        self._log_path = base / (log_file or settings.analytics_log_file)
        self.autosave = autosave

        self._state = _AnalyticsState()
        self._completed_jobs: TTLCache = TTLCache(maxsize=COMPLETED_JOBS_MAX, ttl=COMPLETED_JOBS_TTL_S)
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._dirty = False
        self._load()

    @property
    def snapshot_path(self) -> Path:
        return self._snapshot_path

    @property
    def log_path(self) -> Path:
        return self._log_path

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_call(self, record: CallRecord) -> None:
        """Append *record* to the call log and fold it into the aggregates."""
        with self._write_lock:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record.to_dict()) + "\n")

            with self._lock:
                self._apply_call(self._state, record)
                self._state.recent.appendleft(record)
                self._dirty = True

        if self.autosave:
            self.flush()

    def record_event(self, name: str, attrs: Optional[dict[str, Any]] = None) -> None:
        """Increment a funnel stage or a custom counter.

        ``attrs["revenue"]`` (if present) is added to total, daily and, when
        ``attrs["customer_id"]`` is given, per-customer revenue.
        """
        attrs = attrs or {}
        event = parse_event_name(name)
        revenue = _parse_revenue(attrs.get("revenue"))
        customer_id = attrs.get("customer_id") or attrs.get("customerId")
        today = datetime.now(timezone.utc).date().isoformat()

        with self._lock:
            state = self._state
            if isinstance(event, CustomEvent):
                state.custom_counters[event.name] = state.custom_counters.get(event.name, 0) + 1
            else:
                state.event_counts[event] = state.event_counts.get(event, 0) + 1

            if revenue:
                state.total_revenue += revenue
                day = state.daily.setdefault(today, DailyAggregate(date=today))
                day.revenue += revenue
                if customer_id:
                    rollup = state.customers.setdefault(
                        customer_id, CustomerRollup(customer_id=customer_id)
                    )
                    rollup.revenue += revenue
            self._dirty = True

        logger.debug("analytics_event", extra={"event_name": name, "revenue": str(revenue)})
        if self.autosave:
            self.flush()

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def summary(self, today: Optional[date] = None) -> dict[str, Any]:
        today = today or datetime.now(timezone.utc).date()
        with self._lock:
            state = self._state
            total = state.total_calls
            series = []
            for offset in range(SERIES_DAYS - 1, -1, -1):
                key = (today - timedelta(days=offset)).isoformat()
                day = state.daily.get(key)
                series.append({
                    "date": key,
                    "total": day.total if day else 0,
                    "successful": day.successful if day else 0,
                    "failed": day.failed if day else 0,
                    "uniqueCustomers": len(day.customers) if day else 0,
                    "revenue": _money(day.revenue) if day else 0.0,
                })

            top = sorted(
                state.customers.values(),
                key=lambda r: (r.total_calls, r.last_seen or ""),
                reverse=True,
            )[:TOP_CUSTOMERS]

            return {
                "totalCalls": total,
                "successfulCalls": state.successful_calls,
                "failedCalls": state.failed_calls,
                "uniqueCustomers": sum(1 for r in state.customers.values() if r.total_calls),
                "successRate": _ratio(state.successful_calls, total),
                "avgDurationMs": round(state.total_duration_ms / total, 2) if total else 0.0,
                "totalRevenue": _money(state.total_revenue),
                "eventCounts": {stage.value: state.event_counts.get(stage, 0) for stage in FunnelStage},
                "customCounters": dict(state.custom_counters),
                "dailyStats": series,
                "topCustomers": [
                    {
                        "customerId": r.customer_id,
                        "totalCalls": r.total_calls,
                        "successRate": round(r.success_rate, 4),
                        "revenue": _money(r.revenue),
                        "lastSeen": r.last_seen,
                    }
                    for r in top
                ],
                "recentCalls": [r.to_dict() for r in state.recent],
            }

    def funnel(self) -> dict[str, Any]:
        """Conversion funnel from the final stage counts."""
        with self._lock:
            counts = {stage: self._state.event_counts.get(stage, 0) for stage in FunnelStage}

        initiated = counts[FunnelStage.TRYON_INITIATED]
        uploaded = counts[FunnelStage.PHOTO_UPLOADED]
        viewed = counts[FunnelStage.RESULT_VIEWED]
        carted = counts[FunnelStage.ADD_TO_CART]
        purchased = counts[FunnelStage.PURCHASE]
        return {
            "stages": {stage.value: count for stage, count in counts.items()},
            "uploadRate": _ratio(uploaded, initiated),
            "viewRate": _ratio(viewed, uploaded),
            "cartRate": _ratio(carted, viewed),
            "purchaseRate": _ratio(purchased, carted),
        }

    def record_completion(self, provider_call_id: str, customer_id: Optional[str] = None) -> bool:
        """Count result_generated/result_viewed once per finished job.

        Status polls repeat; only the first poll that sees a job completed
        moves the funnel. Returns True when the events were recorded.
        """
        with self._lock:
            if provider_call_id in self._completed_jobs:
                return False
            self._completed_jobs[provider_call_id] = customer_id or ""
        attrs = {"customer_id": customer_id} if customer_id else {}
        self.record_event(FunnelStage.RESULT_GENERATED.value, attrs)
        self.record_event(FunnelStage.RESULT_VIEWED.value, attrs)
        return True

    def event_count(self, name: str) -> int:
        event = parse_event_name(name)
        with self._lock:
            if isinstance(event, CustomEvent):
                return self._state.custom_counters.get(event.name, 0)
            return self._state.event_counts.get(event, 0)

    def daily_aggregates(self) -> dict[str, DailyAggregate]:
        with self._lock:
            return {
                key: DailyAggregate.from_dict(day.to_dict())
                for key, day in self._state.daily.items()
            }

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def reset(self) -> None:
        """Drop every aggregate and truncate the call log."""
        with self._write_lock:
            with self._lock:
                self._state = _AnalyticsState()
                self._completed_jobs.clear()
                self._dirty = True
            self._log_path.unlink(missing_ok=True)
        self.flush()
        logger.warning("Analytics data reset")

    def rebuild_daily_aggregates(self) -> int:
        """Recompute call aggregates by replaying the call log.

        Revenue, funnel counters and custom counters are event-sourced
        separately and are carried over unchanged. Returns the number of
        records replayed.
        """
        with self._write_lock:
            records = self._read_log()
            with self._lock:
                self._state = self._rebuilt_state(self._state, records)
                self._dirty = True

        self.flush()
        logger.info("Analytics aggregates rebuilt from %d call record(s)", len(records))
        return len(records)

    @staticmethod
    def _rebuilt_state(old: _AnalyticsState, records: list[CallRecord]) -> _AnalyticsState:
        rebuilt = _AnalyticsState(
            total_revenue=old.total_revenue,
            event_counts=dict(old.event_counts),
            custom_counters=dict(old.custom_counters),
        )
        for record in records:
            AnalyticsRecorder._apply_call(rebuilt, record)
        for key, day in old.daily.items():
            if day.revenue:
                rebuilt.daily.setdefault(key, DailyAggregate(date=key)).revenue = day.revenue
        for cid, rollup in old.customers.items():
            if rollup.revenue:
                rebuilt.customers.setdefault(cid, CustomerRollup(customer_id=cid)).revenue = rollup.revenue
        for record in sorted(records, key=lambda r: r.timestamp)[-RECENT_CALLS:]:
            rebuilt.recent.appendleft(record)
        return rebuilt

    def flush(self) -> None:
        """Write the aggregate snapshot atomically if anything changed since the last write."""
        with self._write_lock:
            with self._lock:
                if not self._dirty:
                    return
                data = self._to_dict(self._state)
                self._dirty = False
            self._snapshot_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(self._snapshot_path.parent), suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, str(self._snapshot_path))
            except Exception:
                with self._lock:
                    self._dirty = True
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
                raise

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _apply_call(state: _AnalyticsState, record: CallRecord) -> None:
        state.total_calls += 1
        if record.succeeded:
            state.successful_calls += 1
        else:
            state.failed_calls += 1
        state.total_duration_ms += record.duration_ms

        rollup = state.customers.setdefault(
            record.customer_id, CustomerRollup(customer_id=record.customer_id)
        )
        rollup.add_call(record)

        key = record.date_key
        state.daily.setdefault(key, DailyAggregate(date=key)).add_call(record)

    def _read_log(self) -> list[CallRecord]:
        if not self._log_path.exists():
            return []
        records = []
        with open(self._log_path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(CallRecord.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, ValueError):
                    logger.warning("Skipping malformed call log entry")
        return records

    @staticmethod
    def _to_dict(state: _AnalyticsState) -> dict[str, Any]:
        return {
            "version": SNAPSHOT_VERSION,
            "totals": {
                "calls": state.total_calls,
                "successful": state.successful_calls,
                "failed": state.failed_calls,
                "duration_ms": state.total_duration_ms,
                "revenue": str(state.total_revenue),
            },
            "customers": {cid: r.to_dict() for cid, r in state.customers.items()},
            "daily": {key: day.to_dict() for key, day in state.daily.items()},
            "event_counts": {stage.value: count for stage, count in state.event_counts.items()},
            "custom_counters": dict(state.custom_counters),
            "recent": [r.to_dict() for r in state.recent],
        }

    def _load(self) -> None:
        if not self._snapshot_path.exists():
            logger.info("No analytics snapshot at %s, starting empty", self._snapshot_path)
            return
        try:
            raw = json.loads(self._snapshot_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error("Failed to load analytics snapshot: %s; rebuilding from call log", e)
            self.rebuild_daily_aggregates()
            return

        totals = raw.get("totals", {})
        state = _AnalyticsState(
            total_calls=int(totals.get("calls", 0)),
            successful_calls=int(totals.get("successful", 0)),
            failed_calls=int(totals.get("failed", 0)),
            total_duration_ms=float(totals.get("duration_ms", 0.0)),
            total_revenue=Decimal(str(totals.get("revenue", "0"))),
            customers={
                cid: CustomerRollup.from_dict(r) for cid, r in (raw.get("customers") or {}).items()
            },
            daily={
                key: DailyAggregate.from_dict(day) for key, day in (raw.get("daily") or {}).items()
            },
            custom_counters={k: int(v) for k, v in (raw.get("custom_counters") or {}).items()},
        )
        for name, count in (raw.get("event_counts") or {}).items():
            event = parse_event_name(name)
            if isinstance(event, FunnelStage):
                state.event_counts[event] = int(count)
            else:
                state.custom_counters[event.name] = int(count)
        for item in reversed(raw.get("recent") or []):
            state.recent.appendleft(CallRecord.from_dict(item))

        self._state = state
        logger.info(
            "Loaded analytics snapshot: calls=%d customers=%d days=%d",
            state.total_calls, len(state.customers), len(state.daily),
        )


def _parse_revenue(value: Any) -> Decimal:
    if value in (None, ""):
        return _ZERO
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        logger.warning("Ignoring non-numeric revenue value: %r", value)
        return _ZERO
    if not amount.is_finite() or amount < 0:
        logger.warning("Ignoring invalid revenue value: %r", value)
        return _ZERO
    return amount
