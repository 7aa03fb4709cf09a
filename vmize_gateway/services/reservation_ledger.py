"""
Reservation Ledger — in-flight quota holds and per-customer rate limiting.

Layers:
  1. Rate:        sliding 60s window per customer (VMIZE_RATE_LIMIT_RPM).
  2. Reservation: units held for calls currently waiting on the upstream.

The quota check and the reservation happen under one per-customer lock, so two
concurrent calls for the same customer can never both pass a check that only
one of them fits into. Reservations are released by the usage accountant on every exit
path; release is idempotent.

Implementation: in-memory, process-scoped. Resets on restart, which only drops
holds for calls that died with the process.
"""
from __future__ import annotations

import logging
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Optional

logger = logging.getLogger(__name__)

RATE_WINDOW_S = 60.0


class _SlidingWindow:
    """Thread-safe sliding-window counter for a single key."""

    __slots__ = ("_timestamps", "_lock")

    def __init__(self):
        self._timestamps: list[float] = []
        self._lock = Lock()

    def count_in_window(self, window_s: float, now: float) -> int:
        """Return how many events occurred in the last *window_s* seconds."""
        cutoff = now - window_s
        with self._lock:
            self._timestamps = [t for t in self._timestamps if t > cutoff]
            return len(self._timestamps)

    def record(self, now: float) -> None:
        with self._lock:
            self._timestamps.append(now)


@dataclass
class Reservation:
    customer_id: str
    units: int
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)
    released: bool = False


class ReservationLedger:
    """Per-customer in-flight reservations plus a request-rate limit."""

    def __init__(self, rate_limit_rpm: int = 120):
        self.rate_limit_rpm = rate_limit_rpm
        self._windows: dict[str, _SlidingWindow] = defaultdict(_SlidingWindow)
        self._in_flight: dict[str, int] = defaultdict(int)
        self._customer_locks: dict[str, Lock] = {}
        self._lock = Lock()

    # ------------------------------------------------------------------
    # Rate limit
    # ------------------------------------------------------------------

    def check_rate(self, customer_id: str) -> Optional[str]:
        """Return "rate_limited" when the customer is over the rpm limit."""
        if self.rate_limit_rpm <= 0:
            return None
        count = self._windows[customer_id].count_in_window(RATE_WINDOW_S, time.time())
        if count >= self.rate_limit_rpm:
            return "rate_limited"
        return None

    def record_request(self, customer_id: str) -> None:
        self._windows[customer_id].record(time.time())

    # ------------------------------------------------------------------
    # Reservations
    # ------------------------------------------------------------------

    def _customer_lock(self, customer_id: str) -> Lock:
        with self._lock:
            lock = self._customer_locks.get(customer_id)
            if lock is None:
                lock = self._customer_locks[customer_id] = Lock()
            return lock

    def try_reserve(
        self,
        customer_id: str,
        units: int,
        limit: int,
        read_usage: Callable[[], int],
    ) -> Optional[Reservation]:
        """Hold *units* if ``committed + in_flight + units <= limit``.

        ``read_usage`` is called under the customer's lock, so a commit that
        lands between the read and the reservation is always seen either as
        committed usage or as in-flight units. Returns None (and holds
        nothing) when the call would not fit.
        """
        with self._customer_lock(customer_id):
            committed_usage = read_usage()
            with self._lock:
                in_flight = self._in_flight[customer_id]
                fits = committed_usage + in_flight + units <= limit
                if fits:
                    self._in_flight[customer_id] = in_flight + units
            if not fits:
                logger.info(
                    "Reservation refused: customer=%s used=%d in_flight=%d units=%d limit=%d",
                    customer_id, committed_usage, in_flight, units, limit,
                )
                return None
        return Reservation(customer_id=customer_id, units=units)

    def release(self, reservation: Reservation) -> None:
        """Return held units. Safe to call more than once."""
        with self._customer_lock(reservation.customer_id), self._lock:
            if reservation.released:
                return
            reservation.released = True
            remaining = self._in_flight[reservation.customer_id] - reservation.units
            if remaining > 0:
                self._in_flight[reservation.customer_id] = remaining
            else:
                self._in_flight.pop(reservation.customer_id, None)

    def in_flight(self, customer_id: str) -> int:
        with self._lock:
            return self._in_flight.get(customer_id, 0)

    def total_in_flight(self) -> int:
        with self._lock:
            return sum(self._in_flight.values())

    def clear(self) -> None:
        with self._lock:
            self._in_flight.clear()
            self._windows.clear()
            self._customer_locks.clear()
