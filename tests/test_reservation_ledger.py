"""
Tests for the reservation ledger and the bounded retry policy.
"""

import threading
from unittest.mock import MagicMock, patch

import pytest

from vmize_gateway.core.retry import RetryPolicy
from vmize_gateway.services.reservation_ledger import ReservationLedger


class TestReservations:
    def test_reserve_within_limit(self):
        ledger = ReservationLedger()
        reservation = ledger.try_reserve("c1", 2, limit=10, read_usage=lambda: 8)
        assert reservation is not None
        assert ledger.in_flight("c1") == 2

    def test_refused_when_in_flight_fills_quota(self):
        ledger = ReservationLedger()
        ledger.try_reserve("c1", 1, limit=10, read_usage=lambda: 9)
        assert ledger.try_reserve("c1", 1, limit=10, read_usage=lambda: 9) is None
        assert ledger.in_flight("c1") == 1

    def test_customers_are_independent(self):
        ledger = ReservationLedger()
        ledger.try_reserve("c1", 5, limit=5, read_usage=lambda: 0)
        assert ledger.try_reserve("c2", 5, limit=5, read_usage=lambda: 0) is not None

    def test_release_is_idempotent(self):
        ledger = ReservationLedger()
        first = ledger.try_reserve("c1", 1, limit=10, read_usage=lambda: 0)
        ledger.try_reserve("c1", 1, limit=10, read_usage=lambda: 0)
        ledger.release(first)
        ledger.release(first)
        assert ledger.in_flight("c1") == 1

    def test_usage_read_under_lock(self):
        ledger = ReservationLedger()
        read_usage = MagicMock(return_value=3)
        ledger.try_reserve("c1", 1, limit=10, read_usage=read_usage)
        read_usage.assert_called_once_with()

    def test_concurrent_reservations_never_overshoot(self):
        ledger = ReservationLedger()
        held = []
        lock = threading.Lock()

        def worker():
            r = ledger.try_reserve("c1", 1, limit=20, read_usage=lambda: 5)
            if r is not None:
                with lock:
                    held.append(r)

        threads = [threading.Thread(target=worker) for _ in range(50)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(held) == 15
        assert ledger.in_flight("c1") == 15

    def test_clear(self):
        ledger = ReservationLedger()
        ledger.try_reserve("c1", 1, limit=10, read_usage=lambda: 0)
        ledger.clear()
        assert ledger.in_flight("c1") == 0


class TestRateWindow:
    def test_limit_reached(self):
        ledger = ReservationLedger(rate_limit_rpm=2)
        for _ in range(2):
            assert ledger.check_rate("c1") is None
            ledger.record_request("c1")
        assert ledger.check_rate("c1") == "rate_limited"
        assert ledger.check_rate("c2") is None

    def test_window_slides(self):
        ledger = ReservationLedger(rate_limit_rpm=1)
        with patch("vmize_gateway.services.reservation_ledger.time.time", return_value=1000.0):
            ledger.record_request("c1")
            assert ledger.check_rate("c1") == "rate_limited"
        with patch("vmize_gateway.services.reservation_ledger.time.time", return_value=1061.0):
            assert ledger.check_rate("c1") is None


class TestRetryPolicy:
    def test_returns_first_success(self):
        fn = MagicMock(return_value="ok")
        assert RetryPolicy(max_attempts=3, base_delay_s=0).call(fn) == "ok"
        assert fn.call_count == 1

    def test_retries_then_reraises(self):
        fn = MagicMock(side_effect=ConnectionError("down"))
        with pytest.raises(ConnectionError):
            RetryPolicy(max_attempts=3, base_delay_s=0, retry_on=(ConnectionError,)).call(fn)
        assert fn.call_count == 3

    def test_non_retryable_error_is_not_retried(self):
        fn = MagicMock(side_effect=ValueError("bad"))
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=3, base_delay_s=0, retry_on=(ConnectionError,)).call(fn)
        assert fn.call_count == 1

    def test_backoff_is_capped(self):
        policy = RetryPolicy(base_delay_s=0.5, max_delay_s=1.0)
        assert 1.0 <= policy.backoff(10) <= 1.5

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0).call(lambda: None)
