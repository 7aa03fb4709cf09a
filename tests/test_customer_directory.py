"""
Customer directory tests — issuance, revocation, atomic counters and the
archive-and-reset of a billing period.
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from vmize_gateway.auth.api_keys import API_KEY_RE, hash_api_key
from vmize_gateway.core.errors import Conflict, NotFound
from vmize_gateway.models.customer import SubscriptionStatus, month_key, period_start_for, utcnow
from vmize_gateway.services.customer_directory import CustomerDirectory


def _months_ahead(n: int) -> datetime:
    start = period_start_for(utcnow())
    for _ in range(n):
        start = period_start_for(start + timedelta(days=32))
    return start


class TestIssuance:
    def test_create_returns_raw_key_and_stores_hash(self, directory):
        customer, raw_key = directory.create(email="a@shop.com", name="A", plan="business")

        assert API_KEY_RE.match(raw_key)
        assert customer.api_key_hash == hash_api_key(raw_key)
        assert raw_key not in customer.api_key_hash
        assert customer.api_key_prefix == raw_key[:18]
        assert customer.plan == "business"
        assert directory.get_by_api_key(raw_key).id == customer.id

    def test_duplicate_email_conflicts(self, directory):
        directory.create(email="dup@shop.com")
        with pytest.raises(Conflict):
            directory.create(email="dup@shop.com")

    def test_unknown_plan_rejected(self, directory):
        with pytest.raises(ValueError):
            directory.create(email="x@shop.com", plan="platinum")

    def test_ensure_customer_for_key_is_idempotent(self, directory):
        key = "vmize_pk_test_" + "a" * 32
        first = directory.ensure_customer_for_key(key, email="demo@shop.com")
        second = directory.ensure_customer_for_key(key, email="demo@shop.com")
        assert first.id == second.id

    def test_revoke_marks_inactive(self, directory, make_customer):
        customer, key = make_customer()
        revoked = directory.revoke(key)
        assert revoked.id == customer.id
        assert directory.get(customer.id).subscription_status == SubscriptionStatus.INACTIVE.value

    def test_revoke_unknown_key(self, directory):
        with pytest.raises(NotFound):
            directory.revoke("vmize_pk_live_" + "f" * 32)

    def test_list_by_status(self, directory, make_customer):
        active, _ = make_customer()
        make_customer(subscription_status=SubscriptionStatus.CANCELLED.value)
        assert [c.id for c in directory.list_by_status([SubscriptionStatus.ACTIVE])] == [active.id]
        assert len(directory.list_all()) == 2


class TestCounters:
    def test_increment_updates_month_and_all_time(self, directory, make_customer):
        customer, _ = make_customer()
        directory.increment_usage(customer.id, tryons=2, api_calls=3)
        stored = directory.get(customer.id)
        assert stored.current_month_tryons == 2
        assert stored.all_time_tryons == 2
        assert stored.current_month_api_calls == 3
        assert stored.all_time_api_calls == 3

    def test_increment_unknown_customer(self, directory):
        with pytest.raises(NotFound):
            directory.increment_usage("missing", tryons=1)

    def test_negative_increment_rejected(self, directory, make_customer):
        customer, _ = make_customer()
        with pytest.raises(ValueError):
            directory.increment_usage(customer.id, tryons=-1)

    def test_concurrent_increments_are_not_lost(self, directory, make_customer):
        customer, _ = make_customer()

        def worker():
            for _ in range(10):
                directory.increment_usage(customer.id, tryons=1, api_calls=1)

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert directory.get(customer.id).current_month_tryons == 50

    def test_zero_all_usage(self, directory, make_customer):
        first, _ = make_customer(used=10)
        second, _ = make_customer(used=20)
        assert directory.zero_all_usage() == 2
        assert directory.get(first.id).current_month_tryons == 0
        assert directory.get(second.id).current_month_tryons == 0


class TestClosePeriod:
    def test_archives_and_resets(self, directory, make_customer):
        customer, _ = make_customer(used=42)
        archived = directory.close_period(customer.id, _months_ahead(1))

        assert archived == 42
        assert directory.get(customer.id).current_month_tryons == 0
        assert directory.usage_history(customer.id) == {month_key(utcnow()): 42}
        assert directory.billing_cycle(customer.id).period_start.replace(tzinfo=timezone.utc) == _months_ahead(1)

    def test_second_close_for_same_period_is_a_no_op(self, directory, make_customer):
        customer, _ = make_customer(used=42)
        directory.close_period(customer.id, _months_ahead(1))
        directory.increment_usage(customer.id, tryons=3)

        assert directory.close_period(customer.id, _months_ahead(1)) is None
        assert directory.get(customer.id).current_month_tryons == 3

    def test_only_billed_units_are_archived(self, directory, make_customer):
        """Increments that land after the billing snapshot stay in the new period."""
        customer, _ = make_customer(used=30)
        directory.increment_usage(customer.id, tryons=4)

        archived = directory.close_period(customer.id, _months_ahead(1), tryons=30, api_calls=0)

        assert archived == 30
        assert directory.get(customer.id).current_month_tryons == 4

    def test_history_is_trimmed(self, db):
        directory = CustomerDirectory(db, history_months=2)
        customer, _ = directory.create(email="trim@shop.com")
        for n in range(1, 5):
            directory.increment_usage(customer.id, tryons=n)
            directory.close_period(customer.id, _months_ahead(n))

        history = directory.usage_history(customer.id)
        assert len(history) == 2
        assert list(history.values()) == [3, 4]

    def test_unknown_customer(self, directory):
        with pytest.raises(NotFound):
            directory.close_period("missing", _months_ahead(1))
