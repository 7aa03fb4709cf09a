"""
Billing reconciler tests — overage charge, reset/archive, carry-forward on
failure, idempotent re-runs and the read-only reports.
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from conftest import FakeBilling
from vmize_gateway.core.errors import PersistenceFailure
from vmize_gateway.models.customer import SubscriptionStatus, month_key, period_start_for, utcnow
from vmize_gateway.services.billing_client import BillingError, StripeBillingClient
from vmize_gateway.services.billing_reconciler import (
    BillingReconciler,
    ChargeStatus,
    ReconcilerState,
    overage_cost,
)


def _next_period():
    return period_start_for(period_start_for(utcnow()) + timedelta(days=32))


def _this_month():
    return month_key(utcnow())


class TestOverageCost:
    def test_cost_is_rounded_to_cents(self):
        assert overage_cost(20, Decimal("0.50")) == Decimal("10.00")
        assert overage_cost(3, Decimal("0.333")) == Decimal("1.00")
        assert overage_cost(0, Decimal("0.50")) == Decimal("0.00")


class TestMonthlyCycle:
    @pytest.mark.asyncio
    async def test_failed_charge_still_resets_and_archives(self, directory, make_customer):
        billing = FakeBilling(fail=True)
        reconciler = BillingReconciler(directory, billing)
        customer, _ = make_customer(plan="starter", used=120, stripe_customer_id="cus_123")

        report = await reconciler.run_monthly_cycle(now=_next_period())

        [result] = report.results
        assert result.overage_units == 20
        assert result.cost == Decimal("10.00")
        assert result.charge_status == ChargeStatus.FAILED
        assert len(billing.calls) == 1
        assert billing.calls[0][1] == Decimal("10.00")

        assert directory.get(customer.id).current_month_tryons == 0
        assert directory.usage_history(customer.id) == {_this_month(): 120}
        cycle = directory.billing_cycle(customer.id)
        assert cycle.carried_overage_units == 20
        assert cycle.last_charge_status == "failed"
        assert reconciler.state == ReconcilerState.IDLE

    @pytest.mark.asyncio
    async def test_successful_charge(self, directory, fake_billing, make_customer):
        reconciler = BillingReconciler(directory, fake_billing)
        customer, _ = make_customer(plan="professional", used=510, stripe_customer_id="cus_pro")

        report = await reconciler.run_monthly_cycle(now=_next_period())

        [result] = report.results
        assert result.charge_status == ChargeStatus.CHARGED
        assert result.cost == Decimal("4.00")
        assert result.charge_id == "in_test_1"
        assert report.total_charged == Decimal("4.00")
        cycle = directory.billing_cycle(customer.id)
        assert cycle.carried_overage_units == 0
        assert cycle.last_charge_id == "in_test_1"

    @pytest.mark.asyncio
    async def test_rerun_in_same_period_is_a_no_op(self, directory, fake_billing, make_customer):
        reconciler = BillingReconciler(directory, fake_billing)
        customer, _ = make_customer(plan="starter", used=150, stripe_customer_id="cus_x")
        now = _next_period()

        await reconciler.run_monthly_cycle(now=now)
        directory.increment_usage(customer.id, tryons=7)
        report = await reconciler.run_monthly_cycle(now=now)

        assert len(fake_billing.calls) == 1
        assert report.results[0].charge_status == ChargeStatus.SKIPPED
        assert directory.get(customer.id).current_month_tryons == 7
        assert directory.usage_history(customer.id) == {_this_month(): 150}

    @pytest.mark.asyncio
    async def test_within_quota_is_not_charged(self, directory, fake_billing, make_customer):
        reconciler = BillingReconciler(directory, fake_billing)
        customer, _ = make_customer(plan="starter", used=40)

        report = await reconciler.run_monthly_cycle(now=_next_period())

        assert report.results[0].charge_status == ChargeStatus.NOT_DUE
        assert fake_billing.calls == []
        assert directory.get(customer.id).current_month_tryons == 0
        assert directory.usage_history(customer.id) == {_this_month(): 40}

    @pytest.mark.asyncio
    async def test_inactive_customer_overage_is_deferred(self, directory, fake_billing, make_customer):
        reconciler = BillingReconciler(directory, fake_billing)
        customer, _ = make_customer(
            plan="starter", used=130, subscription_status=SubscriptionStatus.INACTIVE.value,
        )

        report = await reconciler.run_monthly_cycle(now=_next_period())

        assert report.results[0].charge_status == ChargeStatus.DEFERRED
        assert fake_billing.calls == []
        assert directory.billing_cycle(customer.id).carried_overage_units == 30

    @pytest.mark.asyncio
    async def test_carried_overage_added_to_next_charge(self, directory, make_customer):
        customer, _ = make_customer(plan="starter", used=120, stripe_customer_id="cus_c")
        await BillingReconciler(directory, FakeBilling(fail=True)).run_monthly_cycle(now=_next_period())

        directory.increment_usage(customer.id, tryons=105)
        billing = FakeBilling()
        later = period_start_for(_next_period() + timedelta(days=32))
        report = await BillingReconciler(directory, billing).run_monthly_cycle(now=later)

        assert report.results[0].overage_units == 25
        assert billing.calls[0][1] == Decimal("12.50")
        assert directory.billing_cycle(customer.id).carried_overage_units == 0

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_loop(self, directory, make_customer):
        make_customer(plan="starter", used=120)  # no stripe id → charge fails
        second, _ = make_customer(plan="starter", used=110, stripe_customer_id="cus_ok")

        class _PartialBilling(FakeBilling):
            async def charge(self, stripe_customer_id, amount_usd, memo, idempotency_key=None):
                self.fail = stripe_customer_id is None
                return await super().charge(stripe_customer_id, amount_usd, memo, idempotency_key)

        report = await BillingReconciler(directory, _PartialBilling()).run_monthly_cycle(now=_next_period())

        assert report.count(ChargeStatus.FAILED) == 1
        assert report.count(ChargeStatus.CHARGED) == 1
        assert directory.get(second.id).current_month_tryons == 0
        assert report.to_dict()["customers"] == 2

    @pytest.mark.asyncio
    async def test_period_close_failure_is_isolated(self, directory, fake_billing, make_customer):
        broken, _ = make_customer(plan="starter", used=120, stripe_customer_id="cus_a")
        healthy, _ = make_customer(plan="starter", used=130, stripe_customer_id="cus_b")
        close_period = directory.close_period

        def _close(customer_id, *args):
            if customer_id == broken.id:
                raise PersistenceFailure(detail="disk full")
            return close_period(customer_id, *args)

        now = _next_period()
        with patch.object(directory, "close_period", side_effect=_close):
            report = await BillingReconciler(directory, fake_billing).run_monthly_cycle(now=now)

        by_id = {r.customer_id: r for r in report.results}
        assert by_id[broken.id].charge_status == ChargeStatus.FAILED
        assert "PersistenceFailure" in by_id[broken.id].error
        assert by_id[healthy.id].charge_status == ChargeStatus.CHARGED
        assert directory.get(healthy.id).current_month_tryons == 0
        assert directory.get(broken.id).current_month_tryons == 120

        # the still-open period is retried with the same Stripe idempotency key
        retry = await BillingReconciler(directory, fake_billing).run_monthly_cycle(now=now)
        assert {r.customer_id: r for r in retry.results}[broken.id].charge_status == ChargeStatus.CHARGED
        broken_keys = [k for k in fake_billing.idempotency_keys if broken.id in k]
        assert len(broken_keys) == 2
        assert broken_keys[0] == broken_keys[1]
        assert directory.get(broken.id).current_month_tryons == 0

    @pytest.mark.asyncio
    async def test_lookup_failure_is_isolated(self, directory, fake_billing, make_customer):
        broken, _ = make_customer(plan="starter", used=120, stripe_customer_id="cus_a")
        healthy, _ = make_customer(plan="starter", used=110, stripe_customer_id="cus_b")
        billing_cycle = directory.billing_cycle

        def _cycle(customer_id):
            if customer_id == broken.id:
                raise PersistenceFailure(detail="locked")
            return billing_cycle(customer_id)

        with patch.object(directory, "billing_cycle", side_effect=_cycle):
            report = await BillingReconciler(directory, fake_billing).run_monthly_cycle(now=_next_period())

        assert report.count(ChargeStatus.FAILED) == 1
        assert report.count(ChargeStatus.CHARGED) == 1
        assert len(fake_billing.calls) == 1
        assert directory.get(healthy.id).current_month_tryons == 0

    @pytest.mark.asyncio
    async def test_charge_carries_period_idempotency_key(self, directory, fake_billing, make_customer):
        customer, _ = make_customer(plan="starter", used=120, stripe_customer_id="cus_k")

        await BillingReconciler(directory, fake_billing).run_monthly_cycle(now=_next_period())

        assert fake_billing.idempotency_keys == [f"vmize-overage-{customer.id}-{_this_month()}"]


class TestReports:
    @pytest.mark.asyncio
    async def test_usage_report_flags_customers_over_threshold(self, directory, fake_billing, make_customer):
        near, _ = make_customer(plan="starter", used=85)
        make_customer(plan="starter", used=10)
        trial, _ = make_customer(
            plan="starter", used=95, subscription_status=SubscriptionStatus.TRIALING.value,
        )
        make_customer(plan="starter", used=99, subscription_status=SubscriptionStatus.INACTIVE.value)

        flagged = await BillingReconciler(directory, fake_billing).run_usage_report(threshold_pct=80)

        assert {entry["customerId"] for entry in flagged} == {near.id, trial.id}
        entry = next(e for e in flagged if e["customerId"] == near.id)
        assert entry["percentUsed"] == 85.0
        assert entry["limit"] == 100

    @pytest.mark.asyncio
    async def test_upsell_recommends_next_plan(self, directory, fake_billing, make_customer):
        starter, _ = make_customer(plan="starter", used=90)
        make_customer(plan="enterprise", used=9900)
        make_customer(plan="business", used=100)

        opportunities = await BillingReconciler(directory, fake_billing).upsell_opportunities(threshold_pct=80)

        [opportunity] = opportunities
        assert opportunity["customerId"] == starter.id
        assert opportunity["recommendedPlan"] == "professional"
        assert opportunity["recommendedPlanLimit"] == 500
        assert opportunity["recommendedPlanPrice"] == 79


class TestStripeBillingClient:
    @pytest.mark.asyncio
    async def test_unconfigured_refuses(self):
        with pytest.raises(BillingError):
            await StripeBillingClient(secret_key="").charge("cus_1", Decimal("10.00"), "memo")

    @pytest.mark.asyncio
    async def test_customer_without_stripe_id(self):
        with pytest.raises(BillingError):
            await StripeBillingClient(secret_key="sk_test_x").charge(None, Decimal("10.00"), "memo")

    @pytest.mark.asyncio
    async def test_invoice_created(self):
        invoice = MagicMock(id="in_42", status="open")
        with patch("stripe.InvoiceItem.create") as item_create, \
                patch("stripe.Invoice.create", return_value=invoice) as invoice_create:
            receipt = await StripeBillingClient(secret_key="sk_test_x", currency="usd").charge(
                "cus_1", Decimal("10.00"), "overage",
            )

        assert receipt.charge_id == "in_42"
        assert receipt.amount_cents == 1000
        assert item_create.call_args.kwargs["amount"] == 1000
        assert invoice_create.call_args.kwargs["auto_advance"] is True

    @pytest.mark.asyncio
    async def test_idempotency_key_reaches_stripe(self):
        invoice = MagicMock(id="in_43", status="open")
        with patch("stripe.InvoiceItem.create") as item_create, \
                patch("stripe.Invoice.create", return_value=invoice) as invoice_create:
            await StripeBillingClient(secret_key="sk_test_x").charge(
                "cus_1", Decimal("10.00"), "overage", idempotency_key="vmize-overage-c1-2026-09",
            )

        assert item_create.call_args.kwargs["idempotency_key"] == "vmize-overage-c1-2026-09-item"
        assert invoice_create.call_args.kwargs["idempotency_key"] == "vmize-overage-c1-2026-09-invoice"

    @pytest.mark.asyncio
    async def test_no_idempotency_key_omits_option(self):
        with patch("stripe.InvoiceItem.create") as item_create, \
                patch("stripe.Invoice.create", return_value=MagicMock(id="in_44")):
            await StripeBillingClient(secret_key="sk_test_x").charge("cus_1", Decimal("1.00"), "m")

        assert "idempotency_key" not in item_create.call_args.kwargs

    @pytest.mark.asyncio
    async def test_stripe_error_becomes_billing_error(self):
        import stripe

        with patch("stripe.InvoiceItem.create", side_effect=stripe.StripeError("card_declined")):
            with pytest.raises(BillingError):
                await StripeBillingClient(secret_key="sk_test_x").charge("cus_1", Decimal("1.00"), "m")
