"""
Billing collaborator — charges overage through Stripe.

The reconciler only depends on the ``BillingCollaborator`` protocol:
``charge(customer, amount_usd, memo) -> ChargeReceipt``. Any failure is raised;
the reconciler decides what to do with it.

Stripe flow per charge: one InvoiceItem for the overage, then an Invoice with
auto-advance so Stripe finalizes and collects it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Protocol

from vmize_gateway.config import settings

logger = logging.getLogger(__name__)

__all__ = ["BillingCollaborator", "ChargeReceipt", "BillingError", "StripeBillingClient"]


class BillingError(Exception):
    """A charge could not be placed."""


@dataclass(frozen=True)
class ChargeReceipt:
    charge_id: str
    amount_cents: int
    currency: str
    status: str = "created"


class BillingCollaborator(Protocol):
    async def charge(
        self,
        stripe_customer_id: Optional[str],
        amount_usd: Decimal,
        memo: str,
        idempotency_key: Optional[str] = None,
    ) -> ChargeReceipt:
        ...


def to_cents(amount_usd: Decimal) -> int:
    return int((amount_usd * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class StripeBillingClient:
    """BillingCollaborator backed by the Stripe API."""

    def __init__(self, secret_key: Optional[str] = None, currency: Optional[str] = None):
        self._secret_key = secret_key if secret_key is not None else settings.stripe_secret_key
        self.currency = currency or settings.billing_currency

    @property
    def configured(self) -> bool:
        return bool(self._secret_key)

    async def charge(
        self,
        stripe_customer_id: Optional[str],
        amount_usd: Decimal,
        memo: str,
        idempotency_key: Optional[str] = None,
    ) -> ChargeReceipt:
        """Invoice *amount_usd*. A repeated *idempotency_key* returns Stripe's original objects."""
        if not self.configured:
            raise BillingError("Stripe is not configured. Set VMIZE_STRIPE_SECRET_KEY.")
        if not stripe_customer_id:
            raise BillingError("Customer has no Stripe customer id")
        amount_cents = to_cents(amount_usd)
        if amount_cents <= 0:
            raise BillingError(f"Refusing non-positive charge: {amount_usd}")

        return await asyncio.to_thread(
            self._charge_sync, stripe_customer_id, amount_cents, memo, idempotency_key,
        )

    def _charge_sync(
        self,
        stripe_customer_id: str,
        amount_cents: int,
        memo: str,
        idempotency_key: Optional[str],
    ) -> ChargeReceipt:
        import stripe

        item_opts = {"idempotency_key": f"{idempotency_key}-item"} if idempotency_key else {}
        invoice_opts = {"idempotency_key": f"{idempotency_key}-invoice"} if idempotency_key else {}

        try:
            stripe.InvoiceItem.create(
                api_key=self._secret_key,
                customer=stripe_customer_id,
                amount=amount_cents,
                currency=self.currency,
                description=memo,
                **item_opts,
            )
            invoice = stripe.Invoice.create(
                api_key=self._secret_key,
                customer=stripe_customer_id,
                auto_advance=True,
                pending_invoice_items_behavior="include",
                description=memo,
                **invoice_opts,
            )
        except stripe.StripeError as exc:
            logger.error(
                "Stripe charge failed: customer=%s amount_cents=%d error=%s",
                stripe_customer_id, amount_cents, exc,
            )
            raise BillingError(str(exc)) from exc

        logger.info(
            "Stripe invoice created: customer=%s invoice=%s amount_cents=%d",
            stripe_customer_id, invoice.id, amount_cents,
        )
        return ChargeReceipt(
            charge_id=invoice.id,
            amount_cents=amount_cents,
            currency=self.currency,
            status=getattr(invoice, "status", None) or "created",
        )
