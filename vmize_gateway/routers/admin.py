"""
Admin endpoints (X-Admin-Token required).

- POST /admin/generate-key          — create a customer, return its key once
- POST /admin/revoke-key            — mark a key's customer inactive
- GET  /admin/upsell-opportunities  — near-quota customers with an upgrade path
- GET  /admin/usage-report          — run the weekly usage-alert report now
- POST /admin/billing/run           — run the monthly billing cycle now
"""

import logging

from fastapi import APIRouter, Depends

from vmize_gateway.auth.api_key_auth import get_gateway, require_admin
from vmize_gateway.core.async_utils import run_sync
from vmize_gateway.core.gateway_state import GatewayState
from vmize_gateway.models.plans import plan_limit
from vmize_gateway.models.responses import (
    GenerateKeyRequest,
    GenerateKeyResponse,
    RevokeKeyRequest,
    RevokeKeyResponse,
    UpsellOpportunity,
    UpsellResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin)])


@router.post("/generate-key", response_model=GenerateKeyResponse)
async def generate_key(
    body: GenerateKeyRequest,
    gateway: GatewayState = Depends(get_gateway),
):
    """Issue a new API key. 400 if the email is already registered."""
    customer, raw_key = await run_sync(
        lambda: gateway.directory.create(
            email=body.email,
            name=body.name,
            plan=body.plan.value,
            company_name=body.company_name,
            stripe_customer_id=body.stripe_customer_id,
        )
    )
    return GenerateKeyResponse(
        api_key=raw_key,
        customer_id=customer.id,
        plan=customer.plan,
        limit=plan_limit(customer.plan),
    )


@router.post("/revoke-key", response_model=RevokeKeyResponse)
async def revoke_key(
    body: RevokeKeyRequest,
    gateway: GatewayState = Depends(get_gateway),
):
    """Soft-delete a key. 404 if no customer holds it."""
    customer = await run_sync(gateway.directory.revoke, body.api_key)
    return RevokeKeyResponse(customer_id=customer.id, status=customer.subscription_status)


@router.get("/upsell-opportunities", response_model=UpsellResponse)
async def upsell_opportunities(gateway: GatewayState = Depends(get_gateway)):
    entries = await gateway.reconciler.upsell_opportunities()
    opportunities = [UpsellOpportunity(**entry) for entry in entries]
    return UpsellResponse(opportunities=opportunities, count=len(opportunities))


@router.get("/usage-report")
async def usage_report(gateway: GatewayState = Depends(get_gateway)):
    flagged = await gateway.reconciler.run_usage_report()
    return {"customers": flagged, "count": len(flagged)}


@router.post("/billing/run")
async def run_billing(gateway: GatewayState = Depends(get_gateway)):
    logger.warning("Billing cycle triggered manually")
    report = await gateway.reconciler.run_monthly_cycle()
    return report.to_dict()
