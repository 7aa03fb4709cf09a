"""
GET /api/usage — the caller's plan, committed usage and remaining quota.
"""

from fastapi import APIRouter, Depends

from vmize_gateway.auth.api_key_auth import get_gateway, require_customer
from vmize_gateway.core.async_utils import run_sync
from vmize_gateway.core.gateway_state import GatewayState
from vmize_gateway.models.customer import Customer, as_utc
from vmize_gateway.models.responses import UsageResponse

router = APIRouter()


@router.get("/usage", response_model=UsageResponse)
async def get_usage(
    customer: Customer = Depends(require_customer),
    gateway: GatewayState = Depends(get_gateway),
):
    view = await run_sync(gateway.accountant.usage, customer)
    history = await run_sync(gateway.directory.usage_history, customer.id)
    return UsageResponse(
        plan=view.plan,
        used=view.used,
        limit=view.limit,
        remaining=view.remaining,
        percent_used=view.percent_used,
        over_limit=view.over_limit,
        api_calls=view.api_calls,
        last_reset=as_utc(view.last_reset).isoformat() if view.last_reset else None,
        history=history,
    )
