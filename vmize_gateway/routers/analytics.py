"""
Analytics endpoints.

- GET  /api/analytics         — dashboard summary (admin)
- GET  /api/analytics/funnel  — conversion funnel (admin)
- POST /api/analytics/reset   — clear analytics and zero current usage (admin)
- POST /api/track             — widget event ingestion (customer API key)
"""

import logging

from fastapi import APIRouter, Depends

from vmize_gateway.auth.api_key_auth import get_gateway, require_admin, require_customer_or_demo
from vmize_gateway.core.async_utils import run_sync
from vmize_gateway.core.errors import BadRequest
from vmize_gateway.core.gateway_state import GatewayState
from vmize_gateway.models.customer import Customer
from vmize_gateway.models.responses import TrackEventRequest

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/analytics", dependencies=[Depends(require_admin)])
async def get_analytics(gateway: GatewayState = Depends(get_gateway)):
    return await run_sync(gateway.analytics.summary)


@router.get("/analytics/funnel", dependencies=[Depends(require_admin)])
async def get_funnel(gateway: GatewayState = Depends(get_gateway)):
    return await run_sync(gateway.analytics.funnel)


@router.post("/analytics/reset", dependencies=[Depends(require_admin)])
async def reset_analytics(gateway: GatewayState = Depends(get_gateway)):
    await run_sync(gateway.analytics.reset)
    customers = await run_sync(gateway.directory.zero_all_usage)
    return {"success": True, "customersReset": customers}


@router.post("/track")
async def track_event(
    body: TrackEventRequest,
    customer: Customer = Depends(require_customer_or_demo),
    gateway: GatewayState = Depends(get_gateway),
):
    attrs = {
        **body.metadata,
        "customer_id": customer.id,
        "product_id": body.product_id,
        "revenue": body.revenue,
    }
    try:
        await run_sync(gateway.analytics.record_event, body.event, attrs)
    except ValueError as exc:
        raise BadRequest(detail=str(exc)) from exc
    return {"success": True, "event": body.event}
