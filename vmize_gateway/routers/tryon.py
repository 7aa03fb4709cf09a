"""
Try-on endpoints.

- POST /api/tryon            — submit a try-on job (metered, 1 unit)
- POST /api/tryon/generate   — same contract; honours demo mode
- GET  /api/tryon/{job_id}   — poll a job (not metered)

Every call is settled (reservation released, usage committed on success)
and recorded as an analytics call record.
"""

import logging
import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Request

from vmize_gateway.auth.api_key_auth import get_gateway, require_customer_or_demo, resolve_api_key
from vmize_gateway.core.async_utils import run_sync
from vmize_gateway.core.errors import GatewayError, PersistenceFailure
from vmize_gateway.core.gateway_state import GatewayState
from vmize_gateway.core.structured_logging import customer_id_var
from vmize_gateway.models.analytics import CallOutcome, CallRecord, FunnelStage
from vmize_gateway.models.customer import Customer
from vmize_gateway.models.responses import TryOnStatusResponse, TryOnSubmitResponse
from vmize_gateway.services.upstream_proxy import TryOnRequest

logger = logging.getLogger(__name__)

router = APIRouter()

UNITS_PER_TRYON = 1


async def _record_analytics(fn, *args) -> None:
    """Run an analytics write; a full, unwritable or stalled disk must not fail the call."""
    try:
        await run_sync(fn, *args)
    except (OSError, PersistenceFailure) as exc:
        logger.error("analytics_write_failed", extra={"error.type": type(exc).__name__, "error.message": str(exc)})


async def _submit(
    request: Request,
    gateway: GatewayState,
    payload: Dict[str, Any],
    allow_demo: bool,
) -> TryOnSubmitResponse:
    start = time.perf_counter()
    api_key = resolve_api_key(request, gateway, allow_demo=allow_demo)
    admission = await run_sync(gateway.admission.admit, api_key, UNITS_PER_TRYON)
    customer = admission.customer

    # the reservation is held from here on; every exit below must settle it
    tryon: Optional[TryOnRequest] = None
    outcome = CallOutcome.ERROR
    error_reason: Optional[str] = None
    try:
        customer_id_var.set(customer.id)
        request.state.customer_id = customer.id

        tryon = TryOnRequest.from_payload(payload)
        event_attrs = {"customer_id": customer.id}
        await _record_analytics(gateway.analytics.record_event, FunnelStage.TRYON_INITIATED.value, event_attrs)
        await _record_analytics(gateway.analytics.record_event, FunnelStage.PHOTO_UPLOADED.value, event_attrs)

        result = await gateway.proxy.forward(tryon)
        outcome = CallOutcome.SUCCESS
    except GatewayError as exc:
        error_reason = exc.kind
        raise
    finally:
        try:
            await run_sync(
                gateway.accountant.record_outcome,
                customer, UNITS_PER_TRYON, outcome, admission.reservation,
            )
        finally:
            await _record_call(
                gateway, customer, request, start, outcome, error_reason,
                tryon.product_id if tryon else None,
            )

    if result.status == "completed":
        job_key = result.provider_call_id or result.result_url
        await _record_analytics(gateway.analytics.record_completion, job_key, customer.id)

    return TryOnSubmitResponse(
        id=result.provider_call_id,
        status=result.status,
        result_url=result.result_url,
    )


async def _record_call(
    gateway: GatewayState,
    customer: Customer,
    request: Request,
    start: float,
    outcome: CallOutcome,
    error_reason: Optional[str],
    product_id: Optional[str] = None,
) -> None:
    record = CallRecord(
        customer_id=customer.id,
        endpoint=request.url.path,
        method=request.method,
        outcome=outcome.value,
        duration_ms=round((time.perf_counter() - start) * 1000, 2),
        error_reason=error_reason,
        product_id=product_id,
    )
    await _record_analytics(gateway.analytics.record_call, record)
    if outcome == CallOutcome.ERROR:
        await _record_analytics(
            gateway.analytics.record_event,
            FunnelStage.API_ERROR.value, {"customer_id": customer.id},
        )


@router.post("/tryon", response_model=TryOnSubmitResponse)
async def submit_tryon(
    request: Request,
    payload: Dict[str, Any] = Body(...),
    gateway: GatewayState = Depends(get_gateway),
):
    """Submit a try-on job. Consumes one unit of the monthly quota on success."""
    return await _submit(request, gateway, payload, allow_demo=False)


@router.post("/tryon/generate", response_model=TryOnSubmitResponse)
async def generate_tryon(
    request: Request,
    payload: Dict[str, Any] = Body(...),
    gateway: GatewayState = Depends(get_gateway),
):
    """Submit a try-on job; falls back to the demo key when VMIZE_DEMO_MODE=true."""
    return await _submit(request, gateway, payload, allow_demo=True)


@router.get("/tryon/{job_id}", response_model=TryOnStatusResponse)
async def tryon_status(
    job_id: str,
    request: Request,
    customer: Customer = Depends(require_customer_or_demo),
    gateway: GatewayState = Depends(get_gateway),
):
    """Poll a try-on job. Counts as an API call but not against the try-on quota."""
    start = time.perf_counter()
    outcome = CallOutcome.ERROR
    error_reason: Optional[str] = None
    try:
        result = await gateway.proxy.check_status(job_id)
        outcome = CallOutcome.SUCCESS
    except GatewayError as exc:
        error_reason = exc.kind
        raise
    finally:
        await _record_call(gateway, customer, request, start, outcome, error_reason)

    await run_sync(gateway.accountant.record_api_call, customer)
    if result.status == "completed":
        await _record_analytics(gateway.analytics.record_completion, job_id, customer.id)

    return TryOnStatusResponse(
        id=job_id,
        status=result.status,
        result_url=result.result_url,
        error=result.error,
    )
