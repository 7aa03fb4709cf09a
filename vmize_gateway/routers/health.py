"""
Health endpoints.

``/health`` is liveness only and touches no dependencies. ``/health/deep``
(admin) checks the customer directory and reports in-flight reservations.
"""

import asyncio
from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from vmize_gateway.auth.api_key_auth import get_gateway, require_admin
from vmize_gateway.core.async_utils import run_sync
from vmize_gateway.core.errors import PersistenceFailure
from vmize_gateway.core.gateway_state import GatewayState
from vmize_gateway.core.structured_logging import APP_VERSION
from vmize_gateway.models.responses import HealthResponse

router = APIRouter()

DB_CHECK_TIMEOUT_S = 2.0


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse(status="healthy", timestamp=_now())


@router.get("/health/deep", dependencies=[Depends(require_admin)])
async def deep_health(gateway: GatewayState = Depends(get_gateway)):
    try:
        db_ok = await run_sync(gateway.db.ping, timeout=DB_CHECK_TIMEOUT_S)
    except PersistenceFailure:
        db_ok = False

    return {
        "status": "healthy" if db_ok else "degraded",
        "version": APP_VERSION,
        "timestamp": _now(),
        "components": {
            "database": "ok" if db_ok else "down",
            "upstream_configured": bool(gateway.settings.upstream_api_key),
            "in_flight": gateway.ledger.total_in_flight(),
        },
    }
