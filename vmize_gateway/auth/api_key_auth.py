"""
API key and admin-token authentication dependencies.

Customer calls carry ``X-Vmize-API-Key: vmize_pk_<env>_<token>``. Keys are
checked against the customer directory (HMAC-SHA256 hash lookup); a missing
or malformed key is Unauthenticated, an unknown one Unauthorized.

Demo mode: when VMIZE_DEMO_MODE=true, the try-on submit/status routes fall
back to VMIZE_DEMO_API_KEY if the header is absent. This is a demo
affordance and is off by default.

Admin routes require ``X-Admin-Token`` matching VMIZE_ADMIN_TOKEN. A missing
token is Unauthenticated and a wrong one Forbidden. With no token configured,
every admin call that sends one is Forbidden.
"""

import hmac
import logging
from typing import Optional

from fastapi import Depends, Request

from vmize_gateway.auth.api_keys import is_well_formed
from vmize_gateway.core.async_utils import run_sync
from vmize_gateway.core.errors import Forbidden, Unauthenticated
from vmize_gateway.core.gateway_state import GatewayState
from vmize_gateway.core.structured_logging import customer_id_var
from vmize_gateway.models.customer import Customer

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-Vmize-API-Key"
ADMIN_TOKEN_HEADER = "X-Admin-Token"


def get_gateway(request: Request) -> GatewayState:
    return request.app.state.gateway


def resolve_api_key(request: Request, gateway: GatewayState, allow_demo: bool = False) -> Optional[str]:
    """Read the caller's key, substituting the demo key only when permitted."""
    api_key = request.headers.get(API_KEY_HEADER)
    if api_key:
        return api_key.strip()
    if allow_demo and gateway.settings.demo_mode:
        logger.info("No API key supplied; using demo key (VMIZE_DEMO_MODE=true)")
        return gateway.settings.demo_api_key
    return None


def _authenticated(allow_demo: bool):
    async def dependency(
        request: Request,
        gateway: GatewayState = Depends(get_gateway),
    ) -> Customer:
        api_key = resolve_api_key(request, gateway, allow_demo=allow_demo)
        customer = await run_sync(gateway.admission.authenticate, api_key)
        customer_id_var.set(customer.id)
        request.state.customer_id = customer.id
        return customer

    return dependency


require_customer = _authenticated(allow_demo=False)
require_customer_or_demo = _authenticated(allow_demo=True)


async def require_admin(
    request: Request,
    gateway: GatewayState = Depends(get_gateway),
) -> None:
    """Admit admin-token callers.

    A malformed customer key or a missing token is Unauthenticated (401), the
    same as on customer routes. A present but wrong token, or no token
    configured at all, is Forbidden (403).
    """
    api_key = request.headers.get(API_KEY_HEADER)
    if api_key is not None and not is_well_formed(api_key.strip()):
        raise Unauthenticated(detail="API key missing or malformed")

    supplied = (request.headers.get(ADMIN_TOKEN_HEADER) or "").strip()
    if not supplied:
        raise Unauthenticated(code="VMZ-AUTH-005", detail="admin token missing")

    expected = gateway.settings.admin_token
    if not expected or not hmac.compare_digest(supplied.encode(), expected.encode()):
        raise Forbidden(code="VMZ-AUTH-004", detail="admin token invalid")
