"""
Request context middleware.

Binds a request id and a correlation id for the duration of each request
(reusing the caller's ``X-Request-ID`` / ``X-Correlation-ID`` when they are
sane) and echoes both on the response. The customer id is bound later by the
auth dependencies; it is cleared here so it never carries over between
requests.

Logs one ``request_completed`` line per request.
"""
from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from vmize_gateway.core.structured_logging import (
    correlation_id_var,
    customer_id_var,
    request_id_var,
)

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "x-request-id"
CORRELATION_ID_HEADER = "x-correlation-id"
_MAX_ID_LEN = 128


def _incoming_id(request: Request, header: str) -> str:
    value = (request.headers.get(header) or "").strip()
    if value and len(value) <= _MAX_ID_LEN and value.isprintable():
        return value
    return uuid.uuid4().hex


class CorrelationMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = _incoming_id(request, REQUEST_ID_HEADER)
        correlation_id = _incoming_id(request, CORRELATION_ID_HEADER)
        bound = [
            (request_id_var, request_id_var.set(request_id)),
            (correlation_id_var, correlation_id_var.set(correlation_id)),
            (customer_id_var, customer_id_var.set(None)),
        ]

        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            logger.info(
                "request_completed",
                extra={
                    "http.method": request.method,
                    "http.path": request.url.path,
                    "http.status_code": status_code,
                    "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                    "customer_id": getattr(request.state, "customer_id", None),
                },
            )
            for var, token in reversed(bound):
                var.reset(token)

        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers[CORRELATION_ID_HEADER] = correlation_id
        return response
