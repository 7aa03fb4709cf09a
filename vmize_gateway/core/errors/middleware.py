"""
FastAPI exception handlers for GatewayError and unexpected exceptions.

Looks up the registry and returns ``{"error": {code, kind, message, retryable}}``.
The internal detail and context are logged, never returned.
"""

import logging

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from vmize_gateway.core.errors import BadRequest, GatewayError
from vmize_gateway.core.errors.registry import error_registry

logger = logging.getLogger(__name__)


def error_body(code: str, kind: str, message: str, retryable: bool = False) -> dict:
    return {
        "error": {
            "code": code,
            "kind": kind,
            "message": message,
            "retryable": retryable,
        }
    }


async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    """Convert GatewayError into a structured JSON response."""
    entry = error_registry.get(exc.code)

    if entry is None:
        logger.error(
            "unregistered_error_code",
            extra={"error.code": exc.code, "error.message": exc.detail},
        )
        return JSONResponse(
            status_code=500,
            content=error_body(exc.code, exc.kind, "An unexpected error occurred."),
        )

    log_extra = {
        "error.code": exc.code,
        "error.kind": exc.kind,
        "error.message": exc.detail,
        "http.path": request.url.path,
        **{f"error.ctx.{k}": v for k, v in exc.context.items()},
    }
    _severity_to_log_fn(entry.severity)(entry.title, extra=log_extra)

    return JSONResponse(
        status_code=entry.http_status,
        content=error_body(entry.code, entry.kind, entry.safe_message, entry.retryable),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler: log with traceback, return a generic 500."""
    logger.exception(
        "unhandled_exception",
        extra={"http.path": request.url.path, "error.type": type(exc).__name__},
    )
    return JSONResponse(
        status_code=500,
        content=error_body("VMZ-SYS-001", "InternalError", "An unexpected error occurred."),
    )


def _severity_to_log_fn(severity: str):
    """Map registry severity to logger method."""
    return {
        "DEBUG": logger.debug,
        "INFO": logger.info,
        "WARN": logger.warning,
        "ERROR": logger.error,
        "CRITICAL": logger.critical,
    }.get(severity, logger.error)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render request-body validation failures as BadRequest (400)."""
    return await gateway_error_handler(
        request,
        BadRequest(detail=f"validation failed: {exc.errors()}"),
    )
