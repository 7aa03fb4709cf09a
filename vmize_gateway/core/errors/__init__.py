"""
Error code system.

GatewayError is the base exception for all structured errors. Each subclass
pins a registry code and a stable machine-readable ``kind``; the error
middleware turns it into a structured JSON response.

Usage:
    from vmize_gateway.core.errors import QuotaExceeded
    raise QuotaExceeded(detail="used=100 limit=100", context={"customer_id": cid})
"""

from __future__ import annotations

import re

CODE_PATTERN = re.compile(r"^VMZ-[A-Z]{2,6}-\d{3}$")


class GatewayError(Exception):
    """Structured gateway error tied to the error registry.

    Args:
        code: Registry error code, e.g. "VMZ-AUTH-001".
        detail: Internal-only detail message (never exposed to callers).
        context: Arbitrary key-value context for structured logging.
    """

    code: str = "VMZ-SYS-001"
    kind: str = "InternalError"

    def __init__(
        self,
        code: str | None = None,
        detail: str | None = None,
        context: dict | None = None,
    ) -> None:
        code = code or self.code
        if not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.detail = detail
        self.context = context or {}
        super().__init__(f"{code}: {detail}" if detail else code)


class Unauthenticated(GatewayError):
    code = "VMZ-AUTH-001"
    kind = "Unauthenticated"


class Unauthorized(GatewayError):
    code = "VMZ-AUTH-002"
    kind = "Unauthorized"


class Forbidden(GatewayError):
    code = "VMZ-AUTH-003"
    kind = "Forbidden"


class QuotaExceeded(GatewayError):
    code = "VMZ-QUOTA-001"
    kind = "QuotaExceeded"


class RateLimited(GatewayError):
    code = "VMZ-QUOTA-002"
    kind = "RateLimited"


class BadRequest(GatewayError):
    code = "VMZ-API-001"
    kind = "BadRequest"


class NotFound(GatewayError):
    code = "VMZ-API-002"
    kind = "NotFound"


class Conflict(GatewayError):
    code = "VMZ-API-003"
    kind = "Conflict"


class UpstreamUnavailable(GatewayError):
    code = "VMZ-UPS-001"
    kind = "UpstreamUnavailable"


class UpstreamRejected(GatewayError):
    code = "VMZ-UPS-002"
    kind = "UpstreamRejected"

    def __init__(
        self,
        status_code: int,
        provider_message: str | None = None,
        context: dict | None = None,
    ) -> None:
        self.status_code = status_code
        self.provider_message = provider_message
        super().__init__(
            detail=f"upstream status={status_code} message={provider_message}",
            context={"upstream_status": status_code, **(context or {})},
        )


class PersistenceFailure(GatewayError):
    code = "VMZ-DB-001"
    kind = "PersistenceFailure"


class ConfigurationError(GatewayError):
    code = "VMZ-CFG-001"
    kind = "ConfigurationError"
