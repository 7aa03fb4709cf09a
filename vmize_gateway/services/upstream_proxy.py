"""
Upstream Proxy — Try-on Provider Client
=======================================

PURPOSE:
    Translates an admitted try-on request into the provider's wire format,
    calls the provider and translates the reply (or failure) back.

WIRE FORMAT:
    POST {base}/run        {"model_name": ..., "inputs": {...}}   30s timeout
    GET  {base}/status/id                                         10s timeout
    Authorization: Bearer <VMIZE_UPSTREAM_API_KEY>

ERROR CLASSIFICATION:
    - timeout / network error  → UpstreamUnavailable
    - non-2xx                  → UpstreamRejected(status, provider message)
    - 2xx with unusable body   → UpstreamRejected(status, "invalid response")

The gateway credential is never placed in a result or an error message; any
echo of it in a provider message is scrubbed.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from vmize_gateway.config import settings
from vmize_gateway.core.errors import BadRequest, UpstreamRejected, UpstreamUnavailable

logger = logging.getLogger(__name__)

__all__ = ["UpstreamProxy", "UpstreamResult", "TryOnRequest"]

_PROVIDER_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")
_MAX_PROVIDER_MESSAGE = 500
_REDACTED = "[REDACTED]"


def _as_int(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise BadRequest(detail=f"{field} must be a number")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise BadRequest(detail=f"{field} must be a number, got {value!r}") from exc


@dataclass(frozen=True)
class TryOnRequest:
    model_image: Optional[str] = None
    garment_image: Optional[str] = None
    category: str = "auto"
    output_format: str = "jpeg"
    mode: str = "balanced"
    num_samples: int = 1
    age: Optional[int] = None
    product_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TryOnRequest":
        """Build from caller JSON, accepting snake_case and camelCase keys.

        Generation settings may sit in a nested ``options`` object or at the
        top level; ``options`` wins when both are given.

        Raises:
            BadRequest: the body is not an object, or a numeric field is not a number.
        """
        if not isinstance(payload, dict):
            raise BadRequest(detail="request body must be a JSON object")
        options = payload.get("options") or {}
        if not isinstance(options, dict):
            raise BadRequest(detail="options must be a JSON object")

        def pick(*names: str, default: Any = None) -> Any:
            for source in (options, payload):
                for name in names:
                    value = source.get(name)
                    if value not in (None, ""):
                        return value
            return default

        age = pick("age")
        return cls(
            model_image=pick("model_image", "modelImage"),
            garment_image=pick("garment_image", "garmentImage"),
            category=pick("category", default="auto"),
            output_format=pick("output_format", "outputFormat", default="jpeg"),
            mode=pick("mode", default="balanced"),
            num_samples=_as_int(pick("num_samples", "numSamples", default=1), "num_samples"),
            age=None if age is None else _as_int(age, "age"),
            product_id=pick("product_id", "productId"),
        )


@dataclass(frozen=True)
class UpstreamResult:
    """Provider reply, free of any gateway credential."""
    provider_call_id: Optional[str]
    status: str
    result_url: Optional[str] = None
    error: Optional[str] = None


class UpstreamProxy:
    """Stateless client for the try-on provider."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model_name: Optional[str] = None,
        submit_timeout_s: Optional[float] = None,
        status_timeout_s: Optional[float] = None,
    ):
        self.base_url = (base_url or settings.upstream_base_url).rstrip("/")
        self._api_key = api_key if api_key is not None else (settings.upstream_api_key or "")
        self.model_name = model_name or settings.upstream_model_name
        self.submit_timeout_s = submit_timeout_s or settings.upstream_submit_timeout_s
        self.status_timeout_s = status_timeout_s or settings.upstream_status_timeout_s

    def __repr__(self) -> str:
        return f"UpstreamProxy(base_url={self.base_url!r})"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def build_payload(self, request: TryOnRequest) -> dict[str, Any]:
        """Provider request body; ``age`` is only sent when given."""
        if not request.model_image or not request.garment_image:
            raise BadRequest(detail="model_image and garment_image are required")

        inputs: dict[str, Any] = {
            "model_image": request.model_image,
            "garment_image": request.garment_image,
            "category": request.category,
            "output_format": request.output_format,
            "mode": request.mode,
            "num_samples": request.num_samples,
        }
        if request.age is not None:
            inputs["age"] = request.age
        return {"model_name": self.model_name, "inputs": inputs}

    async def forward(self, request: TryOnRequest) -> UpstreamResult:
        """Submit a try-on job.

        Raises:
            BadRequest: a required image is missing (nothing is sent).
            UpstreamUnavailable: timeout or network failure.
            UpstreamRejected: provider answered non-2xx or with an unusable body.
        """
        body = self.build_payload(request)
        data = await self._request("POST", "/run", self.submit_timeout_s, json=body)

        result_url = _first_output(data)
        provider_id = data.get("id")
        if provider_id is None and result_url is None:
            raise UpstreamRejected(200, "invalid response: no job id or output")

        status = "completed" if result_url and not provider_id else "processing"
        logger.info("Upstream job submitted: id=%s status=%s", provider_id, status)
        return UpstreamResult(
            provider_call_id=str(provider_id) if provider_id is not None else None,
            status=status,
            result_url=result_url,
        )

    async def check_status(self, provider_call_id: str) -> UpstreamResult:
        """Poll a previously submitted job."""
        if not provider_call_id or not _PROVIDER_ID_RE.match(provider_call_id):
            raise BadRequest(detail=f"invalid job id: {provider_call_id!r}")

        data = await self._request(
            "GET", f"/status/{provider_call_id}", self.status_timeout_s,
        )
        error = data.get("error")
        return UpstreamResult(
            provider_call_id=provider_call_id,
            status=str(data.get("status") or "unknown"),
            result_url=_first_output(data),
            error=self._scrub(_stringify(error)) if error else None,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, timeout: float, **kwargs) -> dict:
        url = f"{self.base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            logger.error("Upstream timeout: %s %s after %.0fs", method, path, timeout)
            raise UpstreamUnavailable(detail=f"timeout after {timeout}s") from exc
        except httpx.RequestError as exc:
            logger.error("Upstream network error: %s %s: %s", method, path, type(exc).__name__)
            raise UpstreamUnavailable(detail=f"network error: {type(exc).__name__}") from exc

        status_code = response.status_code
        try:
            data = response.json()
        except ValueError:
            data = None

        if not 200 <= status_code < 300:
            message = self._provider_message(data, response.text)
            logger.error(
                "Upstream rejected: %s %s status=%d message=%s",
                method, path, status_code, message,
            )
            raise UpstreamRejected(status_code, message)

        if not isinstance(data, dict):
            raise UpstreamRejected(status_code, "invalid response: body is not a JSON object")
        return data

    def _provider_message(self, data: Any, text: str) -> Optional[str]:
        raw: Any = None
        if isinstance(data, dict):
            raw = data.get("error") or data.get("message") or data.get("detail")
        if raw is None:
            raw = text
        message = _stringify(raw)
        return self._scrub(message)[:_MAX_PROVIDER_MESSAGE] if message else None

    def _scrub(self, message: str) -> str:
        if self._api_key and self._api_key in message:
            message = message.replace(self._api_key, _REDACTED)
        return message


def _stringify(value: Any) -> str:
    if isinstance(value, dict):
        return str(value.get("message") or value.get("name") or value)
    return str(value)


def _first_output(data: dict) -> Optional[str]:
    output = data.get("output")
    if isinstance(output, list) and output:
        return str(output[0])
    if isinstance(output, str) and output:
        return output
    for key in ("result_url", "image_url", "url"):
        if data.get(key):
            return str(data[key])
    return None
