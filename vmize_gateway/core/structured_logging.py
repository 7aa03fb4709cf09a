"""
Structured logging for the gateway.

One JSON object per line, to stderr and to a size-rotated file. structlog
sits over stdlib logging, so modules keep using ``logging.getLogger(__name__)``
and their ``extra=`` fields end up as top-level keys.

Every line carries the service name, version and whichever of request_id,
correlation_id and customer_id are bound for the current request. Customer
API keys and the upstream credential are masked before rendering.
"""
from __future__ import annotations

import logging
import logging.handlers
import os
import re
import sys
from contextvars import ContextVar
from typing import Iterable, Optional, Union

import structlog

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
customer_id_var: ContextVar[str | None] = ContextVar("customer_id", default=None)

APP_VERSION = "1.0.0"
SERVICE_NAME = "vmize-gateway"

_API_KEY_IN_TEXT = re.compile(r"\b(vmize_pk_(?:live|test)_[A-Za-z0-9]{4})[A-Za-z0-9]+")
_MASK = "***"
_QUIET_LOGGERS = ("httpcore", "httpx", "asyncio", "stripe", "celery.redirected")

_secrets: tuple[str, ...] = ()


def _bind_request_context(logger, method_name: str, event_dict: dict) -> dict:
    event_dict["service"] = SERVICE_NAME
    event_dict["version"] = APP_VERSION
    for key, var in (
        ("request_id", request_id_var),
        ("correlation_id", correlation_id_var),
        ("customer_id", customer_id_var),
    ):
        value = var.get()
        if value and key not in event_dict:
            event_dict[key] = value
    return event_dict


def _mask(value: str) -> str:
    value = _API_KEY_IN_TEXT.sub(r"\1" + _MASK, value)
    for secret in _secrets:
        if secret in value:
            value = value.replace(secret, _MASK)
    return value


def _redact_credentials(logger, method_name: str, event_dict: dict) -> dict:
    """Mask customer API keys (keeping the display prefix) and configured secrets."""
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = _mask(value)
    return event_dict


def _level_name(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(
    log_dir: str = "logs",
    log_file: str = "vmize-gateway.jsonl",
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    log_level: Union[int, str] = logging.INFO,
    secrets: Optional[Iterable[str]] = None,
) -> None:
    """Configure structlog and the root logger.

    Safe to call again (tests, Celery worker init): root handlers are replaced,
    not stacked. *secrets* are literal strings masked wherever they appear,
    typically the upstream API key.
    """
    global _secrets
    _secrets = tuple(s for s in (secrets or ()) if s)

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _bind_request_context,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[*shared_processors, structlog.stdlib.ExtraAdder()],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            _redact_credentials,
            structlog.processors.JSONRenderer(),
        ],
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(_level_name(log_level))
    for handler in _handlers(log_dir, log_file, max_bytes, backup_count):
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _handlers(log_dir: str, log_file: str, max_bytes: int, backup_count: int) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    try:
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                os.path.join(log_dir, log_file),
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
        )
    except OSError as exc:
        sys.stderr.write(f"log file disabled ({log_dir}/{log_file}): {exc}\n")
    return handlers
