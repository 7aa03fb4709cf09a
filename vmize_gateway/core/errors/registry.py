"""
Error registry: ``registry.yaml`` maps each VMZ code to the HTTP status,
severity, retryability and caller-safe message used when rendering it.

Loaded once in the app lifespan. Loading validates every entry and then
checks that each ``GatewayError`` subclass has a matching entry with the same
``kind``, so a new exception class without a registry row fails at startup
instead of rendering as an unregistered 500.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import yaml

from vmize_gateway.core.errors import CODE_PATTERN, GatewayError

logger = logging.getLogger(__name__)

DEFAULT_PATH = Path(__file__).with_name("registry.yaml")

DOMAINS = frozenset({"API", "AUTH", "QUOTA", "UPS", "DB", "CFG", "SYS"})
SEVERITIES = frozenset({"DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"})
_FIELDS = ("code", "domain", "kind", "title", "severity", "retryable", "http_status", "safe_message")


class RegistryValidationError(Exception):
    """registry.yaml is malformed or out of sync with the error classes."""


@dataclass(frozen=True)
class ErrorEntry:
    code: str
    domain: str
    kind: str
    title: str
    severity: str
    retryable: bool
    http_status: int
    safe_message: str

    @classmethod
    def parse(cls, raw: Dict[str, Any]) -> "ErrorEntry":
        missing = [f for f in _FIELDS if f not in raw]
        if missing:
            raise RegistryValidationError(f"{raw.get('code', '?')}: missing {', '.join(missing)}")

        entry = cls(
            code=str(raw["code"]),
            domain=str(raw["domain"]),
            kind=str(raw["kind"]),
            title=str(raw["title"]),
            severity=str(raw["severity"]),
            retryable=bool(raw["retryable"]),
            http_status=int(raw["http_status"]),
            safe_message=str(raw["safe_message"]),
        )
        if not CODE_PATTERN.match(entry.code):
            raise RegistryValidationError(f"bad code format: {entry.code!r}")
        if entry.code.split("-")[1] != entry.domain or entry.domain not in DOMAINS:
            raise RegistryValidationError(f"{entry.code}: domain {entry.domain!r} does not match")
        if entry.severity not in SEVERITIES:
            raise RegistryValidationError(f"{entry.code}: unknown severity {entry.severity!r}")
        if not 400 <= entry.http_status <= 599:
            raise RegistryValidationError(f"{entry.code}: http_status {entry.http_status} is not an error status")
        return entry


def _error_classes(root: type = GatewayError) -> Iterable[type]:
    for sub in root.__subclasses__():
        yield sub
        yield from _error_classes(sub)


class ErrorRegistry:
    def __init__(self) -> None:
        self._entries: Dict[str, ErrorEntry] = {}
        self.schema_version = 0

    @property
    def loaded(self) -> bool:
        return bool(self._entries)

    def load(self, path: Optional[str] = None) -> None:
        """Parse and validate the registry, replacing any loaded entries."""
        with open(path or DEFAULT_PATH, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        rows = data.get("errors")
        if not isinstance(rows, list):
            raise RegistryValidationError("'errors' must be a list")

        entries: Dict[str, ErrorEntry] = {}
        for raw in rows:
            entry = ErrorEntry.parse(raw)
            if entry.code in entries:
                raise RegistryValidationError(f"duplicate code: {entry.code}")
            entries[entry.code] = entry

        self._check_coverage(entries)
        self._entries = entries
        self.schema_version = int(data.get("schema_version", 0))
        logger.info("error_registry_loaded", extra={"count": len(entries), "schema_version": self.schema_version})

    @staticmethod
    def _check_coverage(entries: Dict[str, ErrorEntry]) -> None:
        for cls in [GatewayError, *_error_classes()]:
            entry = entries.get(cls.code)
            if entry is None:
                raise RegistryValidationError(f"{cls.__name__} ({cls.code}) has no registry entry")
            if entry.kind != cls.kind:
                raise RegistryValidationError(
                    f"{cls.code}: registry kind {entry.kind!r} != {cls.__name__}.kind {cls.kind!r}"
                )

    def get(self, code: str) -> Optional[ErrorEntry]:
        return self._entries.get(code)

    def all_codes(self) -> list[str]:
        return sorted(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


# Shared by the exception handlers; read-only after load()
error_registry = ErrorRegistry()
