"""
Error registry: loads and validates registry.yaml.

Each entry maps an ``ACE-<DOMAIN>-<NNN>`` code to the HTTP status and the
user-safe message the API returns for it. Upstream entries never expose
the raised detail (driver and collaborator messages stay in the log).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import yaml

from ace_assistant.core.errors import CODE_PATTERN

logger = logging.getLogger(__name__)

DEFAULT_PATH = os.path.join(os.path.dirname(__file__), "registry.yaml")

VALID_DOMAINS = {"API", "CFG", "SQL", "FLT", "UPS", "LLM", "STR", "SYS"}
VALID_SEVERITIES = {"DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"}
REQUIRED_FIELDS = {"code", "domain", "title", "severity", "retryable", "http_status", "safe_message"}
HIDDEN_DETAIL_DOMAINS = {"UPS", "SYS"}


@dataclass(frozen=True)
class ErrorEntry:
    code: str
    domain: str
    title: str
    severity: str
    retryable: bool
    http_status: int
    safe_message: str
    expose_detail: bool = False
    remediation: List[str] = field(default_factory=list)


class RegistryValidationError(Exception):
    """Raised when registry.yaml has structural errors."""


def _parse_entry(index: int, raw: Any) -> ErrorEntry:
    if not isinstance(raw, Mapping):
        raise RegistryValidationError(f"Entry {index}: expected a mapping")
    missing = REQUIRED_FIELDS - set(raw)
    if missing:
        raise RegistryValidationError(f"Entry {index} ({raw.get('code', '?')}): missing fields {sorted(missing)}")

    code = str(raw["code"])
    if not CODE_PATTERN.match(code):
        raise RegistryValidationError(f"Invalid code format: {code!r}")

    domain = raw["domain"]
    prefix = code.split("-")[1]
    if domain != prefix:
        raise RegistryValidationError(f"{code}: domain {domain!r} doesn't match code prefix {prefix!r}")
    if domain not in VALID_DOMAINS:
        raise RegistryValidationError(f"{code}: unknown domain {domain!r}")
    if raw["severity"] not in VALID_SEVERITIES:
        raise RegistryValidationError(f"{code}: unknown severity {raw['severity']!r}")

    status = int(raw["http_status"])
    if not 400 <= status <= 599:
        raise RegistryValidationError(f"{code}: http_status {status} is not an error status")

    expose = bool(raw.get("expose_detail", False))
    if expose and domain in HIDDEN_DETAIL_DOMAINS:
        raise RegistryValidationError(f"{code}: {domain} errors cannot expose detail")

    remediation = raw.get("remediation") or []
    if not isinstance(remediation, list):
        raise RegistryValidationError(f"{code}: remediation must be a list")

    return ErrorEntry(
        code=code,
        domain=domain,
        title=str(raw["title"]),
        severity=raw["severity"],
        retryable=bool(raw["retryable"]),
        http_status=status,
        safe_message=str(raw["safe_message"]),
        expose_detail=expose,
        remediation=[str(step) for step in remediation],
    )


class ErrorRegistry:
    """Validated lookup table for error codes."""

    def __init__(self) -> None:
        self._entries: Dict[str, ErrorEntry] = {}
        self.schema_version: int = 0
        self.loaded = False

    def load(self, path: Optional[str] = None) -> None:
        with open(path or DEFAULT_PATH, "r") as f:
            data = yaml.safe_load(f) or {}

        raw_entries = data.get("errors", [])
        if not isinstance(raw_entries, list):
            raise RegistryValidationError("'errors' must be a list")

        entries: Dict[str, ErrorEntry] = {}
        for index, raw in enumerate(raw_entries):
            entry = _parse_entry(index, raw)
            if entry.code in entries:
                raise RegistryValidationError(f"Duplicate code: {entry.code}")
            entries[entry.code] = entry

        self._entries = entries
        self.schema_version = int(data.get("schema_version", 0))
        self.loaded = True
        logger.info("error_registry_loaded", extra={"count": len(entries), "schema_version": self.schema_version})

    def get(self, code: str) -> ErrorEntry | None:
        # Handlers can run before the app lifespan (e.g. bare TestClient)
        if not self.loaded:
            self.load()
        return self._entries.get(code)

    def all_codes(self) -> list[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


# Module-level singleton, loaded at startup
error_registry = ErrorRegistry()
