"""
Error code system.

AceError is the base exception for all structured errors. Each subclass
carries a default registry code; the FastAPI handler looks the code up in
registry.yaml and produces a safe JSON response. Inside a chat turn the
same exceptions are caught at the tool boundary and turned into
``{"error": reason}`` results the model can react to.

Usage:
    from ace_assistant.core.errors import UpstreamError
    raise UpstreamError("Data API GET violations failed: 502", code="ACE-UPS-002")
"""

from __future__ import annotations

import re

CODE_PATTERN = re.compile(r"^ACE-[A-Z]{2,6}-\d{3}$")


class AceError(Exception):
    """Structured application error tied to the error registry.

    Args:
        detail: Human-readable reason. Validation reasons are safe to show;
            upstream details are logged but replaced by the registry's safe
            message at the HTTP boundary.
        code: Registry error code, e.g. "ACE-SQL-001". Defaults per subclass.
        context: Arbitrary key-value context for structured logging.
    """

    default_code = "ACE-SYS-001"

    def __init__(
        self,
        detail: str | None = None,
        code: str | None = None,
        context: dict | None = None,
    ) -> None:
        code = code or self.default_code
        if not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.detail = detail
        self.context = context or {}
        super().__init__(detail or code)

    @property
    def reason(self) -> str:
        return self.detail or self.code


class ConfigurationError(AceError):
    """A required dependency (key, URL, connection string) is missing."""

    default_code = "ACE-CFG-001"

    def __init__(self, dependency: str, code: str | None = None) -> None:
        self.dependency = dependency
        super().__init__(
            f"{dependency} not configured.",
            code=code,
            context={"dependency": dependency},
        )


class ValidationError(AceError):
    """Caller input violates policy. Raised before any I/O."""

    default_code = "ACE-API-001"


class SandboxError(ValidationError):
    """Free-text SQL rejected by the sandbox."""

    default_code = "ACE-SQL-001"


class FilterError(ValidationError):
    """Structured filter request rejected by the query translator."""

    default_code = "ACE-FLT-001"


class UpstreamError(AceError):
    """A collaborator (warehouse, Data API, prediction service) failed."""

    default_code = "ACE-UPS-001"

    def __init__(
        self,
        detail: str | None = None,
        code: str | None = None,
        context: dict | None = None,
        status_code: int | None = None,
    ) -> None:
        self.status_code = status_code
        super().__init__(detail, code=code, context=context)


class StreamingError(AceError):
    """Relaying model tokens failed mid-turn."""

    default_code = "ACE-STR-001"
