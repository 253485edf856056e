"""
Capability reports from the prediction services' /health endpoints.

Created fresh per request and never cached: a model artifact can go
missing between two chat turns when a notebook service redeploys.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional


@dataclass(frozen=True)
class CapabilityReport:
    """Readiness signal for one prediction service, keyed by artifact name."""

    ok: Optional[bool] = None
    artifacts: Dict[str, bool] = field(default_factory=dict)

    @classmethod
    def from_health(cls, payload: Mapping[str, Any]) -> "CapabilityReport":
        """Normalize a health payload.

        Notebook B reports ``{"ok": true, "artifacts": {"forecast": true}}``;
        notebook A reports artifacts as top-level booleans
        (``{"ok": true, "speed_model": true}``). Both become ``artifacts``.
        Non-boolean values are ignored.
        """
        ok = payload.get("ok")
        artifacts: Dict[str, bool] = {}

        nested = payload.get("artifacts")
        if isinstance(nested, Mapping):
            for name, flag in nested.items():
                if isinstance(flag, bool):
                    artifacts[str(name)] = flag

        for name, flag in payload.items():
            if name in ("ok", "artifacts") or not isinstance(flag, bool):
                continue
            artifacts.setdefault(str(name), flag)

        return cls(ok=ok if isinstance(ok, bool) else None, artifacts=artifacts)

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "artifacts": dict(self.artifacts)}


@dataclass(frozen=True)
class ProbeResult:
    """Both services' reports. ``None`` means unreachable: no capabilities."""

    service_a: Optional[CapabilityReport] = None
    service_b: Optional[CapabilityReport] = None

    def for_service(self, service: str) -> Optional[CapabilityReport]:
        if service == "a":
            return self.service_a
        if service == "b":
            return self.service_b
        raise ValueError(f"Unknown prediction service: {service!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service_a": self.service_a.to_dict() if self.service_a else None,
            "service_b": self.service_b.to_dict() if self.service_b else None,
        }
