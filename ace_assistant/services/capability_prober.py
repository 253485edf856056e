"""
Capability Prober: readiness of the two prediction services.

Both /health checks run concurrently and settle independently. Any
failure (unconfigured base URL, transport error, non-2xx status, bad
JSON, timeout) yields ``None`` for that service, which downstream means
"no capabilities". Nothing here raises.
"""

import asyncio
import logging
from typing import Any, Iterable, Optional

import httpx

from ace_assistant.config import settings
from ace_assistant.models.capability import CapabilityReport, ProbeResult

logger = logging.getLogger(__name__)

MISSING_OPEN = "open"
MISSING_CLOSED = "closed"


def is_ready(
    report: Optional[CapabilityReport],
    required_artifacts: Iterable[str],
    missing_policy: str = MISSING_OPEN,
) -> bool:
    """Gate predicate for remote-backed tools.

    The report must exist and not say ``ok: false``. Each required
    artifact must not be explicitly ``False``; an absent key counts as
    available under the "open" policy and unavailable under "closed".
    """
    if report is None or report.ok is False:
        return False
    for artifact in required_artifacts:
        flag = report.artifacts.get(artifact)
        if flag is False:
            return False
        if flag is None and missing_policy == MISSING_CLOSED:
            return False
    return True


class CapabilityProber:
    """Concurrent /health probe of notebook A and notebook B."""

    def __init__(
        self,
        service_a_base: Optional[str] = None,
        service_b_base: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.service_a_base = service_a_base if service_a_base is not None else settings.notebook_a_base
        self.service_b_base = service_b_base if service_b_base is not None else settings.notebook_b_base
        self.timeout = timeout or settings.probe_timeout_s
        self._transport = transport

    async def probe(self) -> ProbeResult:
        results = await asyncio.gather(
            self._bounded_check("a", self.service_a_base),
            self._bounded_check("b", self.service_b_base),
            return_exceptions=True,
        )
        reports = []
        for service, result in zip(("a", "b"), results):
            if isinstance(result, BaseException):
                logger.warning(
                    "capability_probe_failed",
                    extra={"service": service, "error": f"{type(result).__name__}: {result}"},
                )
                reports.append(None)
            else:
                reports.append(result)
        return ProbeResult(service_a=reports[0], service_b=reports[1])

    async def _bounded_check(self, service: str, base: Optional[str]) -> Optional[CapabilityReport]:
        if not base:
            logger.debug("capability_probe_skipped", extra={"service": service})
            return None
        try:
            return await asyncio.wait_for(self._fetch_health(base), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "capability_probe_timeout",
                extra={"service": service, "timeout_s": self.timeout},
            )
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(
                "capability_probe_failed",
                extra={"service": service, "error": f"{type(e).__name__}: {e}"},
            )
            return None

    async def _fetch_health(self, base: str) -> Optional[CapabilityReport]:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.get(f"{base.rstrip('/')}/health")
        if resp.status_code < 200 or resp.status_code >= 300:
            logger.warning(
                "capability_probe_status",
                extra={"base": base, "status_code": resp.status_code},
            )
            return None
        payload: Any = resp.json()
        if not isinstance(payload, dict):
            raise ValueError("health payload is not an object")
        return CapabilityReport.from_health(payload)
