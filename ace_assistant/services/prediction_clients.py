"""
Prediction Service Clients
==========================

Thin async clients for the two notebook services:

- Notebook A: speed / violation prediction and route analysis (POST).
- Notebook B: forecasts, risk ranking and scoring, hotspots, survival
  curves (GET).

Non-2xx responses and transport failures raise UpstreamError carrying the
HTTP status so tool executors can map 404/503 to friendly messages.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from ace_assistant.config import settings
from ace_assistant.core.errors import ConfigurationError, UpstreamError

logger = logging.getLogger(__name__)

RISK_TOP_MIN = 1
RISK_TOP_MAX = 200


class _NotebookClient:
    label = "Notebook"

    def __init__(
        self,
        base_url: Optional[str],
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/") if base_url else None
        self._timeout = timeout or settings.prediction_timeout_s
        self._transport = transport

    @property
    def base_url(self) -> Optional[str]:
        return self._base_url

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        if not self._base_url:
            raise ConfigurationError(f"{self.label} base URL")

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.request(method, f"{self._base_url}{path}", params=params, json=json)
        except httpx.TimeoutException as e:
            raise UpstreamError(
                f"{self.label} request timed out: {path}",
                code="ACE-UPS-005",
                context={"path": path},
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamError(
                f"{self.label} request failed: {e}",
                code="ACE-UPS-003",
                context={"path": path},
            ) from e

        if resp.status_code < 200 or resp.status_code >= 300:
            logger.warning(
                "prediction_service_error",
                extra={"service": self.label, "path": path, "status_code": resp.status_code},
            )
            raise UpstreamError(
                f"{self.label} {resp.status_code} {path}",
                code="ACE-UPS-003",
                context={"path": path},
                status_code=resp.status_code,
            )

        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise UpstreamError(
                f"{self.label} returned invalid JSON: {path}",
                code="ACE-UPS-003",
                context={"path": path},
            ) from e


class NotebookAClient(_NotebookClient):
    """Speed and violation models."""

    label = "Notebook A"

    def __init__(self, base_url: Optional[str] = None, **kwargs: Any):
        super().__init__(base_url if base_url is not None else settings.notebook_a_base, **kwargs)

    async def predict_speed(self, body: Dict[str, Any]) -> Any:
        return await self._request("POST", "/predict/speed", json=body)

    async def predict_violations(self, body: Dict[str, Any]) -> Any:
        return await self._request("POST", "/predict/violations", json=body)

    async def analyze_route(self, body: Dict[str, Any]) -> Any:
        return await self._request("POST", "/analyze/route", json=body)


class NotebookBClient(_NotebookClient):
    """Forecasting, risk and survival models."""

    label = "Notebook B"

    def __init__(self, base_url: Optional[str] = None, **kwargs: Any):
        super().__init__(base_url if base_url is not None else settings.notebook_b_base, **kwargs)

    async def routes(self) -> Any:
        return await self._request("GET", "/routes")

    async def forecast(self, route_id: str) -> Any:
        return await self._request("GET", f"/forecast/{quote(route_id, safe='')}")

    async def risk_top(self, limit: int = 50) -> Any:
        capped = min(RISK_TOP_MAX, max(RISK_TOP_MIN, int(round(limit))))
        return await self._request("GET", "/risk/top", params={"limit": capped})

    async def risk_score(self, avg_speed_mph: float, trips_per_hour: float) -> Any:
        return await self._request(
            "GET",
            "/risk/score",
            params={"avg_speed_mph": avg_speed_mph, "trips_per_hour": trips_per_hour},
        )

    async def hotspots(self) -> Any:
        return await self._request("GET", "/hotspots.geojson")

    async def survival_km(self) -> Any:
        return await self._request("GET", "/survival/km")

    async def survival_cox(self) -> Any:
        return await self._request("GET", "/survival/cox_summary")
