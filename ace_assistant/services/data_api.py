"""
Data API Client: PostgREST-compatible REST access to warehouse tables.
======================================================================

Wraps GET /{table}?{filters} with bearer auth. Filters are the flat
``column=op.value`` map assembled by the query translator; list values
become repeated query parameters, which the REST layer ANDs together.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import httpx

from ace_assistant.config import settings
from ace_assistant.core.errors import ConfigurationError, UpstreamError

logger = logging.getLogger(__name__)

ParamValue = Union[str, int, float, bool, None, Sequence[Union[str, int, float]]]

COUNT_SELECT = "count:count()"


def build_query_params(params: Mapping[str, ParamValue]) -> List[Tuple[str, str]]:
    """Flatten a filter map into ordered query pairs, dropping empty values."""
    pairs: List[Tuple[str, str]] = []
    for key, value in params.items():
        if value is None or value == "":
            continue
        if isinstance(value, (list, tuple)):
            pairs.extend((key, _stringify(item)) for item in value if item not in (None, ""))
            continue
        pairs.append((key, _stringify(value)))
    return pairs


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class DataApiClient:
    """Async client for the tabular REST API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = (base_url if base_url is not None else settings.data_api_url) or None
        self._token = token if token is not None else settings.data_api_token
        self._timeout = timeout or settings.data_api_timeout_s
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._base_url)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def get(self, table: str, params: Optional[Mapping[str, ParamValue]] = None) -> Any:
        """GET /{table} and return the decoded JSON body."""
        if not self._base_url:
            raise ConfigurationError("Data API")

        url = f"{self._base_url.rstrip('/')}/{table}"
        query = build_query_params(params or {})
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.get(url, params=query, headers=self._headers())
        except httpx.TimeoutException as e:
            raise UpstreamError(
                f"Data API GET {table} timed out.",
                code="ACE-UPS-005",
                context={"table": table},
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamError(
                f"Data API GET {table} failed: {e}",
                code="ACE-UPS-002",
                context={"table": table},
            ) from e

        if resp.status_code >= 400:
            logger.warning(
                "data_api_error",
                extra={"table": table, "status_code": resp.status_code, "body": resp.text[:300]},
            )
            raise UpstreamError(
                f"Data API GET {table} failed: {resp.status_code} {resp.reason_phrase}".rstrip(),
                code="ACE-UPS-002",
                context={"table": table},
                status_code=resp.status_code,
            )

        try:
            return resp.json()
        except ValueError as e:
            raise UpstreamError(
                f"Data API GET {table} returned invalid JSON.",
                code="ACE-UPS-002",
                context={"table": table},
            ) from e

    async def count(self, table: str, filters: Optional[Mapping[str, ParamValue]] = None) -> int:
        """Row count for ``table`` under ``filters`` via ``select=count:count()``."""
        params: Dict[str, ParamValue] = {"select": COUNT_SELECT}
        params.update(filters or {})
        rows = await self.get(table, params)
        if not isinstance(rows, list) or not rows:
            return 0
        first = rows[0] if isinstance(rows[0], Mapping) else {}
        try:
            return int(first.get("count") or 0)
        except (TypeError, ValueError) as e:
            raise UpstreamError(
                f"Data API count for {table} was not numeric.",
                code="ACE-UPS-002",
                context={"table": table},
            ) from e

    async def healthcheck(self) -> Dict[str, Any]:
        if not self._base_url:
            return {"status": "not_configured"}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.get(self._base_url, headers=self._headers())
        except httpx.HTTPError as e:
            return {"status": "error", "error": str(e)}
        return {"status": "ok" if resp.status_code < 500 else "error", "status_code": resp.status_code}
