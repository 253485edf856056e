"""
Web search through the Exa search API (POST /search).

Used by the webSearch tool for current service advisories and news.
Results are trimmed to title, URL, date and a short text excerpt.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from ace_assistant.config import settings
from ace_assistant.core.errors import ConfigurationError, UpstreamError

logger = logging.getLogger(__name__)

DEFAULT_NUM_RESULTS = 5
MAX_NUM_RESULTS = 10
EXCERPT_CHARS = 500


class WebSearchClient:
    """Async Exa client."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._api_key = api_key if api_key is not None else settings.exa_api_key
        self._base_url = (base_url or settings.exa_api_url).rstrip("/")
        self._timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def search(self, query: str, num_results: int = DEFAULT_NUM_RESULTS) -> Dict[str, Any]:
        if not self._api_key:
            raise ConfigurationError("Search API key")

        body = {
            "query": query,
            "numResults": max(1, min(num_results, MAX_NUM_RESULTS)),
            "contents": {"text": {"maxCharacters": EXCERPT_CHARS}},
        }
        headers = {"x-api-key": self._api_key, "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(f"{self._base_url}/search", json=body, headers=headers)
        except httpx.TimeoutException as e:
            raise UpstreamError("Web search timed out.", code="ACE-UPS-005") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"Web search failed: {e}", code="ACE-UPS-004") from e

        if resp.status_code >= 400:
            logger.warning("web_search_error", extra={"status_code": resp.status_code})
            raise UpstreamError(
                f"Web search failed ({resp.status_code}).",
                code="ACE-UPS-004",
                status_code=resp.status_code,
            )

        try:
            payload = resp.json()
        except ValueError as e:
            raise UpstreamError("Web search returned invalid JSON.", code="ACE-UPS-004") from e

        results: List[Dict[str, Any]] = []
        for item in payload.get("results", []) if isinstance(payload, dict) else []:
            if not isinstance(item, dict):
                continue
            results.append({
                "title": item.get("title"),
                "url": item.get("url"),
                "published_date": item.get("publishedDate"),
                "text": (item.get("text") or "")[:EXCERPT_CHARS],
            })
        return {"query": query, "results": results}
