"""
External tool discovery over MCP.

Servers are configured by URL (SSE and/or streamable HTTP). Tool
listings are fetched through the ToolCache, so discovery happens once per
server until it fails. Each call opens a short-lived session: MCP
transports are bound to the task that opened them, and a chat turn may
run on a different task than the one that listed the tools.

Discovery is best-effort: an unreachable server contributes no tools and
is logged. When several servers expose the same name, the later server
wins.
"""

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from mcp import ClientSession
from mcp.client.sse import sse_client
from mcp.client.streamable_http import streamablehttp_client

from ace_assistant.config import settings
from ace_assistant.models.tools import ToolDescriptor, ToolOrigin
from ace_assistant.services.tool_cache import ToolCache

logger = logging.getLogger(__name__)

TRANSPORT_SSE = "sse"
TRANSPORT_HTTP = "http"


@dataclass(frozen=True)
class ExternalServer:
    name: str
    url: str
    transport: str = TRANSPORT_SSE

    @property
    def cache_key(self) -> str:
        return f"mcp:{self.transport}:{self.url}"


def configured_servers() -> List[ExternalServer]:
    """Servers from settings, SSE first so HTTP overrides on collisions."""
    servers = []
    if settings.mcp_sse_url:
        servers.append(ExternalServer("mcp-sse", settings.mcp_sse_url, TRANSPORT_SSE))
    if settings.mcp_http_url:
        servers.append(ExternalServer("mcp-http", settings.mcp_http_url, TRANSPORT_HTTP))
    return servers


@asynccontextmanager
async def open_session(server: ExternalServer) -> AsyncIterator[ClientSession]:
    if server.transport == TRANSPORT_HTTP:
        async with streamablehttp_client(server.url) as (read, write, _session_id):
            async with ClientSession(read, write) as session:
                await session.initialize()
                yield session
    else:
        async with sse_client(server.url) as (read, write):
            async with ClientSession(read, write) as session:
                await session.initialize()
                yield session


async def list_server_tools(server: ExternalServer) -> List[Dict[str, Any]]:
    async with open_session(server) as session:
        response = await session.list_tools()
    return [
        {
            "name": tool.name,
            "description": tool.description or "",
            "input_schema": tool.inputSchema or {"type": "object", "properties": {}},
        }
        for tool in response.tools
    ]


def result_to_payload(result: Any) -> Any:
    """Turn a CallToolResult into a plain payload.

    Structured content wins; otherwise text blocks are parsed as JSON when
    possible. Error results become ``{"error": text}``.
    """
    texts = [block.text for block in (getattr(result, "content", None) or []) if getattr(block, "type", None) == "text"]
    joined = "\n".join(texts).strip()

    if getattr(result, "isError", False):
        return {"error": joined or "External tool reported an error."}

    structured = getattr(result, "structuredContent", None)
    if structured is not None:
        return structured

    if len(texts) != 1:
        return {"text": joined}
    try:
        return json.loads(texts[0])
    except ValueError:
        return {"text": joined}


class ExternalToolSource:
    """Discovers MCP tools and wraps them as external ToolDescriptors."""

    def __init__(self, servers: Optional[Sequence[ExternalServer]] = None, cache: Optional[ToolCache] = None):
        self.servers = list(servers) if servers is not None else configured_servers()
        self.cache = cache or ToolCache()

    async def discover(self) -> List[ToolDescriptor]:
        merged: Dict[str, ToolDescriptor] = {}
        for server in self.servers:
            try:
                listing = await self.cache.get_or_fetch(
                    server.cache_key, lambda s=server: list_server_tools(s)
                )
            except Exception as e:
                # MCP transports surface anyio, httpx and protocol errors alike
                logger.warning(
                    "external_tool_discovery_failed",
                    extra={"server": server.name, "error": f"{type(e).__name__}: {e}"},
                )
                continue
            for spec in listing:
                merged[spec["name"]] = self._descriptor(server, spec)
        if merged:
            logger.info("external_tools_discovered", extra={"count": len(merged)})
        return list(merged.values())

    def _descriptor(self, server: ExternalServer, spec: Dict[str, Any]) -> ToolDescriptor:
        name = spec["name"]

        async def _execute(arguments: Dict[str, Any]) -> Any:
            async with open_session(server) as session:
                result = await session.call_tool(name, arguments or {})
            return result_to_payload(result)

        return ToolDescriptor(
            name=name,
            description=spec.get("description") or f"External tool {name}",
            executor=_execute,
            json_schema=spec.get("input_schema"),
            origin=ToolOrigin.EXTERNAL,
        )

    async def healthcheck(self) -> Dict[str, Any]:
        if not self.servers:
            return {"status": "not_configured"}
        statuses = {}
        for server in self.servers:
            statuses[server.name] = "ok" if server.cache_key in self.cache else "unknown"
        return {"status": "ok", "servers": statuses}
