"""
Tool Registry Builder
=====================

Assembles the per-request tool set the model may call:

1. Local tools (warehouse, Data API, web search). Always registered.
2. Remote prediction tools, only when their capability gate passes.
3. Externally discovered tools (MCP).
4. Privileged overrides.

On a name collision the later origin wins and the surviving tool keeps
its origin tag. After merging, every canonical name also answers to its
camelCase / snake_case alternate unless that spelling is already taken.
Aliases resolve through get() but are not advertised to the model.
"""

import dataclasses
import logging
from typing import Dict, Iterable, List, Optional, Sequence

from pydantic.alias_generators import to_camel, to_snake

from ace_assistant.models.capability import ProbeResult
from ace_assistant.models.tools import ORIGIN_PRECEDENCE, ToolDescriptor, ToolOrigin
from ace_assistant.services.data_api import DataApiClient
from ace_assistant.services.local_tools import build_local_tools
from ace_assistant.services.prediction_clients import NotebookAClient, NotebookBClient
from ace_assistant.services.remote_tools import build_remote_tools
from ace_assistant.services.warehouse import Warehouse
from ace_assistant.services.web_search import WebSearchClient

logger = logging.getLogger(__name__)

# External tool name -> local name it stands in for when present
EXTERNAL_OVERRIDES = {
    "get_database_tables": "listTables",
    "describe_table_schema": "describeTable",
}


def alternate_spelling(name: str) -> Optional[str]:
    """camelCase <-> snake_case counterpart of a tool name, if different."""
    if "_" in name:
        alternate = to_camel(name)
    elif any(ch.isupper() for ch in name):
        alternate = to_snake(name)
    else:
        return None
    return alternate if alternate != name else None


class ToolRegistry:
    """Mapping of tool name to descriptor with origin tracking and aliases."""

    def __init__(self):
        self._tools: Dict[str, ToolDescriptor] = {}
        self._aliases: Dict[str, str] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._tools or name in self._aliases

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self):
        return iter(self._tools)

    def names(self) -> List[str]:
        return list(self._tools)

    def aliases(self) -> Dict[str, str]:
        return dict(self._aliases)

    def register(self, descriptor: ToolDescriptor, origin: Optional[ToolOrigin] = None) -> None:
        """Add a tool. A lower-precedence origin never replaces a higher one."""
        if origin is not None and descriptor.origin != origin:
            descriptor = dataclasses.replace(descriptor, origin=origin)

        existing = self._tools.get(descriptor.name)
        if existing is not None:
            if ORIGIN_PRECEDENCE.index(existing.origin) > ORIGIN_PRECEDENCE.index(descriptor.origin):
                logger.debug(
                    "tool_registration_ignored",
                    extra={"tool": descriptor.name, "kept_origin": existing.origin.value},
                )
                return
            logger.info(
                "tool_overridden",
                extra={
                    "tool": descriptor.name,
                    "previous_origin": existing.origin.value,
                    "origin": descriptor.origin.value,
                },
            )

        self._aliases.pop(descriptor.name, None)
        self._tools[descriptor.name] = descriptor

    def merge(self, descriptors: Iterable[ToolDescriptor], origin: ToolOrigin) -> None:
        for descriptor in descriptors:
            self.register(descriptor, origin=origin)

    def resolve_aliases(self) -> Dict[str, str]:
        """Bind alternate spellings to canonical tools.

        Canonical names are visited in sorted order so the outcome does not
        depend on registration order. Re-running is a no-op.
        """
        for name in sorted(self._tools):
            alternate = alternate_spelling(name)
            if not alternate or alternate in self._tools or alternate in self._aliases:
                continue
            self._aliases[alternate] = name
        return dict(self._aliases)

    def get(self, name: str) -> Optional[ToolDescriptor]:
        descriptor = self._tools.get(name)
        if descriptor is not None:
            return descriptor
        canonical = self._aliases.get(name)
        return self._tools.get(canonical) if canonical else None

    def origin_of(self, name: str) -> Optional[ToolOrigin]:
        descriptor = self.get(name)
        return descriptor.origin if descriptor else None

    def describe(self) -> List[Dict[str, object]]:
        by_canonical: Dict[str, List[str]] = {}
        for alias, canonical in self._aliases.items():
            by_canonical.setdefault(canonical, []).append(alias)
        return [
            {
                "name": name,
                "description": descriptor.description,
                "origin": descriptor.origin.value,
                "requires": sorted(descriptor.requires),
                "aliases": sorted(by_canonical.get(name, [])),
            }
            for name, descriptor in self._tools.items()
        ]

    def model_tools(self) -> List[Dict[str, object]]:
        """Tool definitions for the model (canonical names only)."""
        return [descriptor.to_model_tool() for descriptor in self._tools.values()]


def external_overrides(external: Sequence[ToolDescriptor]) -> List[ToolDescriptor]:
    """Rebind local schema tools to their external equivalents when offered."""
    by_name = {descriptor.name: descriptor for descriptor in external}
    overrides = []
    for external_name, local_name in EXTERNAL_OVERRIDES.items():
        descriptor = by_name.get(external_name)
        if descriptor is not None:
            overrides.append(dataclasses.replace(descriptor, name=local_name, origin=ToolOrigin.OVERRIDE))
    return overrides


def build_tools(
    probe: ProbeResult,
    *,
    warehouse: Warehouse,
    data_api: DataApiClient,
    search: WebSearchClient,
    notebook_a: NotebookAClient,
    notebook_b: NotebookBClient,
    external: Sequence[ToolDescriptor] = (),
    overrides: Sequence[ToolDescriptor] = (),
    missing_policy: Optional[str] = None,
) -> ToolRegistry:
    """Build the per-request registry from a fresh capability probe."""
    registry = ToolRegistry()
    registry.merge(build_local_tools(warehouse, data_api, search), ToolOrigin.LOCAL)
    registry.merge(build_remote_tools(probe, notebook_a, notebook_b, missing_policy), ToolOrigin.LOCAL)
    registry.merge(external, ToolOrigin.EXTERNAL)
    registry.merge(list(external_overrides(external)) + list(overrides), ToolOrigin.OVERRIDE)
    registry.resolve_aliases()

    logger.info(
        "tools_built",
        extra={
            "tool_count": len(registry),
            "alias_count": len(registry.aliases()),
            "service_a": probe.service_a is not None,
            "service_b": probe.service_b is not None,
        },
    )
    return registry
