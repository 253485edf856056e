"""
Tool descriptors, tagged tool outputs and invocation records.

A ToolDescriptor is what the model sees (name, description, JSON schema)
plus the executor that runs when the model calls it. Executors return one
of the closed ToolOutput variants so renderers and the fallback summary
can match on ``kind`` instead of probing optional fields. Tools discovered
from external servers may still return plain dicts; the pipeline
snapshots whatever comes back.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Awaitable, Callable, Dict, FrozenSet, List, Literal, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field


class ToolOrigin(str, Enum):
    """Where a tool came from. Later origins win on name collisions."""

    LOCAL = "local"
    EXTERNAL = "external"
    OVERRIDE = "override"


ORIGIN_PRECEDENCE = (ToolOrigin.LOCAL, ToolOrigin.EXTERNAL, ToolOrigin.OVERRIDE)


# ---------------------------------------------------------------------------
# Tool outputs
# ---------------------------------------------------------------------------

class RowsTable(BaseModel):
    """Tabular rows (SQL results, grouped summaries)."""

    kind: Literal["rows"] = "rows"
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    columns: Optional[List[str]] = None
    meta: Dict[str, Any] = Field(default_factory=dict)


class ChartSpec(BaseModel):
    """A chart description plus the data it plots."""

    kind: Literal["chart"] = "chart"
    chart: Dict[str, Any]
    data: Any = None
    text: Optional[str] = None


class RecordResult(BaseModel):
    """A structured scalar or aggregate payload (counts, stats, search hits)."""

    kind: Literal["record"] = "record"
    data: Dict[str, Any] = Field(default_factory=dict)


class ToolErrorResult(BaseModel):
    """A tool failure the model can react to on its next step."""

    kind: Literal["error"] = "error"
    error: str


ToolOutput = Annotated[
    Union[RowsTable, ChartSpec, RecordResult, ToolErrorResult],
    Field(discriminator="kind"),
]


def output_payload(output: Any) -> Any:
    """Flatten a ToolOutput into the dict shape logged and sent to the model.

    ``rows`` and ``error`` stay top-level keys so log consumers (and the
    fallback summary) can find them without knowing the variant.
    """
    if isinstance(output, RowsTable):
        payload: Dict[str, Any] = {"kind": "rows", "rows": output.rows}
        if output.columns is not None:
            payload["columns"] = output.columns
        payload.update(output.meta)
        return payload
    if isinstance(output, ChartSpec):
        payload = {"kind": "chart", "chart": output.chart, "data": output.data}
        if output.text:
            payload["text"] = output.text
        return payload
    if isinstance(output, RecordResult):
        return {"kind": "record", **output.data}
    if isinstance(output, ToolErrorResult):
        return {"kind": "error", "error": output.error}
    if isinstance(output, BaseModel):
        return output.model_dump(mode="json")
    return output


# ---------------------------------------------------------------------------
# Descriptors
# ---------------------------------------------------------------------------

class EmptyInput(BaseModel):
    model_config = ConfigDict(extra="ignore")


ToolExecutor = Callable[[Any], Awaitable[Any]]


@dataclass(frozen=True)
class ToolDescriptor:
    """A named, schema-typed, executable unit the model may invoke.

    ``input_model`` validates model-supplied arguments for local tools;
    external tools carry a raw ``json_schema`` and receive a plain dict.
    """

    name: str
    description: str
    executor: ToolExecutor
    input_model: Optional[Type[BaseModel]] = None
    json_schema: Optional[Dict[str, Any]] = None
    origin: ToolOrigin = ToolOrigin.LOCAL
    requires: FrozenSet[str] = frozenset()

    def input_schema(self) -> Dict[str, Any]:
        if self.input_model is not None:
            schema = self.input_model.model_json_schema()
            schema.pop("title", None)
            return schema
        if self.json_schema:
            return self.json_schema
        return {"type": "object", "properties": {}}

    def parse_input(self, raw: Any) -> Any:
        """Validate raw model arguments. Raises pydantic.ValidationError."""
        if self.input_model is None:
            return dict(raw or {})
        return self.input_model.model_validate(raw or {})

    def to_model_tool(self) -> Dict[str, Any]:
        """Anthropic Messages API tool definition."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema(),
        }


# ---------------------------------------------------------------------------
# Invocation log
# ---------------------------------------------------------------------------

@dataclass
class ToolInvocationRecord:
    """One tool call and its sanitized result within a turn."""

    id: str
    name: str
    input: Any = None
    output: Any = None
    error: Optional[str] = None
    duration_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id, "name": self.name, "input": self.input}
        if self.output is not None:
            data["output"] = self.output
        if self.error is not None:
            data["error"] = self.error
        if self.duration_ms is not None:
            data["duration_ms"] = self.duration_ms
        return data


@dataclass
class ToolCallRequest:
    """A tool call emitted by the model in one step."""

    id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)
