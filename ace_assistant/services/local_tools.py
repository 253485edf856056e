"""
Local tools: warehouse, Data API, web search and document artifacts.

These always register. When their dependency is missing they stay
visible to the model and answer with ``{error: "<dependency> not
configured."}`` so the model can explain the gap instead of guessing.
"""

import logging
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ace_assistant.core.errors import ConfigurationError
from ace_assistant.models.tools import (
    EmptyInput,
    RecordResult,
    ToolDescriptor,
    ToolErrorResult,
    ToolOrigin,
)
from ace_assistant.services import query_translator
from ace_assistant.services.data_api import DataApiClient
from ace_assistant.services.warehouse import Warehouse
from ace_assistant.services.web_search import WebSearchClient

logger = logging.getLogger(__name__)

WAREHOUSE_DEPENDENCY = "Database connection"
DATA_API_DEPENDENCY = "Data API"
SEARCH_DEPENDENCY = "Search API key"


class ToolInput(BaseModel):
    """Tool arguments. Schemas advertise camelCase; snake_case is accepted too."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ListTablesInput(ToolInput):
    schema_name: str = Field(default="public", alias="schema", description="Schema to list")


class DescribeTableInput(ToolInput):
    table: str = Field(description="Allow-listed table name")


class RunSqlInput(ToolInput):
    sql: str = Field(description="A single read-only SELECT statement")
    limit: Optional[int] = Field(default=None, ge=1, le=5000, description="Row cap")


class ViolationsSummaryInput(ToolInput):
    route_id: Optional[str] = Field(default=None, description="Bus route, e.g. M15+")
    start: Optional[str] = Field(default=None, description="ISO-8601 start (inclusive)")
    end: Optional[str] = Field(default=None, description="ISO-8601 end (exclusive)")
    limit: int = Field(default=5000, ge=1, le=50_000)


class RowCountInput(ToolInput):
    table: str = Field(description="Allow-listed table name")
    year: Optional[int] = Field(default=None, description="Calendar year, 1900-2100")
    start: Optional[str] = Field(default=None, description="ISO-8601 start (inclusive)")
    end: Optional[str] = Field(default=None, description="ISO-8601 end (exclusive)")
    date_column: Optional[str] = Field(default=None, description="Date column to filter on")


class ViolationStatsInput(ToolInput):
    route_id: Optional[str] = Field(default=None, description="Bus route, e.g. M15+")
    year: Optional[int] = Field(default=None, description="Calendar year, 1900-2100")
    start: Optional[str] = Field(default=None, description="ISO-8601 start (inclusive)")
    end: Optional[str] = Field(default=None, description="ISO-8601 end (exclusive)")


class WebSearchInput(ToolInput):
    query: str = Field(min_length=1, description="Search query")
    num_results: int = Field(default=5, ge=1, le=10)


class DocumentAction(ToolInput):
    label: str = Field(min_length=1, description="Action button label")
    tooltip: Optional[str] = Field(default=None, description="Tooltip text; defaults to the label")
    type: Optional[Literal["copy", "download", "share", "edit"]] = Field(
        default=None, description="Default behavior of the action"
    )


class CreateDocumentInput(ToolInput):
    title: str = Field(min_length=1, description="The document title")
    description: Optional[str] = Field(default=None, description="Optional subtitle")
    content: str = Field(min_length=1, description="The main document content (markdown)")
    actions: List[DocumentAction] = Field(default_factory=list, description="Optional action buttons")


def build_document(args: CreateDocumentInput) -> RecordResult:
    """Artifact payload the chat client renders as a document card."""
    return RecordResult(data={
        "artifact": {
            "title": args.title,
            "description": args.description,
            "content": args.content,
            "actions": [
                {"label": a.label, "tooltip": a.tooltip or a.label, "type": a.type or "copy"}
                for a in args.actions
            ],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    })


def _not_configured(dependency: str) -> ToolErrorResult:
    return ToolErrorResult(error=ConfigurationError(dependency).reason)


def build_local_tools(
    warehouse: Warehouse,
    data_api: DataApiClient,
    search: WebSearchClient,
) -> List[ToolDescriptor]:
    async def list_tables(args: ListTablesInput):
        if not warehouse.configured:
            return _not_configured(WAREHOUSE_DEPENDENCY)
        tables = await warehouse.list_tables(args.schema_name)
        return RecordResult(data={"schema": args.schema_name, "tables": tables})

    async def describe_table(args: DescribeTableInput):
        if not warehouse.configured:
            return _not_configured(WAREHOUSE_DEPENDENCY)
        return RecordResult(data=await query_translator.query_table_schema(warehouse, args.table))

    async def run_sql(args: RunSqlInput):
        if not warehouse.configured:
            return _not_configured(WAREHOUSE_DEPENDENCY)
        return await warehouse.run_select(args.sql, limit=args.limit)

    async def violations_summary(args: ViolationsSummaryInput):
        if not warehouse.configured:
            return _not_configured(WAREHOUSE_DEPENDENCY)
        start = query_translator.coerce_iso(args.start)
        end = query_translator.coerce_iso(args.end)
        if start and end and start > end:
            return ToolErrorResult(error="Start date must be before end date.")
        route = query_translator.validate_route_id(args.route_id)
        return await warehouse.violations_summary(route_id=route, start=start, end=end, limit=args.limit)

    async def list_campuses(args: EmptyInput):
        if not warehouse.configured:
            return _not_configured(WAREHOUSE_DEPENDENCY)
        campuses = await warehouse.campuses()
        return RecordResult(data={"campuses": campuses.rows, "count": len(campuses.rows)})

    async def row_count(args: RowCountInput):
        if not data_api.configured:
            return _not_configured(DATA_API_DEPENDENCY)
        return RecordResult(data=await query_translator.query_table_row_count(
            data_api,
            table=args.table,
            year=args.year,
            start=args.start,
            end=args.end,
            date_column=args.date_column,
        ))

    async def violation_stats(args: ViolationStatsInput):
        if not data_api.configured:
            return _not_configured(DATA_API_DEPENDENCY)
        return RecordResult(data=await query_translator.query_violation_stats(
            data_api,
            route_id=args.route_id,
            year=args.year,
            start=args.start,
            end=args.end,
        ))

    async def web_search(args: WebSearchInput):
        if not search.configured:
            return _not_configured(SEARCH_DEPENDENCY)
        return RecordResult(data=await search.search(args.query, num_results=args.num_results))

    async def create_document(args: CreateDocumentInput):
        return build_document(args)

    def local(name, description, model, executor):
        return ToolDescriptor(
            name=name,
            description=description,
            executor=executor,
            input_model=model,
            origin=ToolOrigin.LOCAL,
        )

    return [
        local("listTables", "List table names in a warehouse schema.", ListTablesInput, list_tables),
        local(
            "describeTable",
            "Describe the columns (name, type, nullable, size) of an allowed warehouse table.",
            DescribeTableInput,
            describe_table,
        ),
        local(
            "runSql",
            "Run one read-only SELECT against allowed tables (violations, cuny_campus_locations, "
            "bus_segment_speeds_2025, bus_segment_speeds_2023_2024). Returns rows.",
            RunSqlInput,
            run_sql,
        ),
        local(
            "getViolationsSummary",
            "Fetch grouped violations and exempt counts per route per month.",
            ViolationsSummaryInput,
            violations_summary,
        ),
        local("listCampuses", "List CUNY campus locations with coordinates.", EmptyInput, list_campuses),
        local(
            "queryTableRowCount",
            "Count rows in an allowed table, optionally filtered by year or an ISO date range.",
            RowCountInput,
            row_count,
        ),
        local(
            "queryViolationStats",
            "Violation totals (all, exempt, non-exempt) and a monthly trend, optionally for one route.",
            ViolationStatsInput,
            violation_stats,
        ),
        local(
            "webSearch",
            "Search the web for current MTA service advisories, news and posts. Cite the links returned.",
            WebSearchInput,
            web_search,
        ),
        local(
            "createDocument",
            "Create a structured document with title, content and optional actions, shown as an artifact card.",
            CreateDocumentInput,
            create_document,
        ),
    ]
