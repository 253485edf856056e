"""
Query Parameter Translator
==========================

Turns structured, model-supplied filters (table, year, start/end, date
column, route) into the flat ``column=op.value`` map the Data API
accepts. This module is the only place that map is assembled.

Policy:
- Tables must be on the allow-list.
- Each table has a fixed set of date columns; tables without one reject
  every date filter.
- ``year`` compiles to a half-open range because the REST layer cannot
  express extract(year from col) = N.
- Anything unsupported raises FilterError before any I/O.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ace_assistant.core.errors import FilterError
from ace_assistant.services.data_api import DataApiClient
from ace_assistant.services.sql_sandbox import ALLOWED_TABLES

logger = logging.getLogger(__name__)

YEAR_MIN = 1900
YEAR_MAX = 2100

TABLE_DATE_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "violations": ("last_occurrence", "first_occurrence"),
    "cuny_campus_locations": (),
    "bus_segment_speeds_2025": ("timestamp",),
    "bus_segment_speeds_2023_2024": ("timestamp",),
}

DEFAULT_DATE_COLUMN: Dict[str, str] = {
    "violations": "last_occurrence",
    "bus_segment_speeds_2025": "timestamp",
    "bus_segment_speeds_2023_2024": "timestamp",
}

VIOLATIONS_TABLE = "violations"
ROUTE_COLUMN = "bus_route_id"
STATUS_COLUMN = "violation_status"
EXEMPT_STATUS = "EXEMPT"

_ROUTE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9+\-. ]{0,19}$")


@dataclass(frozen=True)
class FilterTranslation:
    """Validated filters for one Data API call."""

    table: str
    date_column: Optional[str] = None
    filters: Dict[str, List[str]] = field(default_factory=dict)
    year: Optional[int] = None
    start: Optional[str] = None
    end: Optional[str] = None
    route_id: Optional[str] = None

    def describe(self) -> Dict[str, Any]:
        """Echo of the applied filters, returned alongside results."""
        described: Dict[str, Any] = {
            "year": self.year,
            "start": self.start,
            "end": self.end,
            "date_column": self.date_column,
        }
        if self.route_id is not None:
            described["route_id"] = self.route_id
        return described

    def with_equals(self, column: str, value: str) -> Dict[str, List[str]]:
        """Copy of ``filters`` with an extra equality predicate."""
        merged = {key: list(values) for key, values in self.filters.items()}
        merged.setdefault(column, []).append(f"eq.{value}")
        return merged


def normalize_table(table: Any) -> str:
    if not isinstance(table, str) or not table.strip():
        raise FilterError("Table name required.")
    normalized = table.strip().lower()
    if normalized not in ALLOWED_TABLES:
        raise FilterError(f'Table "{table}" is not allowed.')
    return normalized


def coerce_year(year: Any) -> Optional[int]:
    if year is None:
        return None
    if isinstance(year, bool):
        raise FilterError("Year must be an integer.")
    if isinstance(year, float):
        if not year.is_integer():
            raise FilterError("Year must be an integer.")
        year = int(year)
    if not isinstance(year, int):
        raise FilterError("Year must be an integer.")
    if year < YEAR_MIN or year > YEAR_MAX:
        raise FilterError(f"Year must be between {YEAR_MIN} and {YEAR_MAX}.")
    return year


def coerce_iso(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 date or datetime. Naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise FilterError(f"Invalid date: {value}") from None
    else:
        raise FilterError(f"Invalid date: {value}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_iso(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


def resolve_date_column(table: str, date_column: Optional[str], wants_date_filter: bool) -> Optional[str]:
    permitted = TABLE_DATE_COLUMNS.get(table, ())
    if not permitted:
        if date_column or wants_date_filter:
            raise FilterError(f"Table {table} does not support date filtering.")
        return None
    if date_column:
        if date_column not in permitted:
            raise FilterError(f"Column {date_column} is not allowed for table {table}.")
        return date_column
    return DEFAULT_DATE_COLUMN.get(table, permitted[0])


def validate_route_id(route_id: Any) -> Optional[str]:
    if route_id is None or route_id == "":
        return None
    if not isinstance(route_id, str) or not _ROUTE_ID_PATTERN.match(route_id.strip()):
        raise FilterError(f"Invalid route id: {route_id}")
    return route_id.strip().upper()


def translate_filters(
    table: Any,
    year: Any = None,
    start: Any = None,
    end: Any = None,
    date_column: Optional[str] = None,
    route_id: Any = None,
) -> FilterTranslation:
    """Validate structured filters and assemble the REST filter map.

    Raises:
        FilterError: for any filter that cannot be honored exactly.
    """
    normalized_table = normalize_table(table)
    year_value = coerce_year(year)
    start_dt = coerce_iso(start)
    end_dt = coerce_iso(end)
    if start_dt and end_dt and start_dt > end_dt:
        raise FilterError("Start date must be before end date.")

    wants_date_filter = year_value is not None or start_dt is not None or end_dt is not None
    column = resolve_date_column(normalized_table, date_column, wants_date_filter)

    filters: Dict[str, List[str]] = {}
    start_iso = format_iso(start_dt) if start_dt else None
    end_iso = format_iso(end_dt) if end_dt else None
    if column:
        predicates: List[str] = []
        if start_iso:
            predicates.append(f"gte.{start_iso}")
        if end_iso:
            predicates.append(f"lt.{end_iso}")
        if year_value is not None:
            predicates.append(f"gte.{year_value}-01-01")
            predicates.append(f"lt.{year_value + 1}-01-01")
        if predicates:
            filters[column] = predicates

    route = validate_route_id(route_id)
    if route is not None:
        if normalized_table != VIOLATIONS_TABLE:
            raise FilterError(f"Table {normalized_table} does not support route filtering.")
        filters[ROUTE_COLUMN] = [f"eq.{route}"]

    return FilterTranslation(
        table=normalized_table,
        date_column=column,
        filters=filters,
        year=year_value,
        start=start_iso,
        end=end_iso,
        route_id=route,
    )


async def query_table_row_count(
    client: DataApiClient,
    table: Any,
    year: Any = None,
    start: Any = None,
    end: Any = None,
    date_column: Optional[str] = None,
) -> Dict[str, Any]:
    """Count rows of an allow-listed table under validated date filters."""
    translation = translate_filters(table, year=year, start=start, end=end, date_column=date_column)
    count = await client.count(translation.table, translation.filters)
    return {"table": translation.table, "filters": translation.describe(), "count": count}


async def query_violation_stats(
    client: DataApiClient,
    route_id: Any = None,
    year: Any = None,
    start: Any = None,
    end: Any = None,
) -> Dict[str, Any]:
    """Violation totals (all, exempt, non-exempt) and a monthly trend."""
    translation = translate_filters(
        VIOLATIONS_TABLE, year=year, start=start, end=end, route_id=route_id,
    )
    exempt_filters = translation.with_equals(STATUS_COLUMN, EXEMPT_STATUS)

    total, exempt = await asyncio.gather(
        client.count(translation.table, translation.filters),
        client.count(translation.table, exempt_filters),
    )

    column = translation.date_column
    trend_params: Dict[str, Any] = {
        "select": f"month:date_trunc('month',{column}),violations:count(*)",
        "order": "month.asc",
        "group": "month",
    }
    trend_params.update(translation.filters)
    trend_rows = await client.get(translation.table, trend_params)

    trend = []
    for row in trend_rows if isinstance(trend_rows, list) else []:
        if not isinstance(row, Mapping):
            continue
        trend.append({"month": row.get("month"), "violations": _as_int(row.get("violations"))})

    return {
        "table": translation.table,
        "filters": translation.describe(),
        "totals": {"violations": total, "exempt": exempt, "non_exempt": total - exempt},
        "trend": trend,
    }


async def query_table_schema(warehouse: Any, table: Any) -> Dict[str, Any]:
    """Columns of an allow-listed table, read from information_schema."""
    normalized = normalize_table(table)
    columns = await warehouse.describe_table(normalized)
    return {"table": normalized, "columns": columns}


def _as_int(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0
