"""
Warehouse Service
=================

Read-only access to the Postgres warehouse through SQLAlchemy.

- Raw model-written SQL only runs after SQLSandbox.ensure() and is
  wrapped in a row-limit subquery.
- Everything else (schema introspection, violation summaries, campus
  list) is parameterized SQL.
- Sessions are read-only at the connection level on Postgres.
- Blocking calls run on worker threads via run_sync.
"""

import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ace_assistant.config import settings
from ace_assistant.core.async_utils import run_sync
from ace_assistant.core.errors import ConfigurationError, UpstreamError
from ace_assistant.models.tools import RowsTable
from ace_assistant.services.sql_sandbox import SQLSandbox

logger = logging.getLogger(__name__)

SUMMARY_LIMIT_MAX = 50_000

_SUMMARY_SQL = """
select
    bus_route_id,
    to_char(date_trunc('month', last_occurrence), 'YYYY-MM') as date_trunc_ym,
    count(*) as violations,
    count(*) filter (where violation_status = 'EXEMPT') as exempt_count
from violations
{where}
group by bus_route_id, date_trunc_ym
order by bus_route_id, date_trunc_ym
limit :limit
"""

_CAMPUS_SQL = """
select institution_type, campus, campus_website, address, city, state, zip, latitude, longitude
from cuny_campus_locations
order by campus
"""


class Warehouse:
    """SQLAlchemy-backed warehouse adapter used by the local database tools."""

    def __init__(
        self,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_rows: Optional[int] = None,
        sandbox: Optional[SQLSandbox] = None,
        engine: Optional[Engine] = None,
    ):
        self._url = url if url is not None else settings.database_url
        self._timeout = timeout or settings.warehouse_timeout_s
        self._max_rows = max_rows or settings.warehouse_max_rows
        self._sandbox = sandbox or SQLSandbox()
        self._engine = engine

    @property
    def configured(self) -> bool:
        return self._engine is not None or bool(self._url)

    def get_engine(self) -> Engine:
        """Create or return the cached engine with read-only enforcement."""
        if self._engine is not None:
            return self._engine
        if not self._url:
            raise ConfigurationError("Database connection")

        engine_kwargs: Dict[str, Any] = {"pool_pre_ping": True}
        is_postgres = self._url.startswith(("postgres://", "postgresql"))
        if is_postgres:
            url = self._url.replace("postgres://", "postgresql://", 1)
            statement_timeout_ms = int(self._timeout * 1000)
            engine_kwargs.update({
                "pool_size": 2,
                "max_overflow": 2,
                "pool_timeout": 10,
                "pool_recycle": 300,
                "connect_args": {"options": f"-c statement_timeout={statement_timeout_ms}"},
                "execution_options": {"postgresql_readonly": True},
            })
        else:
            url = self._url

        engine = create_engine(url, **engine_kwargs)

        if is_postgres:
            @event.listens_for(engine, "connect")
            def _pg_readonly(dbapi_conn, connection_record):
                cursor = dbapi_conn.cursor()
                cursor.execute("SET SESSION CHARACTERISTICS AS TRANSACTION READ ONLY")
                cursor.close()

        self._engine = engine
        return engine

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def _fetch(self, sql: str, params: Optional[Dict[str, Any]] = None) -> RowsTable:
        engine = self.get_engine()
        try:
            with engine.connect() as conn:
                result = conn.execute(text(sql), params or {})
                columns = list(result.keys())
                rows = [dict(row._mapping) for row in result]
        except SQLAlchemyError as e:
            # Driver messages carry the failing clause; keep the first line only
            lines = str(getattr(e, "orig", None) or e).strip().splitlines()
            message = lines[0] if lines else type(e).__name__
            raise UpstreamError(
                f"Query failed: {message}",
                code="ACE-SQL-002",
            ) from e
        return RowsTable(rows=rows, columns=columns)

    async def _run(self, sql: str, params: Optional[Dict[str, Any]] = None) -> RowsTable:
        try:
            return await run_sync(self._fetch, sql, params, timeout=self._timeout)
        except TimeoutError as e:
            raise UpstreamError(
                f"Query timed out after {self._timeout:g}s.",
                code="ACE-UPS-005",
            ) from e

    async def run_select(self, statement: str, limit: Optional[int] = None) -> RowsTable:
        """Validate and run a free-text SELECT, capped at ``limit`` rows."""
        normalized = self._sandbox.ensure(statement)
        cap = min(limit or self._max_rows, self._max_rows)
        start = time.perf_counter()
        # text() reads ":name" as a bind parameter, even inside literals
        escaped = normalized.replace(":", "\\:")
        table = await self._run(f"select * from ({escaped}) as _sandboxed limit :_row_cap", {"_row_cap": cap})
        table.meta.update({
            "row_count": len(table.rows),
            "truncated": len(table.rows) >= cap,
            "duration_ms": round((time.perf_counter() - start) * 1000, 1),
        })
        return table

    async def list_tables(self, schema: str = "public") -> List[str]:
        table = await self._run(
            "select table_name from information_schema.tables "
            "where table_schema = :schema order by table_name",
            {"schema": schema},
        )
        return [str(row["table_name"]) for row in table.rows]

    async def describe_table(self, table_name: str, schema: str = "public") -> List[Dict[str, Any]]:
        table = await self._run(
            "select column_name, data_type, is_nullable, "
            "coalesce(character_maximum_length, numeric_precision)::text as size "
            "from information_schema.columns "
            "where table_schema = :schema and table_name = :table "
            "order by ordinal_position",
            {"schema": schema, "table": table_name},
        )
        return [
            {
                "name": str(row["column_name"]),
                "type": str(row["data_type"]),
                "nullable": str(row["is_nullable"]).lower() == "yes",
                "size": str(row["size"]) if row.get("size") is not None else None,
            }
            for row in table.rows
        ]

    async def violations_summary(
        self,
        route_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 5000,
    ) -> RowsTable:
        """Violations and exempt counts grouped by route and month."""
        conditions = []
        params: Dict[str, Any] = {"limit": max(1, min(limit, SUMMARY_LIMIT_MAX))}
        if route_id:
            conditions.append("bus_route_id = :route_id")
            params["route_id"] = route_id
        if start:
            conditions.append("last_occurrence >= :start")
            params["start"] = start
        if end:
            conditions.append("last_occurrence < :end")
            params["end"] = end
        where = f"where {' and '.join(conditions)}" if conditions else ""
        table = await self._run(_SUMMARY_SQL.format(where=where), params)
        for row in table.rows:
            row["violations"] = int(row.get("violations") or 0)
            row["exempt_count"] = int(row.get("exempt_count") or 0)
        return table

    async def campuses(self) -> RowsTable:
        table = await self._run(_CAMPUS_SQL)
        campuses = []
        for row in table.rows:
            campuses.append({
                "type": row.get("institution_type"),
                "campus": row.get("campus"),
                "website": row.get("campus_website"),
                "address": row.get("address"),
                "city": row.get("city"),
                "state": row.get("state"),
                "zip": row.get("zip"),
                "latitude": float(row["latitude"]) if row.get("latitude") is not None else None,
                "longitude": float(row["longitude"]) if row.get("longitude") is not None else None,
            })
        return RowsTable(rows=campuses, columns=list(campuses[0].keys()) if campuses else None)

    async def healthcheck(self) -> Dict[str, Any]:
        if not self.configured:
            return {"status": "not_configured"}
        start = time.perf_counter()
        try:
            await self._run("select 1")
        except (UpstreamError, ConfigurationError) as e:
            return {"status": "error", "error": e.reason}
        return {"status": "ok", "latency_ms": round((time.perf_counter() - start) * 1000, 1)}
