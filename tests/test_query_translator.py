"""
Tests for structured filter translation and the Data API queries built on it.
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from ace_assistant.core.errors import ConfigurationError, FilterError, UpstreamError
from ace_assistant.services.data_api import DataApiClient, build_query_params
from ace_assistant.services.query_translator import (
    coerce_iso,
    query_table_row_count,
    query_table_schema,
    query_violation_stats,
    translate_filters,
)


def _client(handler, token="test-token"):
    return DataApiClient(
        base_url="http://data.test/rest/v1",
        token=token,
        transport=httpx.MockTransport(handler),
    )


def _refuse(request):
    raise AssertionError(f"unexpected request: {request.url}")


class TestTranslateFilters:
    def test_year_becomes_half_open_range(self):
        translation = translate_filters("violations", year=2024)
        assert translation.date_column == "last_occurrence"
        assert translation.filters == {"last_occurrence": ["gte.2024-01-01", "lt.2025-01-01"]}

    def test_start_end_normalized_to_utc(self):
        translation = translate_filters(
            "bus_segment_speeds_2025",
            start="2025-03-01",
            end="2025-03-02T05:00:00-05:00",
        )
        assert translation.date_column == "timestamp"
        assert translation.filters == {
            "timestamp": ["gte.2025-03-01T00:00:00Z", "lt.2025-03-02T10:00:00Z"],
        }
        assert translation.describe()["start"] == "2025-03-01T00:00:00Z"

    def test_explicit_date_column(self):
        translation = translate_filters("violations", year=2023, date_column="first_occurrence")
        assert list(translation.filters) == ["first_occurrence"]

    def test_date_column_not_permitted_for_table(self):
        with pytest.raises(FilterError) as exc_info:
            translate_filters("violations", year=2024, date_column="timestamp")
        assert exc_info.value.reason == "Column timestamp is not allowed for table violations."

    def test_table_without_date_columns_rejects_date_filters(self):
        with pytest.raises(FilterError) as exc_info:
            translate_filters("cuny_campus_locations", start="2024-01-01")
        assert "does not support date filtering" in exc_info.value.reason

    def test_table_without_date_columns_allows_no_filter(self):
        translation = translate_filters("cuny_campus_locations")
        assert translation.date_column is None
        assert translation.filters == {}

    def test_table_name_normalized_and_checked(self):
        assert translate_filters("  Violations ").table == "violations"
        with pytest.raises(FilterError) as exc_info:
            translate_filters("users")
        assert exc_info.value.reason == 'Table "users" is not allowed.'

    @pytest.mark.parametrize("year", [1899, 2101, True, "2024", 2024.5])
    def test_bad_years_rejected(self, year):
        with pytest.raises(FilterError):
            translate_filters("violations", year=year)

    def test_whole_float_year_accepted(self):
        assert translate_filters("violations", year=2024.0).year == 2024

    def test_start_after_end_rejected(self):
        with pytest.raises(FilterError) as exc_info:
            translate_filters("violations", start="2024-05-01", end="2024-01-01")
        assert exc_info.value.reason == "Start date must be before end date."

    def test_invalid_date_rejected(self):
        with pytest.raises(FilterError) as exc_info:
            translate_filters("violations", start="last tuesday")
        assert exc_info.value.reason == "Invalid date: last tuesday"

    def test_route_filter_upper_cased(self):
        translation = translate_filters("violations", route_id="m15+")
        assert translation.filters == {"bus_route_id": ["eq.M15+"]}
        assert translation.describe()["route_id"] == "M15+"

    def test_route_filter_only_on_violations(self):
        with pytest.raises(FilterError):
            translate_filters("bus_segment_speeds_2025", route_id="M15")

    def test_route_id_pattern_enforced(self):
        with pytest.raises(FilterError):
            translate_filters("violations", route_id="M15; drop table violations")

    def test_coerce_iso_zulu_suffix(self):
        assert coerce_iso("2024-01-01T12:00:00Z").hour == 12
        assert coerce_iso(None) is None


class TestBuildQueryParams:
    def test_flattens_and_drops_empty_values(self):
        pairs = build_query_params({
            "a": None,
            "b": "",
            "c": ["x", None, "y"],
            "d": True,
            "e": 3,
        })
        assert pairs == [("c", "x"), ("c", "y"), ("d", "true"), ("e", "3")]


class TestRowCount:
    @pytest.mark.asyncio
    async def test_count_request_shape(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[{"count": 42}])

        result = await query_table_row_count(_client(handler), "violations", year=2024)

        assert result == {
            "table": "violations",
            "filters": {"year": 2024, "start": None, "end": None, "date_column": "last_occurrence"},
            "count": 42,
        }
        request = seen[0]
        assert request.url.path == "/rest/v1/violations"
        assert request.url.params["select"] == "count:count()"
        assert request.url.params.get_list("last_occurrence") == ["gte.2024-01-01", "lt.2025-01-01"]
        assert request.headers["authorization"] == "Bearer test-token"

    @pytest.mark.asyncio
    async def test_rejects_before_any_request(self):
        with pytest.raises(FilterError):
            await query_table_row_count(_client(_refuse), "cuny_campus_locations", start="2024-01-01")

    @pytest.mark.asyncio
    async def test_empty_response_counts_zero(self):
        result = await query_table_row_count(
            _client(lambda request: httpx.Response(200, json=[])), "cuny_campus_locations",
        )
        assert result["count"] == 0


class TestViolationStats:
    @pytest.mark.asyncio
    async def test_totals_and_trend(self):
        def handler(request):
            params = request.url.params
            if params.get("select") == "count:count()":
                if params.get("violation_status") == "eq.EXEMPT":
                    return httpx.Response(200, json=[{"count": 3}])
                return httpx.Response(200, json=[{"count": 10}])
            assert params.get_list("bus_route_id") == ["eq.M15+"]
            return httpx.Response(200, json=[
                {"month": "2024-01-01T00:00:00", "violations": "4"},
                {"month": "2024-02-01T00:00:00", "violations": 6},
                "garbage",
            ])

        result = await query_violation_stats(_client(handler), route_id="M15+", year=2024)

        assert result["totals"] == {"violations": 10, "exempt": 3, "non_exempt": 7}
        assert result["trend"] == [
            {"month": "2024-01-01T00:00:00", "violations": 4},
            {"month": "2024-02-01T00:00:00", "violations": 6},
        ]
        assert result["filters"]["route_id"] == "M15+"


class TestDataApiClient:
    @pytest.mark.asyncio
    async def test_not_configured(self):
        client = DataApiClient(base_url="", transport=httpx.MockTransport(_refuse))
        assert not client.configured
        with pytest.raises(ConfigurationError):
            await client.get("violations")
        assert await client.healthcheck() == {"status": "not_configured"}

    @pytest.mark.asyncio
    async def test_error_status_raises_upstream_error(self):
        client = _client(lambda request: httpx.Response(502, text="bad gateway"))
        with pytest.raises(UpstreamError) as exc_info:
            await client.get("violations")
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_no_auth_header_without_token(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[])

        await _client(handler, token="").get("violations")
        assert "authorization" not in seen[0].headers


class TestTableSchema:
    @pytest.mark.asyncio
    async def test_normalizes_table_before_lookup(self):
        warehouse = MagicMock()
        warehouse.describe_table = AsyncMock(return_value=[
            {"name": "violation_id", "type": "text", "nullable": False, "size": None},
        ])

        result = await query_table_schema(warehouse, "  Violations ")

        warehouse.describe_table.assert_awaited_once_with("violations")
        assert result["table"] == "violations"
        assert result["columns"][0]["name"] == "violation_id"

    @pytest.mark.asyncio
    async def test_rejects_unlisted_table(self):
        warehouse = MagicMock()
        warehouse.describe_table = AsyncMock()
        with pytest.raises(FilterError):
            await query_table_schema(warehouse, "pg_shadow")
        warehouse.describe_table.assert_not_awaited()
