"""
Tests for the deterministic fallback reply.
"""

import math

from ace_assistant.services.fallback_synthesizer import (
    compute_summary,
    extract_summary_rows,
    format_number,
    format_percent,
    render_overview,
    synthesize,
    synthesize_from_logs,
)

ROWS = [
    {"route": "M15", "violations": 10, "exempt": 2, "month": "2024-01"},
    {"route": "Q46", "violations": 5, "exempt": 1, "month": "2024-02"},
]


def _log(name, output=None, error=None):
    entry = {"id": f"call_{name}", "name": name, "input": {}}
    if output is not None:
        entry["output"] = output
    if error is not None:
        entry["error"] = error
    return entry


class TestFormatting:
    def test_format_number(self):
        assert format_number(1234567) == "1,234,567"
        assert format_number(15.0) == "15"
        assert format_number(2.5) == "2.5"
        assert format_number(math.nan) == "0"

    def test_format_percent(self):
        assert format_percent(0.2) == "20.0%"
        assert format_percent(math.inf) == "0%"


class TestComputeSummary:
    def test_totals_share_window_and_top_routes(self):
        summary = compute_summary(ROWS)
        assert summary.total_violations == 15
        assert summary.total_exempt == 3
        assert summary.route_count == 2
        assert summary.exempt_share == 0.2
        assert summary.months == ["2024-01", "2024-02"]
        assert [route.route for route in summary.top_routes] == ["M15", "Q46"]

    def test_warehouse_column_names(self):
        rows = [
            {"bus_route_id": "B44+", "date_trunc_ym": "2024-03", "violations": 7, "exempt_count": 0},
            {"bus_route_id": "B44+", "date_trunc_ym": "2024-04", "violations": 3, "exempt_count": 1},
        ]
        summary = compute_summary(rows)
        assert summary.route_count == 1
        assert summary.top_routes[0].violations == 10

    def test_ties_keep_first_seen_order_and_cap_at_three(self):
        rows = [{"route": name, "violations": 1} for name in ("A", "B", "C", "D")]
        assert [route.route for route in compute_summary(rows).top_routes] == ["A", "B", "C"]

    def test_non_numeric_and_non_mapping_rows_ignored(self):
        summary = compute_summary([{"route": "M15", "violations": "n/a"}, "junk", {"violations": "4"}])
        assert summary.total_violations == 4
        assert summary.route_count == 2
        assert summary.exempt_share == 0.0

    def test_empty_rows(self):
        summary = compute_summary([])
        assert summary.total_violations == 0
        assert summary.exempt_share == 0.0
        assert summary.top_routes == []


class TestSynthesize:
    def test_summary_from_rows(self):
        reply = synthesize_from_logs([_log("getViolationsSummary", {"kind": "rows", "rows": ROWS})])

        assert reply.startswith("### ACE enforcement summary")
        assert "- Violations: 15 across 2 routes" in reply
        assert "- Exempt share: 20.0% (3 exempt)" in reply
        assert "- Coverage window: 2024-01 → 2024-02" in reply
        assert reply.index("- M15: 10 violations") < reply.index("- Q46: 5 violations")

    def test_latest_rows_bearing_result_wins(self):
        logs = [
            _log("runSql", {"kind": "rows", "rows": [{"route": "OLD", "violations": 99}]}),
            _log("webSearch", {"kind": "record", "results": []}),
            _log("getViolationsSummary", {"kind": "rows", "rows": ROWS}),
        ]
        assert extract_summary_rows(logs) == ROWS
        assert "OLD" not in synthesize_from_logs(logs)

    def test_zero_rows_echo_question(self):
        reply = synthesize_from_logs(
            [_log("getViolationsSummary", {"kind": "rows", "rows": []})],
            question="trend for X123",
        )
        assert "trend for X123" in reply
        assert "did not find any matching enforcement records" in reply
        assert "### ACE enforcement summary" not in reply

    def test_question_context_appended(self):
        reply = synthesize_from_logs(
            [_log("getViolationsSummary", {"kind": "rows", "rows": ROWS})],
            question="How is M15 doing?",
        )
        assert reply.endswith("model reply was empty for “How is M15 doing?”.")

    def test_failed_tool_reported_verbatim(self):
        logs = [
            _log("listTables", {"kind": "record", "tables": []}),
            _log("runSql", {"kind": "error", "error": "Only SELECT statements are allowed."},
                 error="Only SELECT statements are allowed."),
        ]
        reply = synthesize_from_logs(logs, question="delete everything")
        assert reply == (
            "The runSql tool failed while answering “delete everything”.\n\n"
            "Error: Only SELECT statements are allowed."
        )

    def test_tools_without_usable_data(self):
        logs = [_log("webSearch", {"kind": "record", "results": []}), _log("webSearch", {"kind": "record"})]
        assert synthesize_from_logs(logs) == "I ran webSearch but did not receive usable data."

    def test_nothing_to_report(self):
        assert synthesize(None, []) is None
        assert synthesize_from_logs([], question="hi") is None


class TestRenderOverview:
    def test_three_lines(self):
        assert render_overview(compute_summary(ROWS)).split("\n") == [
            "• Violations observed: 15 across 2 routes",
            "• Exempt share: 20.0% (3 exempt)",
            "• Coverage window: 2024-01 → 2024-02",
        ]

    def test_no_window(self):
        assert render_overview(compute_summary([])).endswith("• Coverage window: not available")
