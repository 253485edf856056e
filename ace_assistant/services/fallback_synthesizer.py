"""
Fallback Synthesizer
====================

Deterministic reply for turns where the model produced no text. Works
only from the turn's tool log, in priority order:

1. Latest rows-bearing result: violations summary (totals, routes,
   exempt share, coverage window, top routes), or an explicit
   "no matching records" reply when the total is zero.
2. First failed tool call, verbatim, with the question for context.
3. Tools ran but returned nothing usable: name them.
4. Nothing to say: None (the caller supplies a generic apology).
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

TOP_ROUTES = 3
UNKNOWN_ROUTE = "unknown"
GENERIC_APOLOGY = "Sorry, I could not produce an answer for that question. Please try rephrasing it."

PRIMARY_KEYS = ("violations", "count")
SECONDARY_KEYS = ("exempt_count", "exempt")
GROUP_KEYS = ("bus_route_id", "route", "route_id")
BUCKET_KEYS = ("date_trunc_ym", "month")


@dataclass
class RouteTotals:
    route: str
    violations: float = 0.0
    exempt: float = 0.0


@dataclass
class SummaryStats:
    rows: List[Mapping[str, Any]]
    total_violations: float = 0.0
    total_exempt: float = 0.0
    route_count: int = 0
    months: List[str] = field(default_factory=list)
    exempt_share: float = 0.0
    top_routes: List[RouteTotals] = field(default_factory=list)


def format_number(value: float) -> str:
    """Thousands separators; whole numbers print without decimals."""
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        return "0"
    if float(value).is_integer():
        return f"{int(value):,}"
    return f"{value:,.2f}".rstrip("0").rstrip(".")


def format_percent(value: float) -> str:
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        return "0%"
    return f"{value * 100:.1f}%"


def _first_present(row: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        value = row.get(key)
        if value is not None:
            return value
    return None


def _to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return 0.0 if value is None else None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def compute_summary(rows: Sequence[Any]) -> SummaryStats:
    """Aggregate rows into totals per route and the months they cover."""
    routes: Dict[str, RouteTotals] = {}
    months = set()
    total_violations = 0.0
    total_exempt = 0.0

    for row in rows:
        if not isinstance(row, Mapping):
            continue
        violations = _to_number(_first_present(row, PRIMARY_KEYS))
        exempt = _to_number(_first_present(row, SECONDARY_KEYS))
        group = _first_present(row, GROUP_KEYS)
        route = str(group) if group is not None else UNKNOWN_ROUTE
        bucket = _first_present(row, BUCKET_KEYS)

        bucket_totals = routes.setdefault(route, RouteTotals(route=route))
        if violations is not None:
            total_violations += violations
            bucket_totals.violations += violations
        if exempt is not None:
            total_exempt += exempt
            bucket_totals.exempt += exempt
        if bucket:
            months.add(str(bucket))

    # sorted() is stable: ties keep first-seen order
    top = sorted(routes.values(), key=lambda r: r.violations, reverse=True)[:TOP_ROUTES]
    return SummaryStats(
        rows=list(rows),
        total_violations=total_violations,
        total_exempt=total_exempt,
        route_count=len(routes),
        months=sorted(months),
        exempt_share=total_exempt / total_violations if total_violations > 0 else 0.0,
        top_routes=top,
    )


def extract_summary_rows(tool_logs: Sequence[Mapping[str, Any]]) -> Optional[List[Any]]:
    """Rows of the latest log entry whose output carries a ``rows`` list."""
    for log in reversed(tool_logs):
        output = log.get("output") if isinstance(log, Mapping) else None
        if isinstance(output, Mapping) and isinstance(output.get("rows"), list):
            return output["rows"]
    return None


def summarize_tool_logs(tool_logs: Sequence[Mapping[str, Any]]) -> Optional[SummaryStats]:
    rows = extract_summary_rows(tool_logs)
    return compute_summary(rows) if rows is not None else None


def _month_range(summary: SummaryStats) -> Optional[str]:
    if not summary.months:
        return None
    if len(summary.months) == 1:
        return summary.months[0]
    return f"{summary.months[0]} → {summary.months[-1]}"


def _render_summary(summary: SummaryStats, question: str) -> str:
    month_range = _month_range(summary)
    exempt_line = (
        f"- Exempt share: {format_percent(summary.exempt_share)} "
        f"({format_number(summary.total_exempt)} exempt)"
    )

    if summary.total_violations <= 0:
        lines = [
            f"I queried ACE violations for “{question}” but did not find any matching enforcement records."
            if question else "No ACE violations matched the requested filters.",
            "",
            f"- Routes checked: {summary.route_count}",
            exempt_line,
        ]
        if month_range:
            lines.append(f"- Coverage window: {month_range}")
        return "\n".join(lines)

    lines = [
        "### ACE enforcement summary",
        f"- Violations: {format_number(summary.total_violations)} across {summary.route_count} routes",
        exempt_line,
    ]
    if month_range:
        lines.append(f"- Coverage window: {month_range}")

    if summary.top_routes:
        lines.extend(["", "**Top routes**"])
        for route in summary.top_routes:
            lines.append(
                f"- {route.route or '(unassigned)'}: {format_number(route.violations)} violations "
                f"({format_number(route.exempt)} exempt)"
            )

    if question:
        lines.extend(["", f"Answer generated automatically because the model reply was empty for “{question}”."])
    return "\n".join(lines)


def synthesize(
    summary: Optional[SummaryStats],
    tool_logs: Sequence[Mapping[str, Any]],
    question: str = "",
) -> Optional[str]:
    """Build a reply from tool activity, or None when there is nothing to report."""
    question = (question or "").strip()

    if summary is not None:
        return _render_summary(summary, question)

    failed = next((log for log in tool_logs if log.get("error")), None)
    if failed is not None:
        prefix = (
            f"The {failed.get('name')} tool failed while answering “{question}”."
            if question else f"The {failed.get('name')} tool failed."
        )
        return f"{prefix}\n\nError: {failed.get('error')}"

    if tool_logs:
        names = list(dict.fromkeys(str(log.get("name")) for log in tool_logs if log.get("name")))
        ran = ", ".join(names) or "the requested tool"
        if question:
            return (
                f"I ran {ran} but did not receive usable data for “{question}”. "
                "Try refining the route or time period."
            )
        return f"I ran {ran} but did not receive usable data."

    return None


def synthesize_from_logs(tool_logs: Sequence[Mapping[str, Any]], question: str = "") -> Optional[str]:
    return synthesize(summarize_tool_logs(tool_logs), tool_logs, question)


def render_overview(summary: SummaryStats) -> str:
    """Three-line digest used when no model is configured."""
    month_range = _month_range(summary)
    return "\n".join([
        f"• Violations observed: {format_number(summary.total_violations)} across {summary.route_count} routes",
        f"• Exempt share: {format_percent(summary.exempt_share)} ({format_number(summary.total_exempt)} exempt)",
        f"• Coverage window: {month_range}" if month_range else "• Coverage window: not available",
    ])
