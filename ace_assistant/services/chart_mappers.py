"""
Chart mappers for prediction-service payloads.

Each mapper turns a raw notebook response into the ``{chart, data}``
shape the chat UI renders. Non-numeric values degrade to ``None`` (series
points) or ``0`` (bar values) instead of raising.
"""

import math
from typing import Any, Dict, List, Mapping, Optional, Sequence

HOTSPOT_BAR_LIMIT = 15


def is_chart_payload(payload: Any) -> bool:
    """True when a service already returned a ``{chart, data}`` pair."""
    return isinstance(payload, Mapping) and "chart" in payload and "data" in payload


def _finite(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if math.isfinite(value) else None


def _number_or_zero(value: Any) -> float:
    try:
        number = float(value if value is not None else 0)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def map_forecast_to_series(route_id: str, payload: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Merge history, forecast and confidence bands into one row per date."""
    chart: Dict[str, Any] = {
        "type": "multi-line",
        "title": f"Route {route_id} violations forecast",
        "series": ["History", "Forecast"],
        "yLabel": "Violations per day",
    }
    if not payload:
        return {"chart": chart, "data": []}

    rows: Dict[str, Dict[str, Any]] = {}

    def add_series(block: Any, values_key: str, series_key: str, dates_fallback: Any = None) -> None:
        block = block if isinstance(block, Mapping) else {}
        dates = block.get("date", dates_fallback)
        values = block.get(values_key)
        if not isinstance(dates, Sequence) or not isinstance(values, Sequence):
            return
        for label, value in zip(dates, values):
            label = str(label or "")
            if not label:
                continue
            rows.setdefault(label, {"label": label})[series_key] = _finite(value)

    forecast_block = payload.get("forecast") if isinstance(payload.get("forecast"), Mapping) else {}
    forecast_dates = forecast_block.get("date")
    add_series(payload.get("history"), "history", "History")
    add_series(forecast_block, "forecast", "Forecast")
    add_series(payload.get("ci_low"), "ci_low", "ciLow", forecast_dates)
    add_series(payload.get("ci_high"), "ci_high", "ciHigh", forecast_dates)

    data = [rows[label] for label in sorted(rows)]
    if any(_finite(row.get("ciLow")) is not None and _finite(row.get("ciHigh")) is not None for row in data):
        chart["intervalKeys"] = {"low": "ciLow", "high": "ciHigh"}
    return {"chart": chart, "data": data}


def build_risk_bar_data(rows: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Label each stop-hour as ``ROUTE@HH:00`` with its risk score as value."""
    mapped = []
    for row in rows or []:
        if not isinstance(row, Mapping):
            continue
        try:
            hour = int(row.get("hour_of_day") or 0)
        except (TypeError, ValueError):
            hour = 0
        mapped.append({
            **row,
            "label": f"{row.get('route_id')}@{hour:02d}:00",
            "value": _number_or_zero(row.get("risk_score")),
        })
    return mapped


def collect_hotspot_bars(geojson: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Top cluster counts from a GeoJSON FeatureCollection."""
    features = geojson.get("features") if isinstance(geojson, Mapping) else None
    features = features if isinstance(features, list) else []
    counts = []
    for feature in features:
        properties = feature.get("properties") if isinstance(feature, Mapping) else None
        value = _number_or_zero(properties.get("count") if isinstance(properties, Mapping) else 0)
        if value > 0:
            counts.append(value)
    counts.sort(reverse=True)
    rows = [{"label": f"#{index + 1}", "value": value} for index, value in enumerate(counts[:HOTSPOT_BAR_LIMIT])]
    return {"rows": rows, "total": len(features)}


def map_survival_series(data: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Kaplan-Meier points labelled by time with survival probability as value."""
    mapped = []
    for row in data or []:
        if not isinstance(row, Mapping):
            continue
        label = row.get("time", row.get("label"))
        survival = row.get("survival", row.get("survival_prob", row.get("value")))
        mapped.append({
            **row,
            "label": "" if label is None else str(label),
            "value": _number_or_zero(survival),
        })
    return mapped
