"""
Remote-backed tools for the two prediction services.

A tool registers only when its service is configured, reachable, and its
required artifacts pass the capability gate. Unlike local tools, a gated
tool is omitted entirely rather than exposed in a broken state.

Executors convert UpstreamError into friendly ``{error}`` results (404
and 503 get specific wording) and map raw payloads into chart specs;
payloads already shaped as ``{chart, data}`` pass through.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Mapping, Optional, Type

from pydantic import BaseModel, Field

from ace_assistant.config import settings
from ace_assistant.core.errors import UpstreamError
from ace_assistant.models.capability import ProbeResult
from ace_assistant.models.tools import ChartSpec, EmptyInput, RecordResult, ToolDescriptor, ToolErrorResult, ToolOrigin
from ace_assistant.services.capability_prober import is_ready
from ace_assistant.services.chart_mappers import (
    build_risk_bar_data,
    collect_hotspot_bars,
    is_chart_payload,
    map_forecast_to_series,
    map_survival_series,
)
from ace_assistant.services.local_tools import ToolInput
from ace_assistant.services.prediction_clients import NotebookAClient, NotebookBClient

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

class RouteInput(ToolInput):
    route_id: str = Field(min_length=1, description="Bus route, e.g. M15+")


class RiskTopInput(ToolInput):
    limit: int = Field(default=50, ge=1, le=200, description="Number of stop-hours to return")


class RiskScoreInput(ToolInput):
    # Query parameter names of the scoring endpoint
    avg_speed_mph: float = Field(ge=0, alias="avg_speed_mph")
    trips_per_hour: float = Field(ge=0, alias="trips_per_hour")


class PredictSpeedInput(ToolInput):
    month: int = Field(ge=1, le=12)
    hour: int = Field(ge=0, le=23)
    is_weekend: bool = False
    road_distance: float = Field(ge=0, description="Segment length in miles")
    distance_to_cuny: float = Field(ge=0, description="Distance to nearest CUNY campus in miles")


class PredictViolationsInput(ToolInput):
    route_id: str = Field(min_length=1)
    month: Optional[int] = Field(default=None, ge=1, le=12)
    hour: Optional[int] = Field(default=None, ge=0, le=23)
    is_weekend: Optional[bool] = None


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

def _friendly_error(
    error: UpstreamError,
    label: str,
    not_found: Optional[str] = None,
    unavailable: Optional[str] = None,
) -> ToolErrorResult:
    status = error.status_code
    if status == 404 and not_found:
        return ToolErrorResult(error=not_found)
    if status == 503 and unavailable:
        return ToolErrorResult(error=unavailable)
    if status is not None:
        return ToolErrorResult(error=f"{label} failed ({status}).")
    return ToolErrorResult(error=f"{label} failed: {error.reason}")


def _passthrough(payload: Any) -> Optional[ChartSpec]:
    if not is_chart_payload(payload):
        return None
    chart = payload["chart"] if isinstance(payload["chart"], dict) else {"spec": payload["chart"]}
    return ChartSpec(chart=chart, data=payload["data"], text=payload.get("text"))


def _record(payload: Any) -> RecordResult:
    return RecordResult(data=dict(payload) if isinstance(payload, Mapping) else {"result": payload})


# ---------------------------------------------------------------------------
# Notebook B executors
# ---------------------------------------------------------------------------

def _forecast_route(client: NotebookBClient):
    async def execute(args: RouteInput):
        try:
            payload = await client.forecast(args.route_id)
        except UpstreamError as e:
            return _friendly_error(
                e, "Forecast request",
                not_found=f"Forecast for {args.route_id} is not available right now.",
                unavailable=f"Forecast for {args.route_id} is not available right now.",
            )
        passthrough = _passthrough(payload)
        if passthrough:
            return passthrough
        packed = map_forecast_to_series(args.route_id, payload if isinstance(payload, Mapping) else None)
        return ChartSpec(**packed)
    return execute


def _risk_top(client: NotebookBClient):
    async def execute(args: RiskTopInput):
        try:
            rows = await client.risk_top(args.limit)
        except UpstreamError as e:
            return _friendly_error(e, "Risk leaderboard request", not_found="Risk leaderboard is not available.")
        passthrough = _passthrough(rows)
        if passthrough:
            return passthrough
        return ChartSpec(
            chart={"type": "bar", "title": "Top candidate placements by risk", "yLabel": "Risk score"},
            data=build_risk_bar_data(rows if isinstance(rows, list) else []),
        )
    return execute


def _risk_score(client: NotebookBClient):
    async def execute(args: RiskScoreInput):
        try:
            payload = await client.risk_score(args.avg_speed_mph, args.trips_per_hour)
        except UpstreamError as e:
            return _friendly_error(
                e, "Risk scoring",
                unavailable="Risk scoring model is warming up. Try again later.",
            )
        payload = payload if isinstance(payload, Mapping) else {}
        try:
            score = float(payload.get("risk_score"))
        except (TypeError, ValueError):
            score = math.nan
        if not math.isfinite(score):
            return ToolErrorResult(error="Risk scoring returned an invalid value.")
        return ChartSpec(
            text=f"Scenario risk score: **{score:.3f}**",
            chart={"type": "bar", "title": "Scenario risk score", "yLabel": "Risk score"},
            data=[{**payload, "label": "Risk score", "value": score}],
        )
    return execute


def _hotspots_map(client: NotebookBClient):
    async def execute(args: EmptyInput):
        try:
            geojson = await client.hotspots()
        except UpstreamError as e:
            return _friendly_error(e, "Hotspots request", not_found="No hotspots available right now.")
        passthrough = _passthrough(geojson)
        if passthrough:
            return passthrough
        bars = collect_hotspot_bars(geojson if isinstance(geojson, Mapping) else None)
        return ChartSpec(
            chart={
                "type": "bar",
                "title": "Hotspot cluster counts (top 15)",
                "yLabel": "Count",
                "meta": {"totalClusters": bars["total"]},
            },
            data={"bars": bars["rows"], "geojson": geojson},
        )
    return execute


def _survival_km(client: NotebookBClient):
    async def execute(args: EmptyInput):
        try:
            payload = await client.survival_km()
        except UpstreamError as e:
            return _friendly_error(e, "Survival curve request", not_found="Survival curve is not available right now.")
        passthrough = _passthrough(payload)
        if passthrough:
            return passthrough
        if isinstance(payload, list):
            points = payload
        elif isinstance(payload, Mapping) and isinstance(payload.get("data"), list):
            points = payload["data"]
        else:
            points = []
        return ChartSpec(
            chart={"type": "line", "title": "Time to repeat violation", "yLabel": "Survival probability"},
            data=map_survival_series(points),
        )
    return execute


def _survival_cox(client: NotebookBClient):
    async def execute(args: EmptyInput):
        try:
            payload = await client.survival_cox()
        except UpstreamError as e:
            return _friendly_error(e, "Cox model summary", not_found="Cox model summary is not available right now.")
        passthrough = _passthrough(payload)
        if passthrough:
            return passthrough
        if isinstance(payload, Mapping) and isinstance(payload.get("rows"), list):
            rows = payload["rows"]
        elif isinstance(payload, list):
            rows = payload
        else:
            rows = []
        return ChartSpec(chart={"type": "table", "title": "Cox model coefficients"}, data=rows)
    return execute


# ---------------------------------------------------------------------------
# Notebook A executors
# ---------------------------------------------------------------------------

def _predict_speed(client: NotebookAClient):
    async def execute(args: PredictSpeedInput):
        body = args.model_dump()
        body["is_weekend"] = int(args.is_weekend)
        try:
            payload = await client.predict_speed(body)
        except UpstreamError as e:
            return _friendly_error(e, "Speed prediction", unavailable="Speed model is warming up. Try again later.")
        return _record(payload)
    return execute


def _predict_violations(client: NotebookAClient):
    async def execute(args: PredictViolationsInput):
        body: Dict[str, Any] = args.model_dump(exclude_none=True)
        if args.is_weekend is not None:
            body["is_weekend"] = int(args.is_weekend)
        try:
            payload = await client.predict_violations(body)
        except UpstreamError as e:
            return _friendly_error(
                e, "Violation prediction",
                not_found=f"No violation model output for route {args.route_id}.",
                unavailable="Violation model is warming up. Try again later.",
            )
        return _record(payload)
    return execute


def _analyze_route(client: NotebookAClient):
    async def execute(args: RouteInput):
        try:
            payload = await client.analyze_route({"route_id": args.route_id})
        except UpstreamError as e:
            return _friendly_error(
                e, "Route analysis",
                not_found=f"Route {args.route_id} was not found by the analysis service.",
                unavailable="Route analysis is warming up. Try again later.",
            )
        return _passthrough(payload) or _record(payload)
    return execute


# ---------------------------------------------------------------------------
# Declarations
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RemoteToolSpec:
    name: str
    service: str
    artifacts: FrozenSet[str]
    description: str
    input_model: Type[BaseModel]
    factory: Callable[[Any], Callable[[Any], Awaitable[Any]]]


REMOTE_TOOLS: List[RemoteToolSpec] = [
    RemoteToolSpec(
        "forecastRoute", "b", frozenset({"forecast"}),
        "Show route-level violations trend with near-term forecast.",
        RouteInput, _forecast_route,
    ),
    RemoteToolSpec(
        "riskTop", "b", frozenset({"risk_top"}),
        "Rank stop-hours for ACE camera placement by risk score.",
        RiskTopInput, _risk_top,
    ),
    RemoteToolSpec(
        "riskScore", "b", frozenset({"risk_score"}),
        "Score a scenario with avg_speed_mph and trips_per_hour inputs.",
        RiskScoreInput, _risk_score,
    ),
    RemoteToolSpec(
        "hotspotsMap", "b", frozenset({"hotspots"}),
        "Fetch ACE hotspots GeoJSON clusters with a quick histogram.",
        EmptyInput, _hotspots_map,
    ),
    RemoteToolSpec(
        "survivalKm", "b", frozenset({"survival_km"}),
        "Visualize time-to-repeat violation via Kaplan-Meier survival curve.",
        EmptyInput, _survival_km,
    ),
    RemoteToolSpec(
        "survivalCox", "b", frozenset({"survival_cox"}),
        "Summarize covariate effects on repeat behavior (Cox model).",
        EmptyInput, _survival_cox,
    ),
    RemoteToolSpec(
        "predictSpeed", "a", frozenset({"speed_model", "speed_scaler"}),
        "Predict average bus speed (mph) for a segment given month, hour, weekend flag and distances.",
        PredictSpeedInput, _predict_speed,
    ),
    RemoteToolSpec(
        "predictViolations", "a", frozenset({"violation_model"}),
        "Predict expected ACE violations for a route, optionally at a given month and hour.",
        PredictViolationsInput, _predict_violations,
    ),
    RemoteToolSpec(
        "analyzeRoute", "a", frozenset({"violation_model"}),
        "Analyze a route's violation profile with the violation model.",
        RouteInput, _analyze_route,
    ),
]


def build_remote_tools(
    probe: ProbeResult,
    notebook_a: NotebookAClient,
    notebook_b: NotebookBClient,
    missing_policy: Optional[str] = None,
) -> List[ToolDescriptor]:
    """Descriptors for every remote tool whose gate passes."""
    policy = missing_policy or settings.missing_artifact_policy
    clients = {"a": notebook_a, "b": notebook_b}
    tools: List[ToolDescriptor] = []
    skipped: List[str] = []

    for spec in REMOTE_TOOLS:
        client = clients[spec.service]
        report = probe.for_service(spec.service)
        if not client.base_url or not is_ready(report, spec.artifacts, policy):
            skipped.append(spec.name)
            continue
        tools.append(ToolDescriptor(
            name=spec.name,
            description=spec.description,
            executor=spec.factory(client),
            input_model=spec.input_model,
            origin=ToolOrigin.LOCAL,
            requires=spec.artifacts,
        ))

    if skipped:
        logger.info("remote_tools_gated", extra={"skipped": skipped, "policy": policy})
    return tools
