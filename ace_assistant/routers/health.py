"""
Health check endpoints with deep component checks.

- GET /api/health: process alive, version, uptime
- GET /api/health/deep: bounded checks for the warehouse, Data API,
  prediction services, MCP discovery and model
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends

from ace_assistant.config import settings
from ace_assistant.core.structured_logging import APP_VERSION, SERVICE_NAME, get_uptime_s
from ace_assistant.services.chat_service import ChatService, get_chat_service

logger = logging.getLogger(__name__)

router = APIRouter()

COMPONENT_TIMEOUT = 6.0  # seconds; above the probe timeout

# Collaborator healthcheck statuses -> health statuses
_STATUS_MAP = {"ok": "ok", "error": "down", "not_configured": "not_configured"}


# ── Cheap health ─────────────────────────────────────────────────────
@router.get("/health")
async def health_check():
    """Cheap health check, no network calls."""
    return {
        "status": "ok",
        "version": APP_VERSION,
        "service": SERVICE_NAME,
        "uptime_s": round(get_uptime_s(), 1),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ── Deep health ──────────────────────────────────────────────────────
@router.get("/health/deep")
async def deep_health_check(service: ChatService = Depends(get_chat_service)):
    """Deep health check with bounded component checks."""
    checks = [
        ("database", _check_collaborator(service.warehouse.healthcheck())),
        ("data_api", _check_collaborator(service.data_api.healthcheck())),
        ("prediction_services", _check_prediction(service)),
        ("mcp", _check_collaborator(service.external.healthcheck())),
        ("llm", _check_llm()),
    ]

    results = await asyncio.gather(*[_bounded_check(name, coro) for name, coro in checks])
    components = dict(results)

    # Overall status = worst component; unconfigured components do not count
    statuses = [c.get("status", "down") for c in components.values()]
    if "down" in statuses:
        overall = "down" if statuses.count("down") == len(statuses) else "degraded"
    elif "degraded" in statuses:
        overall = "degraded"
    else:
        overall = "ok"

    return {
        "status": overall,
        "checked_at": datetime.now(timezone.utc).isoformat(),
        "version": APP_VERSION,
        "uptime_s": round(get_uptime_s(), 1),
        "components": components,
    }


async def _bounded_check(name: str, coro) -> tuple[str, dict]:
    """Run a component check with a timeout."""
    try:
        result = await asyncio.wait_for(coro, timeout=COMPONENT_TIMEOUT)
        return name, result
    except asyncio.TimeoutError:
        return name, {"status": "down", "detail_safe": "Health check timed out"}
    except Exception as e:
        logger.warning("health_check_error", extra={"component": name, "error": str(e)})
        return name, {"status": "down", "detail_safe": f"Check failed: {type(e).__name__}"}


async def _check_collaborator(coro) -> Dict[str, Any]:
    result = await coro
    status = _STATUS_MAP.get(result.get("status"), "down")
    return {**result, "status": status}


async def _check_prediction(service: ChatService) -> Dict[str, Any]:
    """Both prediction services' /health, as the tool registry sees them."""
    probe = await service.prober.probe()
    services = {}
    for label, base in (("a", service.notebook_a.base_url), ("b", service.notebook_b.base_url)):
        report = probe.for_service(label)
        if not base:
            services[label] = {"status": "not_configured"}
        elif report is None:
            services[label] = {"status": "down"}
        else:
            services[label] = {
                "status": "ok" if report.ok is not False else "degraded",
                "artifacts": report.artifacts,
            }

    statuses = [s["status"] for s in services.values()]
    if "down" in statuses:
        status = "down"
    elif "degraded" in statuses:
        status = "degraded"
    elif all(s == "not_configured" for s in statuses):
        status = "not_configured"
    else:
        status = "ok"
    return {"status": status, "services": services}


async def _check_llm() -> Dict[str, Any]:
    """Model configuration only; no tokens are spent."""
    if not settings.anthropic_api_key:
        return {"status": "not_configured", "detail_safe": "Degraded summaries only"}
    return {"status": "ok", "detail_safe": f"Model: {settings.llm_model}"}
