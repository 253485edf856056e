"""
FastAPI exception handler for AceError.

The response body is ``{"error": {code, title, message, retryable,
remediation}}``. ``message`` is the raised reason only for entries that
expose detail (sandbox, filter, configuration); everything else gets the
registry's safe message. Codes missing from the registry answer 500.
"""

import logging
from typing import Any, Dict

from fastapi import Request
from fastapi.responses import JSONResponse

from ace_assistant.core.errors import AceError
from ace_assistant.core.errors.registry import ErrorEntry, error_registry

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

UNREGISTERED_BODY = {
    "code": None,
    "title": "Internal error",
    "message": "An unexpected error occurred.",
    "retryable": False,
    "remediation": [],
}


def error_body(entry: ErrorEntry, exc: AceError) -> Dict[str, Any]:
    return {
        "code": entry.code,
        "title": entry.title,
        "message": exc.reason if entry.expose_detail else entry.safe_message,
        "retryable": entry.retryable,
        "remediation": list(entry.remediation),
    }


async def ace_error_handler(request: Request, exc: AceError) -> JSONResponse:
    entry = error_registry.get(exc.code)
    log_extra = {
        "error.code": exc.code,
        "error.kind": type(exc).__name__,
        "error.message": exc.detail,
        "path": request.url.path,
        **{f"error.ctx.{k}": v for k, v in exc.context.items()},
    }

    if entry is None:
        logger.error("unregistered_error_code", extra=log_extra)
        return JSONResponse(status_code=500, content={"error": {**UNREGISTERED_BODY, "code": exc.code}})

    logger.log(_LOG_LEVELS.get(entry.severity, logging.ERROR), entry.title, extra=log_extra)
    return JSONResponse(status_code=entry.http_status, content={"error": error_body(entry, exc)})
