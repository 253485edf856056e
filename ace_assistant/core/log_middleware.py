"""
FastAPI middleware for request id injection.

Sets request_id (and conversation_id when the client sends one) in
contextvars so structlog processors include them in every log entry,
including the tool-call entries written while a chat turn streams.
"""
from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ace_assistant.core.structured_logging import conversation_id_var, request_id_var

logger = logging.getLogger(__name__)


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Inject request_id / conversation_id into contextvars for every request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        req_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        conv_id = request.headers.get("x-conversation-id")

        rid_token = request_id_var.set(req_id)
        cid_token = conversation_id_var.set(conv_id)

        start = time.perf_counter()
        response = None
        try:
            response = await call_next(request)
        finally:
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            logger.info(
                "request_completed",
                extra={
                    "http.method": request.method,
                    "http.path": request.url.path,
                    "http.status_code": response.status_code if response else None,
                    "duration_ms": duration_ms,
                },
            )
            request_id_var.reset(rid_token)
            conversation_id_var.reset(cid_token)

        response.headers["x-request-id"] = req_id
        return response
