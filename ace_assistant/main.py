"""
ACE Assistant API
=================

FastAPI application: chat streaming, sandboxed SQL, tool introspection
and health checks.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ace_assistant import __version__
from ace_assistant.config import settings
from ace_assistant.core.database import init_db, reset_engine
from ace_assistant.core.errors import AceError
from ace_assistant.core.errors.middleware import ace_error_handler
from ace_assistant.core.errors.registry import error_registry
from ace_assistant.core.log_middleware import CorrelationMiddleware
from ace_assistant.core.structured_logging import setup_logging
from ace_assistant.routers import chat, health, sql, tools
from ace_assistant.services.chat_service import get_chat_service

# Initialize structured logging before any logger calls
setup_logging(log_dir=settings.log_dir, log_file=settings.log_file, log_level=settings.log_level)

logger = logging.getLogger(__name__)

API_TITLE = settings.app_name
API_VERSION = __version__


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    logger.info("Starting %s v%s", API_TITLE, API_VERSION)

    error_registry.load()
    init_db()

    yield

    logger.info("Shutting down %s", API_TITLE)
    get_chat_service().warehouse.dispose()
    reset_engine()


def create_app() -> FastAPI:
    app = FastAPI(
        title=API_TITLE,
        version=API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["x-conversation-id"],
    )

    # request_id / conversation_id in every log entry
    app.add_middleware(CorrelationMiddleware)

    app.add_exception_handler(AceError, ace_error_handler)

    # Catch-all handler so unhandled exceptions return JSON (not bare text)
    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal Server Error"},
        )

    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(chat.router, prefix="/api", tags=["chat"])
    app.include_router(sql.router, prefix="/api", tags=["sql"])
    app.include_router(tools.router, prefix="/api", tags=["tools"])

    @app.get("/")
    async def root():
        return {
            "name": API_TITLE,
            "version": API_VERSION,
            "status": "running",
            "docs": {"swagger": "/docs", "redoc": "/redoc", "openapi": "/openapi.json"},
        }

    return app


app = create_app()
