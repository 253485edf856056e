"""
Structured logging with structlog.

Configures structlog to output JSON lines with rotation. Stdlib
``logging.getLogger(__name__)`` calls keep working and are enriched with
the same processors, including the per-turn correlation context below.
"""
from __future__ import annotations

import logging
import logging.handlers
import os
import sys
import time
from contextvars import ContextVar

import structlog

from ace_assistant import __version__

# ── Context vars for correlation ──────────────────────────────────────
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
conversation_id_var: ContextVar[str | None] = ContextVar("conversation_id", default=None)
turn_id_var: ContextVar[str | None] = ContextVar("turn_id", default=None)

APP_VERSION = __version__
SERVICE_NAME = "ace-assistant"

_startup_time: float = time.time()


def get_uptime_s() -> float:
    return time.time() - _startup_time


_CONTEXT_FIELDS = (
    ("request_id", request_id_var),
    ("conversation_id", conversation_id_var),
    ("turn_id", turn_id_var),
)


def _inject_context(logger_name: str, method_name: str, event_dict: dict) -> dict:
    """Structlog processor: service identity plus whichever correlation ids are set."""
    event_dict["service"] = SERVICE_NAME
    event_dict["version"] = APP_VERSION
    for key, var in _CONTEXT_FIELDS:
        value = var.get(None)
        if value:
            event_dict[key] = value
    return event_dict


def _lowercase_level(logger_name: str, method_name: str, event_dict: dict) -> dict:
    level = event_dict.get("level")
    if level:
        event_dict["level"] = level.lower()
    return event_dict


def setup_logging(
    log_dir: str = "logs",
    log_file: str = "ace_assistant.jsonl",
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
    log_level: int | str = logging.INFO,
) -> None:
    """Initialize structlog + stdlib logging with JSON output and rotation.

    Call once at startup, before any logging calls. Afterwards both
    structlog.get_logger() and logging.getLogger() emit JSON lines carrying
    request/conversation/turn ids.
    """
    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        _lowercase_level,
        structlog.stdlib.add_logger_name,
        _inject_context,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        # stdlib `extra=` fields become top-level JSON keys
        foreign_pre_chain=[*shared_processors, structlog.stdlib.ExtraAdder()],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
    )

    file_handler = None
    try:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, log_file),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
    except OSError:
        # Read-only filesystem: stderr only
        file_handler = None

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(log_level.upper() if isinstance(log_level, str) else log_level)
    root.addHandler(console_handler)
    if file_handler:
        root.addHandler(file_handler)

    for noisy in ("httpcore", "httpx", "anthropic", "mcp", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
