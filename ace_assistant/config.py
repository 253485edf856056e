"""
ACE Assistant Configuration
===========================

PURPOSE:
    Pydantic-Settings based configuration for the assistant backend.
    All settings can be overridden via environment variables (ACE_ prefix)
    or a local .env file.

NOTES:
    Hosting dashboards often paste secrets with wrapping quotes or a
    trailing literal "\\n"; string values are normalized on load.
"""

import logging
import re
from typing import List, Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

_QUOTE_WRAP = re.compile(r"""^(["'])(.*)\1$""", re.DOTALL)


def normalize_env_value(raw: Optional[str]) -> Optional[str]:
    """Strip whitespace, wrapping quotes and literal '\\n' sequences.

    Returns None for empty values so "unset" and "blank" behave the same.
    """
    if raw is None:
        return None
    trimmed = raw.strip()
    if not trimmed:
        return None
    unquoted = _QUOTE_WRAP.sub(r"\2", trimmed)
    cleaned = unquoted.replace("\\n", "").strip()
    return cleaned or None


class Settings(BaseSettings):
    """Runtime settings for tool orchestration, collaborators and logging."""

    app_name: str = "ACE Assistant"
    debug: bool = False

    # Relational warehouse (Postgres). Raw SELECTs go through the SQL sandbox.
    database_url: Optional[str] = None
    warehouse_timeout_s: float = 30.0
    warehouse_max_rows: int = 500

    # Conversation log store (SQLite by default)
    chat_database_url: str = "sqlite:///data/ace_chat.db"

    # REST-style tabular API (PostgREST-compatible)
    data_api_url: Optional[str] = None
    data_api_token: Optional[str] = None
    data_api_timeout_s: float = 15.0

    # Prediction services
    notebook_a_base: Optional[str] = None
    notebook_b_base: Optional[str] = None
    probe_timeout_s: float = 5.0
    prediction_timeout_s: float = 20.0
    # "open": a missing artifact flag counts as available; "closed": as unavailable
    missing_artifact_policy: Literal["open", "closed"] = "open"

    # Web search (Exa)
    exa_api_key: Optional[str] = None
    exa_api_url: str = "https://api.exa.ai"

    # External tool discovery (MCP)
    mcp_sse_url: Optional[str] = None
    mcp_http_url: Optional[str] = None

    # Model
    anthropic_api_key: Optional[str] = None
    llm_model: str = "claude-sonnet-4-20250514"
    llm_max_tokens: int = 2048
    llm_temperature: float = 0.2

    # Turn execution
    max_steps: int = 15
    tool_timeout_s: float = 30.0
    tool_log_max_keys: int = 50
    tool_result_max_chars: int = 20_000

    # Logging
    log_dir: str = "logs"
    log_file: str = "ace_assistant.jsonl"
    log_level: str = "INFO"

    cors_origins: List[str] = ["http://localhost:3000"]

    class Config:
        env_file = ".env"
        env_prefix = "ACE_"

    @field_validator(
        "database_url",
        "data_api_url",
        "data_api_token",
        "notebook_a_base",
        "notebook_b_base",
        "exa_api_key",
        "mcp_sse_url",
        "mcp_http_url",
        "anthropic_api_key",
        mode="before",
    )
    @classmethod
    def _normalize_optional(cls, value):
        if isinstance(value, str):
            return normalize_env_value(value)
        return value

    @field_validator("data_api_url", "notebook_a_base", "notebook_b_base", "exa_api_url")
    @classmethod
    def _strip_trailing_slash(cls, value: Optional[str]) -> Optional[str]:
        if value:
            return value.rstrip("/")
        return value


settings = Settings()
