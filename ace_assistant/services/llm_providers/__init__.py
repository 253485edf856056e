"""
Model providers for the chat turn loop.

``get_provider()`` returns the configured provider, or None when no model
key is set so callers can switch to degraded mode.
"""

import logging
from typing import Optional

from ace_assistant.config import settings
from ace_assistant.services.llm_providers.base import (
    AuthenticationError,
    BaseLLMProvider,
    LLMProviderError,
    ModelChunk,
    RateLimitError,
    StepFinished,
    TextChunk,
    ToolUseChunk,
)

logger = logging.getLogger(__name__)

__all__ = [
    "AuthenticationError",
    "BaseLLMProvider",
    "LLMProviderError",
    "ModelChunk",
    "RateLimitError",
    "StepFinished",
    "TextChunk",
    "ToolUseChunk",
    "get_provider",
]


def get_provider() -> Optional[BaseLLMProvider]:
    if not settings.anthropic_api_key:
        logger.info("llm_not_configured")
        return None
    from ace_assistant.services.llm_providers.anthropic import AnthropicProvider

    return AnthropicProvider()
