"""
LLM Provider Base Class
=======================

Abstract base class, stream chunk types and exceptions for model
providers. One call to ``stream_step`` is one model step: text deltas as
they arrive, then every tool call the model requested, then a single
StepFinished.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Union


class LLMProviderError(Exception):
    """Base exception for LLM provider errors."""

    def __init__(self, message: str, provider: str = "unknown", original_error: Exception = None):
        self.message = message
        self.provider = provider
        self.original_error = original_error
        super().__init__(self.message)


class RateLimitError(LLMProviderError):
    """Raised when provider rate limit is exceeded."""
    pass


class AuthenticationError(LLMProviderError):
    """Raised when API key is invalid or missing."""
    pass


@dataclass(frozen=True)
class TextChunk:
    text: str


@dataclass(frozen=True)
class ToolUseChunk:
    id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StepFinished:
    stop_reason: Optional[str] = None
    usage: Dict[str, int] = field(default_factory=dict)


ModelChunk = Union[TextChunk, ToolUseChunk, StepFinished]


class BaseLLMProvider(ABC):
    """
    Abstract base class for tool-calling model providers.

    Implementations must handle:
    - Incremental text streaming
    - Tool definitions and tool_use/tool_result message history
    - Error mapping to the exceptions above
    """

    name: str = "unknown"

    @abstractmethod
    def stream_step(
        self,
        messages: List[Dict[str, Any]],
        system_prompt: Optional[str] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> AsyncIterator[ModelChunk]:
        """
        Run one model step.

        Args:
            messages: Conversation so far in Messages API shape
            system_prompt: Optional system instructions
            tools: Tool definitions ({name, description, input_schema})

        Yields:
            TextChunk for each text delta, ToolUseChunk for each requested
            tool call, and a final StepFinished.

        Raises:
            LLMProviderError: On request or stream failure
        """

    @abstractmethod
    def get_model_info(self) -> Dict[str, Any]:
        """Return provider and model metadata."""
