"""
Anthropic Claude LLM Provider
==============================

Anthropic implementation of BaseLLMProvider using the official async SDK.
Text is relayed from ``messages.stream`` as it arrives; tool_use blocks
are read from the final message once the step completes.
"""

from typing import Any, AsyncIterator, Dict, List, Optional

from anthropic import (
    AsyncAnthropic,
    APIError,
    RateLimitError as AnthropicRateLimitError,
    AuthenticationError as AnthropicAuthError,
)

from ace_assistant.config import settings
from .base import (
    AuthenticationError,
    BaseLLMProvider,
    LLMProviderError,
    ModelChunk,
    RateLimitError,
    StepFinished,
    TextChunk,
    ToolUseChunk,
)


SUPPORTED_MODELS = {
    "claude-sonnet-4-20250514": {"context": 200_000},
    "claude-opus-4-20250514": {"context": 200_000},
    "claude-3-5-haiku-20241022": {"context": 200_000},
}

DEFAULT_MODEL = "claude-sonnet-4-20250514"


class AnthropicProvider(BaseLLMProvider):
    """Anthropic Messages API with tool use."""

    name = "anthropic"

    def __init__(self, client: Optional[AsyncAnthropic] = None):
        if client is None and not settings.anthropic_api_key:
            raise AuthenticationError(
                "Anthropic API key not found. Set ACE_ANTHROPIC_API_KEY in environment.",
                provider="anthropic",
            )

        self.client = client or AsyncAnthropic(api_key=settings.anthropic_api_key)
        self.model_name = settings.llm_model or DEFAULT_MODEL
        self.max_tokens = settings.llm_max_tokens
        self.temperature = settings.llm_temperature

    async def stream_step(
        self,
        messages: List[Dict[str, Any]],
        system_prompt: Optional[str] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> AsyncIterator[ModelChunk]:
        try:
            async with self.client.messages.stream(
                **self._build_request_kwargs(messages, system_prompt, tools)
            ) as stream:
                async for event in stream:
                    if event.type == "text" and event.text:
                        yield TextChunk(event.text)
                final = await stream.get_final_message()

        except AnthropicRateLimitError as e:
            raise RateLimitError(
                "Anthropic API rate limit exceeded during streaming.",
                provider="anthropic",
                original_error=e,
            )
        except AnthropicAuthError as e:
            raise AuthenticationError(
                "Anthropic API key is invalid.",
                provider="anthropic",
                original_error=e,
            )
        except APIError as e:
            raise LLMProviderError(
                f"Anthropic streaming error: {str(e)}",
                provider="anthropic",
                original_error=e,
            )

        for block in final.content:
            if block.type == "tool_use":
                yield ToolUseChunk(id=block.id, name=block.name, input=dict(block.input or {}))

        usage = {}
        if final.usage is not None:
            usage = {
                "input_tokens": final.usage.input_tokens,
                "output_tokens": final.usage.output_tokens,
            }
        yield StepFinished(stop_reason=final.stop_reason, usage=usage)

    def get_model_info(self) -> Dict[str, Any]:
        """Return Anthropic model metadata."""
        model_info = SUPPORTED_MODELS.get(self.model_name, {"context": 200_000})

        return {
            "provider": "anthropic",
            "model": self.model_name,
            "capabilities": ["stream", "tools"],
            "max_context_window": model_info["context"],
        }

    def _build_request_kwargs(
        self,
        messages: List[Dict[str, Any]],
        system_prompt: Optional[str],
        tools: Optional[List[Dict[str, Any]]],
    ) -> dict:
        """Build keyword arguments for messages.stream."""
        kwargs: dict = {
            "model": self.model_name,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": messages,
        }
        if system_prompt:
            kwargs["system"] = system_prompt
        if tools:
            kwargs["tools"] = tools
        return kwargs
