"""
Tests for the Anthropic provider: chunk order, request shape and SDK
error mapping. The SDK client is mocked; no network.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock

import anthropic
import httpx
import pytest

from ace_assistant.services.llm_providers.anthropic import AnthropicProvider
from ace_assistant.services.llm_providers.base import (
    AuthenticationError,
    LLMProviderError,
    RateLimitError,
    StepFinished,
    TextChunk,
    ToolUseChunk,
)

_REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


class FakeStream:
    """Stands in for the async context manager returned by messages.stream."""

    def __init__(self, events=(), final=None, error=None):
        self.events = list(events)
        self.final = final
        self.error = error

    async def __aenter__(self):
        if self.error is not None:
            raise self.error
        return self

    async def __aexit__(self, *exc):
        return False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for event in self.events:
            yield event

    async def get_final_message(self):
        return self.final


def _final(content=(), stop_reason="end_turn"):
    return SimpleNamespace(
        content=list(content),
        stop_reason=stop_reason,
        usage=SimpleNamespace(input_tokens=12, output_tokens=7),
    )


def _provider(stream):
    client = MagicMock()
    client.messages.stream = MagicMock(return_value=stream)
    return AnthropicProvider(client=client), client


async def _chunks(provider, **kwargs):
    out = []
    async for chunk in provider.stream_step([{"role": "user", "content": "hi"}], **kwargs):
        out.append(chunk)
    return out


class TestStreamStep:
    @pytest.mark.asyncio
    async def test_text_then_tools_then_finish(self):
        stream = FakeStream(
            events=[
                SimpleNamespace(type="text", text="Checking "),
                SimpleNamespace(type="content_block_stop"),
                SimpleNamespace(type="text", text="now."),
            ],
            final=_final(
                [
                    SimpleNamespace(type="text", text="Checking now."),
                    SimpleNamespace(type="tool_use", id="tu_1", name="runSql", input={"sql": "select 1"}),
                ],
                stop_reason="tool_use",
            ),
        )
        provider, _ = _provider(stream)

        chunks = await _chunks(provider)

        assert chunks == [
            TextChunk("Checking "),
            TextChunk("now."),
            ToolUseChunk(id="tu_1", name="runSql", input={"sql": "select 1"}),
            StepFinished(stop_reason="tool_use", usage={"input_tokens": 12, "output_tokens": 7}),
        ]

    @pytest.mark.asyncio
    async def test_request_shape(self):
        provider, client = _provider(FakeStream(final=_final()))
        tools = [{"name": "runSql", "description": "d", "input_schema": {"type": "object"}}]

        await _chunks(provider, system_prompt="Be brief.", tools=tools)

        kwargs = client.messages.stream.call_args.kwargs
        assert kwargs["system"] == "Be brief."
        assert kwargs["tools"] == tools
        assert kwargs["messages"] == [{"role": "user", "content": "hi"}]
        assert kwargs["model"] == provider.model_name

    @pytest.mark.asyncio
    async def test_optional_fields_omitted(self):
        provider, client = _provider(FakeStream(final=_final()))
        await _chunks(provider)
        kwargs = client.messages.stream.call_args.kwargs
        assert "system" not in kwargs
        assert "tools" not in kwargs


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_rate_limit(self):
        error = anthropic.RateLimitError(
            "slow down", response=httpx.Response(429, request=_REQUEST), body=None
        )
        provider, _ = _provider(FakeStream(error=error))
        with pytest.raises(RateLimitError) as exc_info:
            await _chunks(provider)
        assert exc_info.value.original_error is error

    @pytest.mark.asyncio
    async def test_authentication(self):
        error = anthropic.AuthenticationError(
            "bad key", response=httpx.Response(401, request=_REQUEST), body=None
        )
        provider, _ = _provider(FakeStream(error=error))
        with pytest.raises(AuthenticationError):
            await _chunks(provider)

    @pytest.mark.asyncio
    async def test_connection_error(self):
        provider, _ = _provider(FakeStream(error=anthropic.APIConnectionError(request=_REQUEST)))
        with pytest.raises(LLMProviderError) as exc_info:
            await _chunks(provider)
        assert exc_info.value.provider == "anthropic"

    def test_missing_key(self):
        with pytest.raises(AuthenticationError):
            AnthropicProvider()


class TestModelInfo:
    def test_reports_tools_capability(self):
        provider, _ = _provider(FakeStream(final=_final()))
        info = provider.get_model_info()
        assert info["provider"] == "anthropic"
        assert "tools" in info["capabilities"]
