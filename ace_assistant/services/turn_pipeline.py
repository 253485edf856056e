"""
Execution & Logging Pipeline
============================

Runs one chat turn against the model as an async event sequence:

    AWAITING_MODEL -> (TOOL_CALL -> TOOL_RESULT)* -> TEXT_STREAM
        -> DONE | DONE_WITH_FALLBACK          (ABORTED on cancellation)

Each model step streams text as TextDelta events. Tool calls requested in
a step are logged before they run, executed against the registry and
logged again with a JSON-safe snapshot of the result; the results go
back to the model as tool_result blocks for the next step. The loop
stops when a step requests no tools or the step ceiling is reached.

When the model produced no text, the fallback synthesizer answers from
the tool log. The stream always ends with TurnCompleted; ``render()``
turns it into the text/plain body with the metadata block appended after
TOOL_LOG_SENTINEL.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from ace_assistant.config import settings
from ace_assistant.core.errors import AceError, StreamingError
from ace_assistant.core.serialization import to_jsonable
from ace_assistant.models.tools import ToolCallRequest, ToolInvocationRecord, output_payload
from ace_assistant.services.fallback_synthesizer import GENERIC_APOLOGY, synthesize_from_logs
from ace_assistant.services.llm_providers.base import (
    BaseLLMProvider,
    LLMProviderError,
    ModelChunk,
    TextChunk,
    ToolUseChunk,
)
from ace_assistant.services.tool_registry import ToolRegistry

logger = logging.getLogger(__name__)

TOOL_LOG_SENTINEL = "\n\n<!--ACE_TOOL_LOG-->"
STREAM_ERROR_MARKER = "\n[stream error]\n"
UNAVAILABLE_MESSAGE = "AI is temporarily unavailable."


class TurnState(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    TEXT_STREAM = "text_stream"
    DONE = "done"
    DONE_WITH_FALLBACK = "done_with_fallback"
    ABORTED = "aborted"


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallStarted:
    id: str
    name: str
    input: Any = None


@dataclass(frozen=True)
class ToolCallFinished:
    id: str
    name: str
    output: Any = None
    error: Optional[str] = None
    duration_ms: Optional[float] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class TurnCompleted:
    """Terminal event. ``text`` is the visible reply as persisted."""

    text: str
    tool_log: List[Dict[str, Any]] = field(default_factory=list)
    state: TurnState = TurnState.DONE
    steps: int = 0
    fallback: bool = False
    tokens_emitted: bool = False

    def metadata(self) -> Dict[str, Any]:
        return {
            "tool_log": self.tool_log,
            "steps": self.steps,
            "state": self.state.value,
            "fallback": self.fallback,
        }


TurnEvent = Union[TextDelta, ToolCallStarted, ToolCallFinished, TurnCompleted]


def render_metadata(completed: TurnCompleted) -> str:
    return TOOL_LOG_SENTINEL + json.dumps(completed.metadata(), ensure_ascii=False)


def split_tool_log(payload: str) -> Tuple[str, Optional[Dict[str, Any]]]:
    """Separate reply text from the trailing metadata block.

    Returns ``(text, None)`` when no well-formed block is present.
    """
    index = payload.rfind(TOOL_LOG_SENTINEL)
    if index < 0:
        return payload, None
    try:
        metadata = json.loads(payload[index + len(TOOL_LOG_SENTINEL):])
    except ValueError:
        return payload, None
    if not isinstance(metadata, dict):
        return payload, None
    return payload[:index], metadata


class TurnAborted(Exception):
    """The abort signal fired while the turn was waiting."""


class TurnStream:
    """Async event sequence for one turn. Can be iterated only once."""

    def __init__(self, events: AsyncIterator[TurnEvent]):
        self._events = events
        self._consumed = False
        self.completed: Optional[TurnCompleted] = None

    def __aiter__(self) -> AsyncIterator[TurnEvent]:
        if self._consumed:
            raise RuntimeError("Turn stream already consumed.")
        self._consumed = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[TurnEvent]:
        try:
            async for event in self._events:
                if isinstance(event, TurnCompleted):
                    self.completed = event
                yield event
        finally:
            # early close reaches the turn's own cleanup
            aclose = getattr(self._events, "aclose", None)
            if aclose is not None:
                await aclose()

    async def render(self) -> AsyncIterator[str]:
        """Visible text chunks, then the metadata block."""
        events = self.__aiter__()
        try:
            async for event in events:
                if isinstance(event, TextDelta):
                    yield event.text
                elif isinstance(event, TurnCompleted):
                    yield render_metadata(event)
        finally:
            await events.aclose()

    async def collect(self) -> TurnCompleted:
        async for _ in self:
            pass
        return self.completed


CompletionHook = Callable[[TurnCompleted], Awaitable[None]]


async def _next_chunk(iterator: AsyncIterator[ModelChunk]) -> Optional[ModelChunk]:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


async def until_aborted(awaitable: Awaitable[Any], abort: asyncio.Event) -> Any:
    """Await ``awaitable`` unless ``abort`` fires first (then TurnAborted)."""
    if abort.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise TurnAborted()

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(abort.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task in done:
        return task.result()
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    raise TurnAborted()


class ToolRunner:
    """Executes tool calls against a registry and records the outcome.

    Unknown tools, invalid input, timeouts and executor failures all end
    up as ``{"error": ...}`` outputs on the record. Only TurnAborted
    propagates.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        tool_timeout_s: Optional[float] = None,
        max_keys: Optional[int] = None,
    ):
        self.registry = registry
        self.tool_timeout_s = tool_timeout_s if tool_timeout_s is not None else settings.tool_timeout_s
        self.max_keys = max_keys if max_keys is not None else settings.tool_log_max_keys

    def record_for(self, call: ToolCallRequest) -> ToolInvocationRecord:
        return ToolInvocationRecord(
            id=call.id,
            name=call.name,
            input=to_jsonable(call.input, max_keys=self.max_keys),
        )

    async def execute(
        self,
        call: ToolCallRequest,
        record: ToolInvocationRecord,
        abort: Optional[asyncio.Event] = None,
    ) -> ToolInvocationRecord:
        start = time.perf_counter()
        output = await self._invoke(call, abort or asyncio.Event())
        record.duration_ms = round((time.perf_counter() - start) * 1000, 2)

        payload = to_jsonable(output_payload(output), max_keys=self.max_keys)
        record.output = payload
        if isinstance(payload, dict) and payload.get("error"):
            record.error = str(payload["error"])

        logger.info(
            "tool_call_finished",
            extra={
                "tool": call.name,
                "tool_call_id": call.id,
                "duration_ms": record.duration_ms,
                "is_error": record.error is not None,
            },
        )
        return record

    async def _invoke(self, call: ToolCallRequest, abort: asyncio.Event) -> Any:
        descriptor = self.registry.get(call.name)
        if descriptor is None:
            return {"error": f"Unknown tool: {call.name}"}

        try:
            arguments = descriptor.parse_input(call.input)
        except PydanticValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in err['loc']) or 'input'}: {err['msg']}"
                for err in e.errors()
            )
            return {"error": f"Invalid input for {call.name}: {problems}"}
        except (TypeError, ValueError) as e:
            return {"error": f"Invalid input for {call.name}: {e}"}

        try:
            return await asyncio.wait_for(
                until_aborted(descriptor.executor(arguments), abort),
                timeout=self.tool_timeout_s,
            )
        except asyncio.TimeoutError:
            return {"error": f"{call.name} timed out after {self.tool_timeout_s:g}s."}
        except AceError as e:
            logger.warning(
                "tool_call_error",
                extra={"tool": call.name, "error_code": e.code, "error": e.reason},
            )
            return {"error": e.reason}
        except TurnAborted:
            raise
        except Exception as e:
            logger.exception("tool_call_crashed", extra={"tool": call.name})
            return {"error": f"{call.name} failed: {e}"}


@dataclass
class _TurnProgress:
    state: TurnState = TurnState.AWAITING_MODEL
    steps: int = 0
    tool_log: List[ToolInvocationRecord] = field(default_factory=list)
    model_text: List[str] = field(default_factory=list)
    visible: List[str] = field(default_factory=list)
    failed: bool = False
    fallback: bool = False

    def log_dicts(self) -> List[Dict[str, Any]]:
        return [record.to_dict() for record in self.tool_log]

    def completion(self) -> TurnCompleted:
        return TurnCompleted(
            text="".join(self.visible),
            tool_log=self.log_dicts(),
            state=self.state,
            steps=self.steps,
            fallback=self.fallback,
            tokens_emitted=bool("".join(self.model_text)),
        )


class TurnPipeline:
    """Step-bounded tool-use loop for one chat turn."""

    def __init__(
        self,
        provider: BaseLLMProvider,
        registry: ToolRegistry,
        *,
        system_prompt: Optional[str] = None,
        max_steps: Optional[int] = None,
        tool_timeout_s: Optional[float] = None,
        max_keys: Optional[int] = None,
        result_max_chars: Optional[int] = None,
        on_complete: Optional[CompletionHook] = None,
    ):
        self.provider = provider
        self.registry = registry
        self.system_prompt = system_prompt
        self.max_steps = max_steps if max_steps is not None else settings.max_steps
        self.runner = ToolRunner(registry, tool_timeout_s=tool_timeout_s, max_keys=max_keys)
        self.result_max_chars = (
            result_max_chars if result_max_chars is not None else settings.tool_result_max_chars
        )
        self.on_complete = on_complete

    def run(
        self,
        messages: List[Dict[str, Any]],
        question: str = "",
        abort: Optional[asyncio.Event] = None,
    ) -> TurnStream:
        """Start a turn. ``messages`` ends with the user's question."""
        return TurnStream(self._run(list(messages), question, abort or asyncio.Event()))

    async def _run(
        self,
        messages: List[Dict[str, Any]],
        question: str,
        abort: asyncio.Event,
    ) -> AsyncIterator[TurnEvent]:
        progress = _TurnProgress()
        completed: Optional[TurnCompleted] = None
        loop = self._loop(messages, abort, progress)
        try:
            try:
                async for event in loop:
                    yield event
            except TurnAborted:
                progress.state = TurnState.ABORTED
                logger.info("turn_aborted", extra={"steps": progress.steps, "tool_calls": len(progress.tool_log)})
            except Exception:
                logger.exception("turn_failed", extra={"steps": progress.steps})
                progress.failed = True

            reply = self._closing_reply(progress, question)
            if reply:
                progress.visible.append(reply)
                yield TextDelta(reply)

            completed = progress.completion()
            await self._persist(completed)
            yield completed
        finally:
            if completed is None:
                # consumer went away mid-turn
                await loop.aclose()
                progress.state = TurnState.ABORTED
                await self._persist(progress.completion())

    async def _loop(
        self,
        messages: List[Dict[str, Any]],
        abort: asyncio.Event,
        progress: _TurnProgress,
    ) -> AsyncIterator[TurnEvent]:
        tools = self.registry.model_tools() or None

        while True:
            if progress.steps >= self.max_steps:
                logger.warning("turn_step_ceiling_reached", extra={"steps": progress.steps})
                return
            if abort.is_set():
                raise TurnAborted()

            progress.steps += 1
            progress.state = TurnState.AWAITING_MODEL
            step_text: List[str] = []
            calls: List[ToolCallRequest] = []

            chunks = self._model_chunks(messages, tools, abort)
            try:
                async for chunk in chunks:
                    if isinstance(chunk, TextChunk):
                        progress.state = TurnState.TEXT_STREAM
                        step_text.append(chunk.text)
                        progress.model_text.append(chunk.text)
                        progress.visible.append(chunk.text)
                        yield TextDelta(chunk.text)
                    elif isinstance(chunk, ToolUseChunk):
                        calls.append(ToolCallRequest(chunk.id, chunk.name, chunk.input))
            except (LLMProviderError, StreamingError) as e:
                logger.warning(
                    "turn_stream_failed",
                    extra={"step": progress.steps, "error": f"{type(e).__name__}: {e}"},
                )
                progress.visible.append(STREAM_ERROR_MARKER)
                yield TextDelta(STREAM_ERROR_MARKER)
                return
            finally:
                await chunks.aclose()

            if not calls:
                return

            messages.append({"role": "assistant", "content": self._assistant_content(step_text, calls)})
            results = []
            for call in calls:
                progress.state = TurnState.TOOL_CALL
                record = self.runner.record_for(call)
                progress.tool_log.append(record)
                logger.info("tool_call_started", extra={"tool": call.name, "tool_call_id": call.id})
                yield ToolCallStarted(record.id, record.name, record.input)

                await self.runner.execute(call, record, abort)
                progress.state = TurnState.TOOL_RESULT
                yield ToolCallFinished(record.id, record.name, record.output, record.error, record.duration_ms)
                results.append(self._tool_result_block(record))
                if abort.is_set():
                    raise TurnAborted()

            messages.append({"role": "user", "content": results})

    def _closing_reply(self, progress: _TurnProgress, question: str) -> Optional[str]:
        """Decide the final state; return text to append to the reply, if any."""
        if progress.failed:
            progress.state = TurnState.DONE_WITH_FALLBACK
            progress.fallback = True
            return UNAVAILABLE_MESSAGE
        if progress.state == TurnState.ABORTED:
            return None
        if "".join(progress.model_text).strip():
            progress.state = TurnState.DONE
            return None

        progress.state = TurnState.DONE_WITH_FALLBACK
        progress.fallback = True
        logger.info("turn_fallback_used", extra={"tool_calls": len(progress.tool_log)})
        return synthesize_from_logs(progress.log_dicts(), question) or GENERIC_APOLOGY

    async def _model_chunks(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]],
        abort: asyncio.Event,
    ) -> AsyncIterator[ModelChunk]:
        iterator = self.provider.stream_step(messages, self.system_prompt, tools).__aiter__()
        try:
            while True:
                chunk = await until_aborted(_next_chunk(iterator), abort)
                if chunk is None:
                    return
                yield chunk
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    @staticmethod
    def _assistant_content(step_text: List[str], calls: List[ToolCallRequest]) -> List[Dict[str, Any]]:
        content: List[Dict[str, Any]] = []
        text = "".join(step_text)
        if text:
            content.append({"type": "text", "text": text})
        for call in calls:
            content.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.input})
        return content

    def _tool_result_block(self, record: ToolInvocationRecord) -> Dict[str, Any]:
        content = json.dumps(record.output, ensure_ascii=False)
        if len(content) > self.result_max_chars:
            content = content[: self.result_max_chars] + " ...[truncated]"
        block: Dict[str, Any] = {"type": "tool_result", "tool_use_id": record.id, "content": content}
        if record.error is not None:
            block["is_error"] = True
        return block

    async def _persist(self, completed: TurnCompleted) -> None:
        if self.on_complete is None:
            return
        if completed.state == TurnState.ABORTED and not completed.tokens_emitted:
            logger.info("turn_not_persisted", extra={"reason": "aborted_before_output"})
            return
        try:
            await self.on_complete(completed)
        except Exception:
            logger.exception("turn_persist_failed")
