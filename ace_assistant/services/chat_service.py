"""
Chat Service
============

Per-request wiring for a chat turn:

1. Upsert the conversation and store the user's message.
2. Probe the prediction services and discover external tools.
3. Build the tool registry from that probe.
4. Run the turn pipeline; the assistant reply and its tool log are
   persisted when the turn completes.

Without a model key the service answers in degraded mode: it runs the
violations summary tool once and returns a short digest of the rows.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from ace_assistant.config import settings
from ace_assistant.core.structured_logging import conversation_id_var, turn_id_var
from ace_assistant.models.state import MessageRole
from ace_assistant.models.tools import ToolCallRequest
from ace_assistant.prompts.system import SYSTEM_PROMPT
from ace_assistant.services.capability_prober import CapabilityProber
from ace_assistant.services.conversation_store import ConversationStore
from ace_assistant.services.data_api import DataApiClient
from ace_assistant.services.external_tools import ExternalToolSource
from ace_assistant.services.fallback_synthesizer import compute_summary, render_overview, summarize_tool_logs
from ace_assistant.services.llm_providers import BaseLLMProvider, get_provider
from ace_assistant.services.prediction_clients import NotebookAClient, NotebookBClient
from ace_assistant.services.tool_registry import ToolRegistry, build_tools
from ace_assistant.services.turn_pipeline import (
    TextDelta,
    ToolCallFinished,
    ToolCallStarted,
    ToolRunner,
    TurnCompleted,
    TurnEvent,
    TurnPipeline,
    TurnState,
    TurnStream,
)
from ace_assistant.services.warehouse import Warehouse
from ace_assistant.services.web_search import WebSearchClient

logger = logging.getLogger(__name__)

NO_MODEL_MESSAGE = "AI is unavailable. Please configure ACE_ANTHROPIC_API_KEY."
DEGRADED_TOOL = "getViolationsSummary"
HISTORY_LIMIT = 40
MODEL_ROLES = ("user", "assistant")


@dataclass
class ChatTurn:
    conversation_id: str
    stream: TurnStream
    degraded: bool = False


def normalize_messages(messages: Sequence[Dict[str, Any]], question: Optional[str] = None) -> List[Dict[str, str]]:
    """Shape client or stored history into alternating user/assistant turns.

    Unknown roles and empty messages are dropped, consecutive messages
    from the same role are joined, and the sequence starts with a user
    message. ``question`` is appended unless it is already the last user
    message.
    """
    shaped: List[Dict[str, str]] = []
    for message in messages:
        role = message.get("role")
        content = message.get("content")
        if role not in MODEL_ROLES or not isinstance(content, str) or not content.strip():
            continue
        if shaped and shaped[-1]["role"] == role:
            shaped[-1]["content"] += "\n\n" + content
        else:
            shaped.append({"role": role, "content": content})

    if question and question.strip():
        if not shaped or shaped[-1]["role"] != "user":
            shaped.append({"role": "user", "content": question})
        elif shaped[-1]["content"].strip() != question.strip():
            shaped[-1]["content"] += "\n\n" + question

    while shaped and shaped[0]["role"] != "user":
        shaped.pop(0)
    return shaped


class ChatService:
    """Builds the per-request tool set and runs chat turns."""

    def __init__(
        self,
        *,
        warehouse: Optional[Warehouse] = None,
        data_api: Optional[DataApiClient] = None,
        search: Optional[WebSearchClient] = None,
        notebook_a: Optional[NotebookAClient] = None,
        notebook_b: Optional[NotebookBClient] = None,
        prober: Optional[CapabilityProber] = None,
        external: Optional[ExternalToolSource] = None,
        store: Optional[ConversationStore] = None,
        provider_factory: Optional[Callable[[], Optional[BaseLLMProvider]]] = None,
    ):
        self.warehouse = warehouse or Warehouse()
        self.data_api = data_api or DataApiClient()
        self.search = search or WebSearchClient()
        self.notebook_a = notebook_a or NotebookAClient()
        self.notebook_b = notebook_b or NotebookBClient()
        self.prober = prober or CapabilityProber()
        self.external = external or ExternalToolSource()
        self.store = store or ConversationStore()
        self.provider_factory = provider_factory or get_provider

    async def build_registry(self) -> ToolRegistry:
        """Fresh probe and discovery; nothing about readiness is reused across requests."""
        probe, external = await asyncio.gather(self.prober.probe(), self.external.discover())
        return build_tools(
            probe,
            warehouse=self.warehouse,
            data_api=self.data_api,
            search=self.search,
            notebook_a=self.notebook_a,
            notebook_b=self.notebook_b,
            external=external,
            missing_policy=settings.missing_artifact_policy,
        )

    async def start_turn(
        self,
        question: Optional[str] = None,
        *,
        messages: Optional[Sequence[Dict[str, Any]]] = None,
        conversation_id: Optional[str] = None,
        title: Optional[str] = None,
        route_id: Optional[str] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
        abort: Optional[asyncio.Event] = None,
    ) -> ChatTurn:
        conversation_id, persist = await self._open_conversation(conversation_id, title)
        conversation_id_var.set(conversation_id)
        turn_id_var.set(uuid.uuid4().hex[:12])

        question = (question or "").strip() or self._last_user_text(messages or [])
        if persist and question:
            persist = await self._store_user_message(conversation_id, question)

        on_complete = self._persist_hook(conversation_id) if persist else None
        registry = await self.build_registry()

        provider = self.provider_factory()
        if provider is None:
            logger.info("chat_degraded_mode", extra={"reason": "no_model_key"})
            events = self._degraded_turn(registry, route_id, start, end, on_complete)
            return ChatTurn(conversation_id=conversation_id, stream=TurnStream(events), degraded=True)

        if messages:
            history = normalize_messages(messages, question)
        else:
            stored = await self._history(conversation_id) if persist else []
            history = normalize_messages(stored, question)

        pipeline = TurnPipeline(provider, registry, system_prompt=SYSTEM_PROMPT, on_complete=on_complete)
        logger.info("chat_turn_started", extra={"tools": len(registry), "history": len(history)})
        return ChatTurn(conversation_id=conversation_id, stream=pipeline.run(history, question, abort))

    async def list_tools(self) -> List[Dict[str, object]]:
        registry = await self.build_registry()
        return registry.describe()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _open_conversation(self, conversation_id: Optional[str], title: Optional[str]):
        try:
            conversation = await self.store.upsert_conversation(conversation_id, title)
        except (SQLAlchemyError, TimeoutError) as e:
            logger.warning("conversation_store_unavailable", extra={"error": f"{type(e).__name__}: {e}"})
            return conversation_id or uuid.uuid4().hex, False
        return conversation.id, True

    async def _store_user_message(self, conversation_id: str, content: str) -> bool:
        try:
            await self.store.add_message(conversation_id, MessageRole.USER, content)
        except (SQLAlchemyError, TimeoutError, ValueError) as e:
            logger.warning("user_message_not_persisted", extra={"error": f"{type(e).__name__}: {e}"})
            return False
        return True

    async def _history(self, conversation_id: str) -> List[Dict[str, str]]:
        try:
            return await self.store.history(conversation_id, limit=HISTORY_LIMIT)
        except (SQLAlchemyError, TimeoutError) as e:
            logger.warning("conversation_history_unavailable", extra={"error": f"{type(e).__name__}: {e}"})
            return []

    def _persist_hook(self, conversation_id: str):
        async def _persist(completed: TurnCompleted) -> None:
            await self.store.add_message(
                conversation_id,
                MessageRole.ASSISTANT,
                completed.text,
                meta=completed.metadata(),
            )

        return _persist

    @staticmethod
    def _last_user_text(messages: Sequence[Dict[str, Any]]) -> str:
        for message in reversed(messages):
            if message.get("role") == "user" and isinstance(message.get("content"), str):
                return message["content"].strip()
        return ""

    # ------------------------------------------------------------------
    # Degraded mode
    # ------------------------------------------------------------------

    async def _degraded_turn(
        self,
        registry: ToolRegistry,
        route_id: Optional[str],
        start: Optional[str],
        end: Optional[str],
        on_complete,
    ) -> AsyncIterator[TurnEvent]:
        arguments = {"routeId": route_id, "start": start, "end": end}
        call = ToolCallRequest(
            id=f"degraded_{uuid.uuid4().hex[:8]}",
            name=DEGRADED_TOOL,
            input={key: value for key, value in arguments.items() if value},
        )
        runner = ToolRunner(registry)
        record = runner.record_for(call)
        yield ToolCallStarted(record.id, record.name, record.input)
        await runner.execute(call, record)
        yield ToolCallFinished(record.id, record.name, record.output, record.error, record.duration_ms)

        log = [record.to_dict()]
        if record.error is not None:
            text = NO_MODEL_MESSAGE
        else:
            text = render_overview(summarize_tool_logs(log) or compute_summary([]))
        yield TextDelta(text)

        completed = TurnCompleted(
            text=text,
            tool_log=log,
            state=TurnState.DONE_WITH_FALLBACK,
            steps=0,
            fallback=True,
        )
        if on_complete is not None:
            try:
                await on_complete(completed)
            except Exception:
                logger.exception("turn_persist_failed")
        yield completed


_chat_service: Optional[ChatService] = None


def get_chat_service() -> ChatService:
    """FastAPI dependency: process-wide service (clients are stateless, the ToolCache is shared)."""
    global _chat_service
    if _chat_service is None:
        _chat_service = ChatService()
    return _chat_service
