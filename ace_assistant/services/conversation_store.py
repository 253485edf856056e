"""
Conversation Store
==================

CRUD for conversations and messages. The SQLModel session work is
synchronous; the async methods run it on a worker thread via run_sync so
persistence never blocks a streaming turn.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session as DBSession, desc, select

from ace_assistant.core.async_utils import run_sync
from ace_assistant.core.database import get_engine
from ace_assistant.models.state import (
    Conversation,
    ConversationRead,
    Message,
    MessageRead,
    MessageRole,
)

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 50
STORE_TIMEOUT_S = 10.0


def _title_from(content: str) -> Optional[str]:
    first_line = content.strip().split("\n")[0].strip()
    if not first_line:
        return None
    if len(first_line) > TITLE_MAX_CHARS:
        return first_line[:TITLE_MAX_CHARS] + "..."
    return first_line


def _conversation_read(conversation: Conversation) -> ConversationRead:
    return ConversationRead(
        id=conversation.id,
        title=conversation.title,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
    )


def _message_read(message: Message) -> MessageRead:
    return MessageRead(
        id=message.id,
        conversation_id=message.conversation_id,
        role=message.role,
        content=message.content,
        created_at=message.created_at,
        meta=message.meta,
    )


class ConversationStore:
    """Conversation log backed by the chat database."""

    def __init__(self, engine: Optional[Engine] = None, timeout: float = STORE_TIMEOUT_S):
        self._engine = engine
        self.timeout = timeout

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    # =========================================================================
    # Sync operations
    # =========================================================================

    def upsert_conversation_sync(
        self,
        conversation_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> ConversationRead:
        """Return the conversation, creating it (with the given id) if needed.

        An existing conversation gets its title replaced when a different
        one is supplied; otherwise only ``updated_at`` moves.
        """
        with DBSession(self.engine) as db:
            conversation = db.get(Conversation, conversation_id) if conversation_id else None
            if conversation is None:
                conversation = Conversation(title=title)
                if conversation_id:
                    conversation.id = conversation_id
            elif title is not None and title != conversation.title:
                conversation.title = title
            conversation.updated_at = datetime.now(timezone.utc)

            db.add(conversation)
            db.commit()
            db.refresh(conversation)
            return _conversation_read(conversation)

    def add_message_sync(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> MessageRead:
        """
        Add a message to a conversation.

        Side effects:
        - Updates conversation.updated_at
        - Sets the conversation title from the first user message if unset

        Raises:
            ValueError: If the conversation does not exist
        """
        with DBSession(self.engine) as db:
            conversation = db.get(Conversation, conversation_id)
            if conversation is None:
                raise ValueError(f"Conversation {conversation_id} not found")

            message = Message(
                conversation_id=conversation_id,
                role=role,
                content=content,
                meta=meta,
            )
            conversation.updated_at = datetime.now(timezone.utc)
            if not conversation.title and role == MessageRole.USER:
                conversation.title = _title_from(content)

            db.add(message)
            db.add(conversation)
            db.commit()
            db.refresh(message)
            return _message_read(message)

    def get_messages_sync(self, conversation_id: str, limit: int = 200) -> List[MessageRead]:
        with DBSession(self.engine) as db:
            statement = (
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.created_at)
                .limit(limit)
            )
            return [_message_read(message) for message in db.exec(statement).all()]

    def list_conversations_sync(self, limit: int = 50) -> List[ConversationRead]:
        with DBSession(self.engine) as db:
            statement = select(Conversation).order_by(desc(Conversation.updated_at)).limit(limit)
            return [_conversation_read(conversation) for conversation in db.exec(statement).all()]

    # =========================================================================
    # Async wrappers
    # =========================================================================

    async def upsert_conversation(
        self,
        conversation_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> ConversationRead:
        return await run_sync(self.upsert_conversation_sync, conversation_id, title, timeout=self.timeout)

    async def add_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> MessageRead:
        return await run_sync(self.add_message_sync, conversation_id, role, content, meta, timeout=self.timeout)

    async def get_messages(self, conversation_id: str, limit: int = 200) -> List[MessageRead]:
        return await run_sync(self.get_messages_sync, conversation_id, limit, timeout=self.timeout)

    async def history(self, conversation_id: str, limit: int = 40) -> List[Dict[str, str]]:
        """Recent turns as model messages, oldest first."""
        messages = await self.get_messages(conversation_id, limit=200)
        recent = [m for m in messages if m.content][-limit:]
        return [{"role": m.role.value, "content": m.content} for m in recent]
