"""
State Management Models
=======================

SQLModel classes for the conversation log:
- Conversation: container keyed by a client-visible id (x-conversation-id)
- Message: one user or assistant turn; assistant ``meta`` holds the
  turn's tool log, step count and final state
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from sqlmodel import Field, Relationship, SQLModel, Column, JSON


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageRole(str, Enum):
    """Role of a message in the conversation."""
    USER = "user"
    ASSISTANT = "assistant"


class TimestampMixin(SQLModel):
    """Mixin for created_at and updated_at timestamps."""
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class Conversation(TimestampMixin, table=True):
    __tablename__ = "conversations"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=64)

    # Auto-generated from the first user message if not set
    title: Optional[str] = Field(default=None, nullable=True, max_length=255)

    messages: List["Message"] = Relationship(
        back_populates="conversation",
        sa_relationship_kwargs={"cascade": "all, delete-orphan", "order_by": "Message.created_at"},
    )


class Message(SQLModel, table=True):
    """A single message in a conversation."""
    __tablename__ = "messages"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=64)
    conversation_id: str = Field(foreign_key="conversations.id", index=True, max_length=64)

    role: MessageRole
    content: str

    created_at: datetime = Field(default_factory=_utcnow)

    # Tool log and turn metadata for assistant messages
    meta: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column("meta", JSON, nullable=True))

    conversation: Conversation = Relationship(back_populates="messages")


# =============================================================================
# API Models (non-table)
# =============================================================================

class ConversationRead(SQLModel):
    id: str
    title: Optional[str]
    created_at: datetime
    updated_at: datetime


class MessageRead(SQLModel):
    id: str
    conversation_id: str
    role: MessageRole
    content: str
    created_at: datetime
    meta: Optional[Dict[str, Any]] = None
