"""
Chat Router
===========

POST /api/chat/stream: runs one assistant turn and streams the reply as
text/plain. The body ends with the metadata block (tool log, steps,
final state) after TOOL_LOG_SENTINEL; clients split it off with
``split_tool_log``. The conversation id is returned in the
``x-conversation-id`` header.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ace_assistant.core.errors import ValidationError
from ace_assistant.services.chat_service import ChatService, get_chat_service

logger = logging.getLogger(__name__)

router = APIRouter()


class ChatMessageIn(BaseModel):
    role: str
    content: str = Field(default="", max_length=20_000)


class ChatStreamRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    question: Optional[str] = Field(default=None, max_length=4000)
    messages: List[ChatMessageIn] = Field(default_factory=list)
    conversation_id: Optional[str] = Field(default=None, max_length=64)
    title: Optional[str] = Field(default=None, max_length=255)

    # Filters for the no-model summary
    route_id: Optional[str] = None
    start: Optional[str] = None
    end: Optional[str] = None


@router.post("/chat/stream", summary="Stream an assistant turn")
async def chat_stream(
    request: ChatStreamRequest,
    x_conversation_id: Optional[str] = Header(default=None, max_length=64),
    service: ChatService = Depends(get_chat_service),
):
    messages = [message.model_dump() for message in request.messages]
    has_user_text = any(m["role"] == "user" and m["content"].strip() for m in messages)
    if not (request.question and request.question.strip()) and not has_user_text:
        raise ValidationError("A question or a user message is required.")

    turn = await service.start_turn(
        request.question,
        messages=messages,
        conversation_id=request.conversation_id or x_conversation_id,
        title=request.title,
        route_id=request.route_id,
        start=request.start,
        end=request.end,
    )

    return StreamingResponse(
        turn.stream.render(),
        media_type="text/plain; charset=utf-8",
        headers={
            "x-conversation-id": turn.conversation_id,
            "Cache-Control": "no-cache",
        },
    )
