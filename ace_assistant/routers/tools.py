"""
Tool introspection.

GET /api/tools: the tools a chat turn would see right now, with their
origin (local, external, override) and alternate spellings.
"""

from fastapi import APIRouter, Depends

from ace_assistant.services.chat_service import ChatService, get_chat_service

router = APIRouter()


@router.get("/tools")
async def list_tools(service: ChatService = Depends(get_chat_service)):
    tools = await service.list_tools()
    return {"tools": tools, "count": len(tools)}
