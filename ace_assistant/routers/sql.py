"""
SQL endpoint for power users.

Statements pass through the same sandbox as the runSql tool before the
warehouse sees them.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ace_assistant.models.tools import output_payload
from ace_assistant.services.chat_service import ChatService, get_chat_service
from ace_assistant.services.sql_sandbox import validate_select

router = APIRouter()


class SQLQueryRequest(BaseModel):
    """SQL query request body."""
    sql: str = Field(..., max_length=20_000)
    limit: Optional[int] = Field(default=None, ge=1, le=5000)


@router.post("/sql")
async def execute_query(
    request: SQLQueryRequest,
    service: ChatService = Depends(get_chat_service),
):
    """
    Execute a single read-only SELECT.

    Only allow-listed tables may be referenced; rejected statements return
    400 with the sandbox's reason.
    """
    result = await service.warehouse.run_select(request.sql, limit=request.limit)
    return output_payload(result)


@router.post("/sql/validate")
async def validate_query(request: SQLQueryRequest):
    """Dry-run the sandbox without touching the warehouse."""
    result = validate_select(request.sql)
    if result.ok:
        return {"ok": True, "normalized": result.normalized_statement}
    return {"ok": False, "reason": result.reason}
