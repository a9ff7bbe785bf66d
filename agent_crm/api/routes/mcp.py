"""
CRM tool endpoints

GET  /api/mcp/tools     - Tool definitions (name, description, inputSchema)
POST /api/mcp/call-tool - Dispatch a tool call by name
"""
from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends

from agent_crm.api.errors import handle_error
from agent_crm.models.crm import ToolCallRequest
from agent_crm.services.crm_tools import CrmToolDispatcher, get_crm_tool_dispatcher
from agent_crm.services.errors import StoreUnavailable

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/mcp", tags=["mcp"])


@router.get("/tools")
def list_tools(dispatcher: CrmToolDispatcher = Depends(get_crm_tool_dispatcher)) -> Dict[str, Any]:
    return {"tools": dispatcher.list_tools()}


@router.post("/call-tool")
async def call_tool(
    request: ToolCallRequest,
    dispatcher: CrmToolDispatcher = Depends(get_crm_tool_dispatcher),
) -> Dict[str, Any]:
    try:
        result = await dispatcher.call_tool(request.name, request.arguments)
    except StoreUnavailable as exc:
        raise handle_error(exc)
    return {"result": result}
