from fastapi import APIRouter

from agent_crm.api.routes import (
    contacts,
    deals,
    health,
    mcp,
)
from agent_crm.core.config import get_settings


def get_api_router() -> APIRouter:
    settings = get_settings()
    router = APIRouter(prefix=settings.api_prefix)
    router.include_router(health.router)
    router.include_router(contacts.router)
    router.include_router(deals.router)
    router.include_router(mcp.router)  # CRM tool table (MCP tool surface over HTTP)
    return router
