from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from agent_crm.core.config import get_settings
from agent_crm.services.crm_store import CrmStore, SupabaseCrmStore, get_crm_store
from agent_crm.services.insightly_client import InsightlyClient, get_insightly_client

router = APIRouter(tags=["health"])


@router.get("/health")
def read_health() -> dict:
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/status")
def read_status(
    store: CrmStore = Depends(get_crm_store),
    insightly: Optional[InsightlyClient] = Depends(get_insightly_client),
) -> Dict[str, Any]:
    """Which backends this instance is wired to"""
    settings = get_settings()
    return {
        "ready": True,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "store": "supabase" if isinstance(store, SupabaseCrmStore) else "memory",
        "insightly": insightly is not None,
        "storeTimeoutSeconds": settings.store_timeout_seconds,
    }
