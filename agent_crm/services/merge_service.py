from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict

from fastapi import Depends

from agent_crm.core.config import get_settings
from agent_crm.services.crm_store import CrmStore, get_crm_store
from agent_crm.services.errors import InvalidMerge, RecordNotFound, StoreError, StoreUnavailable
from agent_crm.utils.matching import merge_tags

logger = logging.getLogger(__name__)

Record = Dict[str, Any]

CONTACT_MERGE_FIELDS = ("first_name", "last_name", "email", "phone", "role", "account_id")
DEAL_MERGE_FIELDS = ("name", "account_id", "pipeline_id", "stage", "status", "close_date")


@dataclass
class MergeResult:
    target: Record
    reassigned_interactions: int = 0
    source_deleted: bool = True


def _prefer_target(target: Record, source: Record, fields) -> Record:
    return {name: target.get(name) or source.get(name) for name in fields}


def _merge_amount(target: Record, source: Record) -> Any:
    target_amount = target.get("amount")
    source_amount = source.get("amount")
    if target_amount and source_amount:
        return float(target_amount) + float(source_amount)
    return target_amount or source_amount


class MergeService:
    """Folds a source contact/deal into a target; the target id survives."""

    def __init__(self, store: CrmStore, *, timeout_seconds: float = 10.0) -> None:
        self.store = store
        self.timeout_seconds = timeout_seconds

    async def merge_contacts(self, source_id: str, target_id: str) -> MergeResult:
        """Fold contact ``source_id`` into ``target_id``; interactions follow the target."""
        return await self._merge(
            self.store.contacts_table,
            source_id,
            target_id,
            build=lambda target, source: _prefer_target(target, source, CONTACT_MERGE_FIELDS),
            interaction_column="contact_id",
        )

    async def merge_deals(self, source_id: str, target_id: str) -> MergeResult:
        """Fold deal ``source_id`` into ``target_id``; amounts are summed."""
        def build(target: Record, source: Record) -> Record:
            merged = _prefer_target(target, source, DEAL_MERGE_FIELDS)
            merged["amount"] = _merge_amount(target, source)
            return merged

        return await self._merge(
            self.store.deals_table,
            source_id,
            target_id,
            build=build,
            interaction_column="deal_id",
        )

    async def _merge(
        self,
        table: str,
        source_id: str,
        target_id: str,
        *,
        build: Callable[[Record, Record], Record],
        interaction_column: str,
    ) -> MergeResult:
        if not source_id or not target_id:
            raise InvalidMerge("source_id and target_id are required")
        if source_id == target_id:
            raise InvalidMerge("Cannot merge a record into itself")

        source = await self._call(self.store.get, table, source_id)
        if source is None:
            raise RecordNotFound(table, source_id)
        target = await self._call(self.store.get, table, target_id)
        if target is None:
            raise RecordNotFound(table, target_id)

        merged = build(target, source)
        merged["tags"] = merge_tags(target.get("tags"), source.get("tags"))
        merged["updated_at"] = datetime.now(timezone.utc).isoformat()

        updated = await self._call(self.store.update, table, target_id, merged)
        moved = await self._call(self.store.reassign_interactions, interaction_column, source_id, target_id)

        deleted = True
        try:
            await self._call(self.store.delete, table, source_id)
        except StoreUnavailable as exc:
            # target already holds the merged data
            logger.warning("Failed to delete source %s %s after merge: %s", table, source_id, exc)
            deleted = False

        logger.info("Merged %s %s into %s (%d interactions moved)", table, source_id, target_id, moved)
        return MergeResult(target=updated, reassigned_interactions=moved, source_deleted=deleted)

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise StoreUnavailable(f"CRM store call timed out after {self.timeout_seconds}s") from exc
        except StoreError as exc:
            raise StoreUnavailable(str(exc)) from exc


def get_merge_service(store: CrmStore = Depends(get_crm_store)) -> MergeService:
    return MergeService(store, timeout_seconds=get_settings().store_timeout_seconds)