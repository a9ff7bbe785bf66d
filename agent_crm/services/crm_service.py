"""
Duplicate-gated creation of contacts and deals.

The resolver's answer is advisory; the store's uniqueness constraints stay the
source of truth. Two concurrent creates can both pass the check, in which case
the loser's insert fails with a unique violation and is reported as a
duplicate.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import Depends

from agent_crm.core.config import get_settings
from agent_crm.models.dedup import ContactCandidate, DealCandidate, ResolutionResult
from agent_crm.services.crm_store import CrmStore, get_crm_store
from agent_crm.services.duplicate_resolver import DuplicateResolver, get_duplicate_resolver
from agent_crm.services.errors import (
    DuplicateDetected,
    StoreConflict,
    StoreError,
    StoreUnavailable,
)

logger = logging.getLogger(__name__)

Record = Dict[str, Any]

# "skip" means the record already exists; force cannot override it
FORCEABLE_ACTIONS = ("merge",)
BLOCKING_ACTIONS = ("skip",)


@dataclass
class CreateOutcome:
    record: Record
    duplicate_check: ResolutionResult
    warning: Optional[str] = None


class CrmService:
    """Creates contacts and deals behind the duplicate check."""

    def __init__(
        self,
        store: CrmStore,
        resolver: DuplicateResolver,
        *,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.timeout_seconds = timeout_seconds

    async def create_contact(
        self,
        row: Record,
        candidate: ContactCandidate,
        *,
        force: bool = False,
    ) -> CreateOutcome:
        return await self._create(
            self.store.contacts_table,
            row,
            lambda: self.resolver.resolve_contact(candidate),
            force=force,
        )

    async def create_deal(
        self,
        row: Record,
        candidate: DealCandidate,
        *,
        force: bool = False,
    ) -> CreateOutcome:
        return await self._create(
            self.store.deals_table,
            row,
            lambda: self.resolver.resolve_deal(candidate),
            force=force,
        )

    async def _create(
        self,
        table: str,
        row: Record,
        resolve: Callable[[], Awaitable[ResolutionResult]],
        *,
        force: bool,
    ) -> CreateOutcome:
        """Resolve, then insert unless the check blocks it.

        ``skip`` always raises ``DuplicateDetected``; ``merge`` raises unless
        ``force`` is set. A timed out insert may still commit in the worker
        thread, so callers should re-check before retrying.
        """
        check = await resolve()
        blocked = check.suggested_action in BLOCKING_ACTIONS or (
            check.suggested_action in FORCEABLE_ACTIONS and not force
        )
        if blocked:
            logger.info("Refusing %s insert: %s", table, check.message)
            raise DuplicateDetected(check)

        try:
            record = await asyncio.wait_for(
                asyncio.to_thread(self.store.insert, table, row),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise StoreUnavailable(
                f"{table} insert timed out after {self.timeout_seconds}s; "
                "the row may still have been written, re-check before retrying"
            ) from exc
        except StoreError as exc:
            if not exc.is_unique_violation:
                raise StoreUnavailable(str(exc)) from exc
            logger.warning("Unique violation on %s insert, re-checking duplicates", table)
            recheck = await resolve()
            if recheck.is_duplicate:
                raise DuplicateDetected(recheck) from exc
            raise StoreConflict(str(exc)) from exc

        warning = check.message if check.is_duplicate else None
        return CreateOutcome(record=record, duplicate_check=check, warning=warning)


def get_crm_service(
    store: CrmStore = Depends(get_crm_store),
    resolver: DuplicateResolver = Depends(get_duplicate_resolver),
) -> CrmService:
    return CrmService(store, resolver, timeout_seconds=get_settings().store_timeout_seconds)
