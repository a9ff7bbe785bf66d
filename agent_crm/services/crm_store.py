"""
CRM store: contacts, deals and interactions tables.

Retrieval for duplicate detection is driven by declarative filter objects
(ContactMatchFilter / DealMatchFilter) so that the retrieval policy can be
tested apart from scoring.
"""
from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Callable, Dict, Iterable, List, Optional
from uuid import uuid4

import httpx
from postgrest.exceptions import APIError
from supabase import Client, create_client

from agent_crm.core.config import get_settings
from agent_crm.models.dedup import ContactMatchFilter, DealMatchFilter
from agent_crm.services.errors import StoreError
from agent_crm.utils.matching import (
    is_open_deal,
    normalize_email,
    normalize_name,
    normalize_phone,
    phone_pattern,
)

logger = logging.getLogger(__name__)

Record = Dict[str, Any]

CONTACTS = "contacts"
DEALS = "deals"
INTERACTIONS = "interactions"

# PostgREST form of is_open_deal: status open, or no status and a stage that is
# missing or not "closed*"
OPEN_DEAL_FILTER = "status.ilike.open,and(status.is.null,or(stage.is.null,stage.not.ilike.closed*))"

# Postgres invalid_text_representation, e.g. a malformed uuid id
INVALID_TEXT_REPRESENTATION = "22P02"


def _contact_matches(record: Record, flt: ContactMatchFilter) -> bool:
    if flt.email and normalize_email(record.get("email")) == flt.email:
        return True
    if flt.phone_digits and normalize_phone(record.get("phone")) == flt.phone_digits:
        return True
    if flt.first_name and flt.last_name:
        same_name = (
            normalize_name(record.get("first_name")) == flt.first_name
            and normalize_name(record.get("last_name")) == flt.last_name
        )
        if same_name and (record.get("account_id") or None) == flt.account_id:
            return True
    return False


def _deal_matches(record: Record, flt: DealMatchFilter) -> bool:
    same_account = (record.get("account_id") or None) == flt.account_id
    if not same_account:
        return False
    if normalize_name(record.get("name")) == normalize_name(flt.name):
        return True
    return bool(flt.include_open_in_account and flt.account_id and is_open_deal(record))


def _union(batches: Iterable[List[Record]], keep: Callable[[Record], bool]) -> List[Record]:
    seen = set()
    merged: List[Record] = []
    for batch in batches:
        for record in batch:
            record_id = record.get("id")
            if record_id in seen or not keep(record):
                continue
            seen.add(record_id)
            merged.append(record)
    return merged


class CrmStore(ABC):
    def __init__(
        self,
        *,
        contacts_table: str = CONTACTS,
        deals_table: str = DEALS,
        interactions_table: str = INTERACTIONS,
    ) -> None:
        self.contacts_table = contacts_table
        self.deals_table = deals_table
        self.interactions_table = interactions_table

    @abstractmethod
    def find_contacts(self, flt: ContactMatchFilter) -> List[Record]:
        ...

    @abstractmethod
    def find_deals(self, flt: DealMatchFilter) -> List[Record]:
        ...

    @abstractmethod
    def get(self, table: str, record_id: str) -> Optional[Record]:
        ...

    @abstractmethod
    def insert(self, table: str, payload: Record) -> Record:
        ...

    @abstractmethod
    def update(self, table: str, record_id: str, payload: Record) -> Record:
        ...

    @abstractmethod
    def delete(self, table: str, record_id: str) -> None:
        ...

    @abstractmethod
    def reassign_interactions(self, column: str, source_id: str, target_id: str) -> int:
        """Point interactions at ``target_id``; returns the number moved."""
        ...


class InMemoryCrmStore(CrmStore):
    """Dict-backed store for tests and local runs without Supabase.

    Calls arrive from worker threads, so every table access holds ``_lock``
    and iterates over a snapshot. ``unique_columns`` emulates unique indexes
    (case-insensitive) so that insert conflicts surface as
    ``StoreError(code="23505")``.
    """

    def __init__(
        self,
        *,
        unique_columns: Optional[Dict[str, List[str]]] = None,
        delay_seconds: float = 0.0,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._tables: Dict[str, Dict[str, Record]] = {}
        self._lock = threading.Lock()
        self.unique_columns = unique_columns or {}
        self.delay_seconds = delay_seconds
        self.fail_with: Optional[Exception] = None
        self.query_log: List[Any] = []

    def _check(self) -> None:
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        if self.fail_with is not None:
            raise self.fail_with

    def _table(self, table: str) -> Dict[str, Record]:
        # caller holds _lock
        return self._tables.setdefault(table, {})

    def _snapshot(self, table: str) -> List[Record]:
        with self._lock:
            return [dict(row) for row in self._table(table).values()]

    def seed(self, table: str, records: Iterable[Record]) -> None:
        with self._lock:
            for record in records:
                row = dict(record)
                row.setdefault("id", str(uuid4()))
                self._table(table)[str(row["id"])] = row

    def rows(self, table: str) -> List[Record]:
        return self._snapshot(table)

    def find_contacts(self, flt: ContactMatchFilter) -> List[Record]:
        self._check()
        self.query_log.append(flt)
        return [row for row in self._snapshot(self.contacts_table) if _contact_matches(row, flt)]

    def find_deals(self, flt: DealMatchFilter) -> List[Record]:
        self._check()
        self.query_log.append(flt)
        return [row for row in self._snapshot(self.deals_table) if _deal_matches(row, flt)]

    def get(self, table: str, record_id: str) -> Optional[Record]:
        self._check()
        with self._lock:
            row = self._table(table).get(str(record_id))
            return dict(row) if row else None

    def insert(self, table: str, payload: Record) -> Record:
        self._check()
        now = datetime.now(timezone.utc).isoformat()
        row = dict(payload)
        row.setdefault("id", str(uuid4()))
        row.setdefault("created_at", now)
        row.setdefault("updated_at", now)
        with self._lock:
            rows = self._table(table)
            for column in self.unique_columns.get(table, []):
                value = normalize_name(payload.get(column))
                if not value:
                    continue
                if any(normalize_name(existing.get(column)) == value for existing in list(rows.values())):
                    raise StoreError(
                        f'duplicate key value violates unique constraint "{table}_{column}_key"',
                        code="23505",
                    )
            rows[str(row["id"])] = row
            return dict(row)

    def update(self, table: str, record_id: str, payload: Record) -> Record:
        self._check()
        with self._lock:
            row = self._table(table).get(str(record_id))
            if row is None:
                raise StoreError(f"{table} row {record_id} does not exist")
            row.update(payload)
            return dict(row)

    def delete(self, table: str, record_id: str) -> None:
        self._check()
        with self._lock:
            self._table(table).pop(str(record_id), None)

    def reassign_interactions(self, column: str, source_id: str, target_id: str) -> int:
        self._check()
        moved = 0
        with self._lock:
            for row in list(self._table(self.interactions_table).values()):
                if row.get(column) == source_id:
                    row[column] = target_id
                    moved += 1
        return moved


class SupabaseCrmStore(CrmStore):
    """Supabase (PostgREST) backed store.

    ILIKE queries narrow the candidate set on the server; every row is then
    re-checked with the exact normalized comparison, since ILIKE treats ``_``
    and ``%`` in values as wildcards.
    """

    def __init__(self, client: Client, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.client = client

    def find_contacts(self, flt: ContactMatchFilter) -> List[Record]:
        batches: List[List[Record]] = []
        if flt.email:
            query = self.client.table(self.contacts_table).select("*").ilike("email", flt.email)
            batches.append(self._execute(query, "contacts by email"))
        if flt.phone_digits:
            query = (
                self.client.table(self.contacts_table)
                .select("*")
                .ilike("phone", phone_pattern(flt.phone_digits))
            )
            batches.append(self._execute(query, "contacts by phone"))
        if flt.first_name and flt.last_name:
            query = (
                self.client.table(self.contacts_table)
                .select("*")
                .ilike("first_name", flt.first_name)
                .ilike("last_name", flt.last_name)
            )
            query = self._scope_account(query, flt.account_id)
            batches.append(self._execute(query, "contacts by name"))
        return _union(batches, lambda record: _contact_matches(record, flt))

    def find_deals(self, flt: DealMatchFilter) -> List[Record]:
        batches: List[List[Record]] = []
        query = self.client.table(self.deals_table).select("*").ilike("name", flt.name.strip())
        query = self._scope_account(query, flt.account_id)
        batches.append(self._execute(query, "deals by name"))
        if flt.include_open_in_account and flt.account_id:
            query = (
                self.client.table(self.deals_table)
                .select("*")
                .eq("account_id", flt.account_id)
                .or_(OPEN_DEAL_FILTER)
            )
            batches.append(self._execute(query, "open deals by account"))
        return _union(batches, lambda record: _deal_matches(record, flt))

    def get(self, table: str, record_id: str) -> Optional[Record]:
        query = self.client.table(table).select("*").eq("id", record_id).limit(1)
        try:
            rows = self._execute(query, f"get {table}")
        except StoreError as exc:
            if exc.code == INVALID_TEXT_REPRESENTATION:
                # an id that cannot exist in the table
                return None
            raise
        return rows[0] if rows else None

    def insert(self, table: str, payload: Record) -> Record:
        rows = self._execute(self.client.table(table).insert(payload), f"insert {table}")
        if not rows:
            raise StoreError(f"Supabase insert {table} returned no row")
        return rows[0]

    def update(self, table: str, record_id: str, payload: Record) -> Record:
        query = self.client.table(table).update(payload).eq("id", record_id)
        rows = self._execute(query, f"update {table}")
        if not rows:
            raise StoreError(f"Supabase update {table} matched no row: {record_id}")
        return rows[0]

    def delete(self, table: str, record_id: str) -> None:
        self._execute(self.client.table(table).delete().eq("id", record_id), f"delete {table}")

    def reassign_interactions(self, column: str, source_id: str, target_id: str) -> int:
        query = (
            self.client.table(self.interactions_table)
            .update({column: target_id})
            .eq(column, source_id)
        )
        return len(self._execute(query, "reassign interactions"))

    @staticmethod
    def _scope_account(query, account_id: Optional[str]):
        if account_id:
            return query.eq("account_id", account_id)
        return query.is_("account_id", "null")

    def _execute(self, query, context: str) -> List[Record]:
        try:
            response = query.execute()
        except APIError as exc:
            logger.error("Supabase %s failed: %s", context, exc.message)
            raise StoreError(f"Supabase {context} failed: {exc.message}", code=exc.code) from exc
        except httpx.HTTPError as exc:
            logger.error("Supabase %s failed: %s", context, exc)
            raise StoreError(f"Supabase {context} failed: {exc}") from exc
        return list(response.data or [])


def _build_crm_store() -> CrmStore:
    settings = get_settings()
    tables = dict(
        contacts_table=settings.contacts_table,
        deals_table=settings.deals_table,
        interactions_table=settings.interactions_table,
    )
    if not settings.supabase_url or not settings.supabase_service_role_key:
        logger.warning("Supabase credentials not configured, using in-memory CRM store (not persistent)")
        return InMemoryCrmStore(**tables)
    client = create_client(settings.supabase_url, settings.supabase_service_role_key)
    return SupabaseCrmStore(client, **tables)


@lru_cache
def get_crm_store() -> CrmStore:
    return _build_crm_store()
