"""
Duplicate resolver for contacts and deals.

Pure read + score: queries the CRM store for plausible matches through a
declarative filter, scores each retrieved record by weighted field signals and
recommends create / merge / update / skip. Never writes to the store.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Tuple

from fastapi import Depends

from agent_crm.core.config import Settings, get_settings
from agent_crm.models.dedup import (
    ContactCandidate,
    ContactMatchFilter,
    DealCandidate,
    DealMatchFilter,
    MatchCandidate,
    ResolutionResult,
    SuggestedAction,
)
from agent_crm.services.crm_store import CrmStore, get_crm_store
from agent_crm.services.errors import InvalidCandidate, StoreError, StoreUnavailable
from agent_crm.utils.matching import (
    is_open_deal,
    normalize_email,
    normalize_name,
    normalize_phone,
    parse_timestamp,
    significant_words,
)

logger = logging.getLogger(__name__)

Record = Dict[str, Any]


@dataclass(frozen=True)
class ScoringPolicy:
    contact_email: float = 0.5
    contact_phone: float = 0.3
    contact_full_name: float = 0.2
    contact_partial_name: float = 0.1
    deal_name: float = 0.6
    deal_open_overlap: float = 0.3
    merge_threshold: float = 0.7
    possible_threshold: float = 0.4
    skip_threshold: float = 1.0

    def __post_init__(self) -> None:
        for name, value in vars(self).items():
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within 0.0-1.0, got {value}")
        if not self.possible_threshold <= self.merge_threshold <= self.skip_threshold:
            raise ValueError("thresholds must satisfy possible <= merge <= skip")

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScoringPolicy":
        return cls(
            contact_email=settings.dedup_contact_email_weight,
            contact_phone=settings.dedup_contact_phone_weight,
            contact_full_name=settings.dedup_contact_full_name_weight,
            contact_partial_name=settings.dedup_contact_partial_name_weight,
            deal_name=settings.dedup_deal_name_weight,
            deal_open_overlap=settings.dedup_deal_open_overlap_weight,
            merge_threshold=settings.dedup_merge_threshold,
            possible_threshold=settings.dedup_possible_threshold,
            skip_threshold=settings.dedup_skip_threshold,
        )

    def action_for(self, score: float) -> SuggestedAction:
        if score >= self.skip_threshold:
            return "skip"
        if score >= self.merge_threshold:
            return "merge"
        if score >= self.possible_threshold:
            return "update"
        return "create"


Signal = Tuple[str, float]


class DuplicateResolver:
    """Scores existing CRM records against a candidate.

    Read-only: one filtered store query per call, then weighted signals per
    record. The store call runs in a worker thread under ``timeout_seconds``.
    """

    def __init__(
        self,
        store: CrmStore,
        policy: Optional[ScoringPolicy] = None,
        *,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.store = store
        self.policy = policy or ScoringPolicy()
        self.timeout_seconds = timeout_seconds

    # =========================================================================
    # Contacts
    # =========================================================================

    async def resolve_contact(self, candidate: ContactCandidate) -> ResolutionResult:
        """
        Check a contact candidate against existing contacts.

        Signals: email (exact, case-insensitive), phone (digits only), and
        full or partial first/last name. The name clause only retrieves
        records in the candidate's account.

        Raises:
            InvalidCandidate: first or last name is blank
            StoreUnavailable: the store query failed or timed out
        """
        first = normalize_name(candidate.first_name)
        last = normalize_name(candidate.last_name)
        if not first or not last:
            raise InvalidCandidate("Contact candidate requires first_name and last_name")

        email = normalize_email(candidate.email)
        phone = normalize_phone(candidate.phone)
        account_id = candidate.account_id or None
        flt = ContactMatchFilter(
            email=email,
            phone_digits=phone,
            first_name=first,
            last_name=last,
            account_id=account_id,
        )
        records = await self._query(self.store.find_contacts, flt, "contacts")

        def signals(record: Record) -> List[Signal]:
            fired: List[Signal] = []
            if email and normalize_email(record.get("email")) == email:
                fired.append(("email match", self.policy.contact_email))
            if phone and normalize_phone(record.get("phone")) == phone:
                fired.append(("phone match", self.policy.contact_phone))
            first_hit = normalize_name(record.get("first_name")) == first
            last_hit = normalize_name(record.get("last_name")) == last
            if first_hit and last_hit:
                fired.append(("full name match", self.policy.contact_full_name))
            elif first_hit or last_hit:
                fired.append(("partial name match", self.policy.contact_partial_name))
            return fired

        return self._decide(records, signals, entity="contact")

    # =========================================================================
    # Deals
    # =========================================================================

    async def resolve_deal(self, candidate: DealCandidate) -> ResolutionResult:
        """
        Check a deal candidate against deals of the same account.

        Signals: exact name, and for open deals a shared significant word in
        the name. Both can fire for one record.

        Raises:
            InvalidCandidate: name is blank
            StoreUnavailable: the store query failed or timed out
        """
        name = normalize_name(candidate.name)
        if not name:
            raise InvalidCandidate("Deal candidate requires a name")

        account_id = candidate.account_id or None
        flt = DealMatchFilter(
            name=name,
            account_id=account_id,
            include_open_in_account=bool(account_id),
        )
        records = await self._query(self.store.find_deals, flt, "deals")
        words = significant_words(name)

        def signals(record: Record) -> List[Signal]:
            fired: List[Signal] = []
            if (record.get("account_id") or None) != account_id:
                return fired
            if normalize_name(record.get("name")) == name:
                fired.append(("name match", self.policy.deal_name))
            if account_id and is_open_deal(record) and words & significant_words(record.get("name")):
                fired.append(("open deal name overlap", self.policy.deal_open_overlap))
            return fired

        return self._decide(records, signals, entity="deal")

    # =========================================================================
    # Internal Methods
    # =========================================================================

    async def _query(self, fetch: Callable[[Any], List[Record]], flt: Any, context: str) -> List[Record]:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fetch, flt), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            logger.error("Duplicate lookup on %s timed out after %.1fs", context, self.timeout_seconds)
            raise StoreUnavailable(f"{context} lookup timed out after {self.timeout_seconds}s") from exc
        except StoreError as exc:
            logger.error("Duplicate lookup on %s failed: %s", context, exc)
            raise StoreUnavailable(str(exc)) from exc

    def _decide(
        self,
        records: List[Record],
        signals: Callable[[Record], List[Signal]],
        *,
        entity: str,
    ) -> ResolutionResult:
        scored: List[Tuple[MatchCandidate, Optional[float], int]] = []
        for index, record in enumerate(records):
            fired = signals(record)
            score = round(min(1.0, sum(weight for _, weight in fired)), 4)
            if not fired or score < self.policy.possible_threshold:
                continue
            match = MatchCandidate(
                id=str(record.get("id")),
                similarity_score=score,
                match_reason=", ".join(reason for reason, _ in fired),
                original_record=record,
            )
            scored.append((match, parse_timestamp(record.get("updated_at")), index))

        # score desc, then newest update first (undated last), then retrieval order
        scored.sort(key=lambda item: (
            -item[0].similarity_score,
            item[1] is None,
            -(item[1] or 0.0),
            item[2],
        ))
        matches = [match for match, _, _ in scored]

        if not matches:
            logger.info("No %s duplicates among %d retrieved records", entity, len(records))
            return ResolutionResult(
                is_duplicate=False,
                matches=[],
                suggested_action="create",
                message="No duplicates found",
            )

        action = self.policy.action_for(matches[0].similarity_score)
        message = _summarize(matches, action, self.policy, entity)
        logger.info("%s duplicate check: action=%s top=%s score=%.2f",
                    entity.capitalize(), action, matches[0].id, matches[0].similarity_score)
        return ResolutionResult(
            is_duplicate=True,
            matches=matches,
            suggested_action=action,
            message=message,
        )


def _summarize(
    matches: List[MatchCandidate],
    action: SuggestedAction,
    policy: ScoringPolicy,
    entity: str,
) -> str:
    likely = [m for m in matches if m.similarity_score >= policy.merge_threshold]
    if action == "skip":
        return f"Identical {entity} already exists ({matches[0].match_reason})"
    if likely:
        noun = "duplicate" if len(likely) == 1 else "duplicates"
        return f"Found {len(likely)} likely {noun} ({likely[0].match_reason})"
    noun = "duplicate" if len(matches) == 1 else "duplicates"
    return f"Found {len(matches)} possible {noun} ({matches[0].match_reason})"


@lru_cache
def get_scoring_policy() -> ScoringPolicy:
    return ScoringPolicy.from_settings(get_settings())


def get_duplicate_resolver(
    store: CrmStore = Depends(get_crm_store),
    policy: ScoringPolicy = Depends(get_scoring_policy),
) -> DuplicateResolver:
    return DuplicateResolver(store, policy, timeout_seconds=get_settings().store_timeout_seconds)
