import asyncio

import pytest

from agent_crm.core.config import Settings
from agent_crm.models.dedup import ContactCandidate, ContactMatchFilter, DealCandidate, DealMatchFilter
from agent_crm.services.crm_store import InMemoryCrmStore
from agent_crm.services.duplicate_resolver import DuplicateResolver, ScoringPolicy
from agent_crm.services.errors import InvalidCandidate, StoreError, StoreUnavailable


def _store_with_contacts(*records):
    store = InMemoryCrmStore()
    store.seed("contacts", records)
    return store


def _resolve_contact(store, candidate, policy=None):
    return asyncio.run(DuplicateResolver(store, policy).resolve_contact(candidate))


def _resolve_deal(store, candidate, policy=None):
    return asyncio.run(DuplicateResolver(store, policy).resolve_deal(candidate))


# =============================================================================
# Contacts
# =============================================================================


def test_email_only_match_is_possible_duplicate_not_merge():
    store = _store_with_contacts(
        {"id": "C1", "first_name": "Jane", "last_name": "Doe", "email": "jane@x.com"},
    )
    result = _resolve_contact(
        store, ContactCandidate(first_name="Alice", last_name="Walker", email="  Jane@X.com ")
    )

    assert result.is_duplicate is True
    assert result.suggested_action == "update"
    assert [m.id for m in result.matches] == ["C1"]
    assert result.matches[0].similarity_score == 0.5
    assert result.matches[0].match_reason == "email match"
    assert result.message == "Found 1 possible duplicate (email match)"


def test_matches_are_ordered_by_score():
    store = _store_with_contacts(
        {"id": "B", "first_name": "Bob", "last_name": "Stone", "email": "jane@x.com"},
        {"id": "A", "first_name": "Jane", "last_name": "Doe", "email": "jane@x.com", "phone": "5551234567"},
    )
    result = _resolve_contact(
        store,
        ContactCandidate(first_name="Janet", last_name="Smith", email="jane@x.com", phone="555-123-4567"),
    )

    assert [m.id for m in result.matches] == ["A", "B"]
    assert [m.similarity_score for m in result.matches] == [0.8, 0.5]
    assert result.suggested_action == "merge"
    assert result.message == "Found 1 likely duplicate (email match, phone match)"


def test_resolution_is_deterministic():
    store = _store_with_contacts(
        {"id": "A", "first_name": "Jane", "last_name": "Doe", "email": "jane@x.com"},
        {"id": "B", "first_name": "Jane", "last_name": "Roe", "email": "jane@x.com"},
    )
    candidate = ContactCandidate(first_name="Jane", last_name="Doe", email="jane@x.com")

    first = _resolve_contact(store, candidate)
    second = _resolve_contact(store, candidate)

    assert first == second


def test_name_only_match_in_same_account_is_not_duplicate():
    store = _store_with_contacts(
        {"id": "C1", "first_name": "Jane", "last_name": "Doe", "account_id": "acc-1"},
    )
    result = _resolve_contact(
        store, ContactCandidate(first_name="jane", last_name="DOE", account_id="acc-1")
    )

    assert result.is_duplicate is False
    assert result.matches == []
    assert result.suggested_action == "create"
    assert result.message == "No duplicates found"


def test_email_and_full_name_is_likely_duplicate():
    store = _store_with_contacts(
        {
            "id": "A1",
            "first_name": "Jane",
            "last_name": "Doe",
            "email": "jane@x.com",
            "updated_at": "2025-01-01T00:00:00Z",
        },
    )
    result = _resolve_contact(
        store, ContactCandidate(first_name="Jane", last_name="Doe", email="jane@x.com")
    )

    assert result.is_duplicate is True
    assert len(result.matches) == 1
    match = result.matches[0]
    assert match.id == "A1"
    assert match.similarity_score == 0.7
    assert match.match_reason == "email match, full name match"
    assert match.original_record["email"] == "jane@x.com"
    assert result.suggested_action == "merge"


def test_phone_is_digit_normalized():
    store = _store_with_contacts(
        {"id": "P1", "first_name": "Jane", "last_name": "Doe", "phone": "5551234567"},
    )
    result = _resolve_contact(
        store, ContactCandidate(first_name="Jane", last_name="Smith", phone="(555) 123-4567")
    )

    assert store.query_log[0].phone_digits == "5551234567"
    assert [m.id for m in result.matches] == ["P1"]
    assert result.matches[0].similarity_score == 0.4
    assert result.matches[0].match_reason == "phone match, partial name match"
    assert result.suggested_action == "update"


def test_phone_match_alone_is_below_threshold():
    store = _store_with_contacts(
        {"id": "P1", "first_name": "Jane", "last_name": "Doe", "phone": "555.123.4567"},
    )
    result = _resolve_contact(
        store, ContactCandidate(first_name="Bob", last_name="Stone", phone="(555) 123-4567")
    )

    assert result.is_duplicate is False
    assert result.suggested_action == "create"


def test_all_signals_suggest_skip():
    store = _store_with_contacts(
        {"id": "S1", "first_name": "Jane", "last_name": "Doe", "email": "jane@x.com", "phone": "555-123-4567"},
    )
    result = _resolve_contact(
        store,
        ContactCandidate(first_name="Jane", last_name="Doe", email="JANE@x.com", phone="5551234567"),
    )

    assert result.matches[0].similarity_score == 1.0
    assert result.suggested_action == "skip"
    assert result.message.startswith("Identical contact already exists")


def test_retrieval_uses_one_declarative_filter():
    store = _store_with_contacts()
    _resolve_contact(
        store,
        ContactCandidate(
            first_name=" Jane ",
            last_name="Doe",
            email="Jane@X.com",
            phone="(555) 123-4567",
            account_id="acc-1",
        ),
    )

    assert store.query_log == [
        ContactMatchFilter(
            email="jane@x.com",
            phone_digits="5551234567",
            first_name="jane",
            last_name="doe",
            account_id="acc-1",
        )
    ]


def test_name_clause_is_scoped_to_account():
    store = _store_with_contacts(
        {"id": "other", "first_name": "Jane", "last_name": "Doe", "account_id": "acc-9", "email": "jd@y.com"},
    )
    records = store.find_contacts(ContactMatchFilter(first_name="jane", last_name="doe", account_id=None))

    assert records == []


def test_equal_scores_prefer_most_recently_updated():
    store = _store_with_contacts(
        {"id": "undated", "first_name": "Ann", "last_name": "One", "email": "shared@x.com"},
        {"id": "old", "first_name": "Bea", "last_name": "Two", "email": "shared@x.com",
         "updated_at": "2024-01-01T00:00:00+00:00"},
        {"id": "new", "first_name": "Cat", "last_name": "Three", "email": "shared@x.com",
         "updated_at": "2025-06-01T00:00:00Z"},
        {"id": "undated-2", "first_name": "Dee", "last_name": "Four", "email": "shared@x.com"},
    )
    result = _resolve_contact(
        store, ContactCandidate(first_name="Zed", last_name="Zulu", email="shared@x.com")
    )

    assert [m.id for m in result.matches] == ["new", "old", "undated", "undated-2"]
    assert result.message == "Found 4 possible duplicates (email match)"


def test_blank_name_fails_before_querying_store():
    store = _store_with_contacts()
    with pytest.raises(InvalidCandidate):
        _resolve_contact(store, ContactCandidate(first_name="  ", last_name="Doe", email="a@b.com"))
    assert store.query_log == []


def test_store_failure_is_not_reported_as_unique():
    store = _store_with_contacts()
    store.fail_with = StoreError("connection refused")

    with pytest.raises(StoreUnavailable, match="connection refused"):
        _resolve_contact(store, ContactCandidate(first_name="Jane", last_name="Doe"))


def test_store_timeout_raises_store_unavailable():
    store = InMemoryCrmStore(delay_seconds=0.2)
    resolver = DuplicateResolver(store, timeout_seconds=0.01)

    with pytest.raises(StoreUnavailable, match="timed out"):
        asyncio.run(resolver.resolve_contact(ContactCandidate(first_name="Jane", last_name="Doe")))


# =============================================================================
# Deals
# =============================================================================


def _store_with_deals(*records):
    store = InMemoryCrmStore()
    store.seed("deals", records)
    return store


def test_deal_exact_name_in_open_deal_is_merge():
    store = _store_with_deals(
        {"id": "D1", "name": "Acme Expansion", "account_id": "acc-1", "status": "open", "stage": "Proposal"},
    )
    result = _resolve_deal(store, DealCandidate(name="acme expansion", account_id="acc-1"))

    assert result.matches[0].similarity_score == 0.9
    assert result.matches[0].match_reason == "name match, open deal name overlap"
    assert result.suggested_action == "merge"


def test_deal_exact_name_in_closed_deal_is_update():
    store = _store_with_deals(
        {"id": "D1", "name": "Acme Expansion", "account_id": "acc-1", "status": "won"},
    )
    result = _resolve_deal(store, DealCandidate(name="Acme Expansion", account_id="acc-1"))

    assert result.matches[0].similarity_score == 0.6
    assert result.suggested_action == "update"


def test_deal_word_overlap_alone_is_below_threshold():
    store = _store_with_deals(
        {"id": "D1", "name": "Acme Expansion 2025", "account_id": "acc-1", "status": "open"},
    )
    result = _resolve_deal(store, DealCandidate(name="Expansion project", account_id="acc-1"))

    assert store.query_log == [
        DealMatchFilter(name="expansion project", account_id="acc-1", include_open_in_account=True)
    ]
    assert result.is_duplicate is False


def test_deal_weights_are_configurable():
    store = _store_with_deals(
        {"id": "D1", "name": "Acme Expansion 2025", "account_id": "acc-1", "status": "open", "stage": "Negotiation"},
        {"id": "D2", "name": "Acme Expansion 2024", "account_id": "acc-1", "status": "lost", "stage": "Closed Lost"},
    )
    policy = ScoringPolicy(deal_open_overlap=0.4)
    result = _resolve_deal(store, DealCandidate(name="Expansion project", account_id="acc-1"), policy)

    assert [m.id for m in result.matches] == ["D1"]
    assert result.suggested_action == "update"


def test_deal_in_other_account_is_not_a_match():
    store = _store_with_deals(
        {"id": "D1", "name": "Acme Expansion", "account_id": "acc-2", "status": "open"},
    )
    result = _resolve_deal(store, DealCandidate(name="Acme Expansion", account_id="acc-1"))

    assert result.is_duplicate is False


def test_deal_without_account_matches_unassigned_deals():
    store = _store_with_deals(
        {"id": "D1", "name": "Website Redesign", "account_id": None, "status": "open"},
    )
    result = _resolve_deal(store, DealCandidate(name="website redesign"))

    assert [m.id for m in result.matches] == ["D1"]
    assert result.matches[0].similarity_score == 0.6
    assert result.suggested_action == "update"


def test_deal_requires_name():
    with pytest.raises(InvalidCandidate):
        _resolve_deal(_store_with_deals(), DealCandidate(name=" "))


# =============================================================================
# Policy
# =============================================================================


def test_policy_rejects_unordered_thresholds():
    with pytest.raises(ValueError):
        ScoringPolicy(merge_threshold=0.3)


def test_policy_from_settings():
    settings = Settings(dedup_merge_threshold=0.8, dedup_contact_email_weight=0.6)
    policy = ScoringPolicy.from_settings(settings)

    assert policy.merge_threshold == 0.8
    assert policy.contact_email == 0.6
    assert policy.action_for(0.7) == "update"
    assert policy.action_for(0.39) == "create"


def test_deal_without_status_is_open_by_stage():
    store = _store_with_deals(
        {"id": "D1", "name": "Acme Expansion 2025", "account_id": "acc-1", "stage": "Proposal"},
        {"id": "D2", "name": "Acme Expansion 2024", "account_id": "acc-1", "stage": "Closed Won"},
    )
    policy = ScoringPolicy(deal_open_overlap=0.4)
    result = _resolve_deal(store, DealCandidate(name="Expansion project", account_id="acc-1"), policy)

    assert [m.id for m in result.matches] == ["D1"]
    assert result.matches[0].match_reason == "open deal name overlap"


def test_tie_break_parses_postgrest_timestamps():
    store = _store_with_contacts(
        {"id": "old", "first_name": "Ann", "last_name": "One", "email": "shared@x.com",
         "updated_at": "2025-01-01T09:00:00+00:00"},
        {"id": "new", "first_name": "Bea", "last_name": "Two", "email": "shared@x.com",
         "updated_at": "2025-01-01T10:30:00.12345+00:00"},
        {"id": "newest", "first_name": "Cat", "last_name": "Three", "email": "shared@x.com",
         "updated_at": "2025-01-01T11:00:00.5+00:00"},
    )
    result = _resolve_contact(
        store, ContactCandidate(first_name="Zed", last_name="Zulu", email="shared@x.com")
    )

    assert [m.id for m in result.matches] == ["newest", "new", "old"]
