import asyncio

import httpx
import pytest

from agent_crm.services.crm_service import CrmService
from agent_crm.services.crm_store import InMemoryCrmStore
from agent_crm.services.crm_tools import TOOL_DEFINITIONS, CrmToolDispatcher
from agent_crm.services.duplicate_resolver import DuplicateResolver
from agent_crm.services.errors import StoreError, StoreUnavailable
from agent_crm.services.insightly_client import InsightlyClient
from agent_crm.services.merge_service import MergeService


def _dispatcher(store, insightly=None) -> CrmToolDispatcher:
    resolver = DuplicateResolver(store)
    return CrmToolDispatcher(resolver, CrmService(store, resolver), MergeService(store), insightly)


def _call(dispatcher, name, arguments=None):
    return asyncio.run(dispatcher.call_tool(name, arguments))


def _text(result) -> str:
    return result["content"][0]["text"]


def test_tool_table_hides_insightly_tools_without_client():
    names = [tool["name"] for tool in _dispatcher(InMemoryCrmStore()).list_tools()]

    assert names == [
        "check_duplicate_contact",
        "check_duplicate_deal",
        "create_contact",
        "create_deal",
        "merge_contacts",
        "merge_deals",
    ]


def test_tool_schemas_use_field_names():
    schemas = {tool.name: tool.to_schema() for tool in TOOL_DEFINITIONS}
    contact_schema = schemas["create_contact"]["inputSchema"]

    assert set(contact_schema["required"]) == {"first_name", "last_name"}
    assert "force" in contact_schema["properties"]


def test_unknown_tool_is_error_result():
    result = _call(_dispatcher(InMemoryCrmStore()), "drop_database")

    assert result["isError"] is True
    assert _text(result) == "Unknown tool: drop_database"


def test_insightly_tool_unavailable_without_client():
    result = _call(_dispatcher(InMemoryCrmStore()), "list_insightly_contacts", {})

    assert result["isError"] is True
    assert _text(result) == "Unknown tool: list_insightly_contacts"


def test_invalid_arguments_are_reported():
    result = _call(_dispatcher(InMemoryCrmStore()), "create_contact", {"first_name": "Jane"})

    assert result["isError"] is True
    assert _text(result).startswith("Invalid arguments for create_contact: lastName")


def test_check_duplicate_contact_returns_structured_resolution():
    store = InMemoryCrmStore()
    store.seed("contacts", [{"id": "C1", "first_name": "Jane", "last_name": "Doe", "email": "jane@x.com"}])

    result = _call(_dispatcher(store), "check_duplicate_contact", {
        "first_name": "Jane", "last_name": "Doe", "email": "jane@x.com",
    })

    assert result["isError"] is False
    structured = result["structuredContent"]
    assert structured["isDuplicate"] is True
    assert structured["suggestedAction"] == "merge"
    assert structured["matches"][0]["id"] == "C1"
    assert structured["matches"][0]["similarityScore"] == 0.7


def test_create_contact_blocked_by_duplicate():
    store = InMemoryCrmStore()
    store.seed("contacts", [{"id": "C1", "first_name": "Jane", "last_name": "Doe", "email": "jane@x.com"}])

    result = _call(_dispatcher(store), "create_contact", {
        "firstName": "Jane", "lastName": "Doe", "email": "jane@x.com",
    })

    assert result["isError"] is True
    assert "Existing contact: Jane Doe (ID: C1)" in _text(result)
    assert "force=true" in _text(result)
    assert result["structuredContent"]["suggestedAction"] == "merge"
    assert len(store.rows("contacts")) == 1


def test_create_contact_with_force_warns():
    store = InMemoryCrmStore()
    store.seed("contacts", [{"id": "C1", "first_name": "Jane", "last_name": "Doe", "email": "jane@x.com"}])

    result = _call(_dispatcher(store), "create_contact", {
        "first_name": "Jane", "last_name": "Doe", "email": "jane@x.com", "force": True,
    })

    assert result["isError"] is False
    assert _text(result).endswith('Contact "Jane Doe" created successfully (potential duplicate exists)')
    assert result["structuredContent"]["contacts"][0]["email"] == "jane@x.com"


def test_create_deal_success():
    result = _call(_dispatcher(InMemoryCrmStore()), "create_deal", {
        "name": "Website Redesign", "account_id": "acc-1", "amount": 1200,
    })

    assert result["isError"] is False
    assert _text(result) == 'Deal "Website Redesign" created successfully'
    deal = result["structuredContent"]["deals"][0]
    assert deal["stage"] == "New"
    assert deal["status"] == "open"


def test_merge_contacts_tool():
    store = InMemoryCrmStore()
    store.seed("contacts", [
        {"id": "a", "first_name": "Jane", "last_name": "Doe"},
        {"id": "b", "first_name": "Jane", "last_name": "Doe", "email": "jane@x.com"},
    ])

    result = _call(_dispatcher(store), "merge_contacts", {"sourceId": "a", "targetId": "b"})

    assert _text(result) == "Contact a merged into b"
    assert result["structuredContent"]["sourceDeleted"] is True
    assert result["structuredContent"]["reassignedInteractions"] == 0


def test_merge_missing_record_is_error_result():
    result = _call(_dispatcher(InMemoryCrmStore()), "merge_deals", {"source_id": "x", "target_id": "y"})

    assert result["isError"] is True
    assert _text(result).startswith("Error: deals record not found")


def test_store_outage_propagates():
    store = InMemoryCrmStore()
    store.fail_with = StoreError("connection refused")

    with pytest.raises(StoreUnavailable):
        _call(_dispatcher(store), "check_duplicate_deal", {"name": "Acme"})


def _insightly(handler) -> InsightlyClient:
    return InsightlyClient("key", transport=httpx.MockTransport(handler))


def test_import_insightly_contact_runs_duplicate_check():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v3.1/Contacts/5"
        return httpx.Response(200, json={
            "CONTACT_ID": 5,
            "FIRST_NAME": "Jane",
            "LAST_NAME": "Doe",
            "EMAIL_ADDRESS": "jane@x.com",
            "TAGS": [{"TAG_NAME": "imported"}],
        })

    store = InMemoryCrmStore()
    dispatcher = _dispatcher(store, _insightly(handler))

    result = _call(dispatcher, "import_insightly_contact", {"contact_id": 5})

    assert result["isError"] is False
    assert result["structuredContent"]["duplicateCheck"]["suggestedAction"] == "create"
    assert store.rows("contacts")[0]["tags"] == ["imported"]

    # the same contact again is refused
    again = _call(dispatcher, "import_insightly_contact", {"contact_id": 5})
    assert again["isError"] is True
    assert len(store.rows("contacts")) == 1


def test_insightly_api_error_is_error_result():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"Message": "Invalid API key"})

    dispatcher = _dispatcher(InMemoryCrmStore(), _insightly(handler))
    result = _call(dispatcher, "get_insightly_contact", {"contact_id": 1})

    assert result["isError"] is True
    assert result["structuredContent"] == {"status": 401, "body": {"Message": "Invalid API key"}}


def test_identical_contact_tool_call_is_refused_with_force():
    store = InMemoryCrmStore()
    store.seed("contacts", [
        {"id": "C1", "first_name": "Jane", "last_name": "Doe", "email": "jane@x.com", "phone": "5551234567"},
    ])

    result = _call(_dispatcher(store), "create_contact", {
        "first_name": "Jane", "last_name": "Doe", "email": "jane@x.com", "phone": "555 123 4567", "force": True,
    })

    assert result["isError"] is True
    assert "identical records cannot be forced" in _text(result)
    assert len(store.rows("contacts")) == 1
