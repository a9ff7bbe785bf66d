import pytest
from fastapi.testclient import TestClient

from agent_crm.main import app
from agent_crm.services.crm_store import InMemoryCrmStore, get_crm_store
from agent_crm.services.insightly_client import get_insightly_client


@pytest.fixture
def crm_store() -> InMemoryCrmStore:
    return InMemoryCrmStore()


@pytest.fixture(autouse=True)
def override_crm_store(crm_store):
    app.dependency_overrides[get_crm_store] = lambda: crm_store
    yield crm_store
    app.dependency_overrides.pop(get_crm_store, None)


@pytest.fixture(autouse=True)
def disable_insightly_client():
    """No Insightly network calls unless a test installs its own client."""
    app.dependency_overrides[get_insightly_client] = lambda: None
    yield
    app.dependency_overrides.pop(get_insightly_client, None)


@pytest.fixture()
def test_client() -> TestClient:
    with TestClient(app) as client:
        yield client
