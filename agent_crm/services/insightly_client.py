"""
Insightly API Client

Thin async REST client for the Insightly v3.1 contacts API
- httpx connection pooling (lazy AsyncClient)
- HTTP Basic auth (API key as username, empty password)
- Typed errors carrying status code and parsed body
"""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any, Dict, List, Optional

import httpx

from agent_crm.core.config import get_settings
from agent_crm.models.dedup import ContactCandidate

logger = logging.getLogger(__name__)

DEFAULT_POD = "na1"
DEFAULT_API_VERSION = "v3.1"
DEFAULT_USER_AGENT = "agent-crm-insightly"


class InsightlyClientError(RuntimeError):
    """Insightly client / transport error"""
    pass


class InsightlyApiError(InsightlyClientError):
    """Non-2xx response from the Insightly API"""

    def __init__(self, message: str, status: int, body: Any = None):
        super().__init__(message)
        self.status = status
        self.body = body


class InsightlyClient:
    def __init__(
        self,
        api_key: str,
        *,
        pod: str = DEFAULT_POD,
        api_version: str = DEFAULT_API_VERSION,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not api_key:
            raise InsightlyClientError("InsightlyClient requires an API key")

        self.base_url = f"https://api.{pod}.insightly.com/{api_version}"
        self.api_key = api_key
        self.user_agent = user_agent
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Pooled client (lazy init)"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                auth=(self.api_key, ""),
                headers={
                    "Accept": "application/json",
                    "User-Agent": self.user_agent,
                },
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    # =========================================================================
    # Contacts API
    # =========================================================================

    async def list_contacts(
        self,
        *,
        top: Optional[int] = None,
        skip: Optional[int] = None,
        brief: Optional[bool] = None,
        count_total: Optional[bool] = None,
        tag: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        updated_after_utc: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        params = {
            "top": top,
            "skip": skip,
            "brief": brief,
            "count_total": count_total,
            "tag": tag,
            "email": email,
            "phone": phone,
            "updated_after_utc": updated_after_utc,
        }
        return await self._request("GET", "/Contacts", params=params) or []

    async def get_contact(self, contact_id: int) -> Dict[str, Any]:
        return await self._request("GET", f"/Contacts/{contact_id}")

    async def create_contact(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/Contacts", body=payload)

    async def update_contact(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not payload.get("CONTACT_ID"):
            raise InsightlyClientError("update_contact requires CONTACT_ID")
        return await self._request("PUT", "/Contacts", body=payload)

    async def delete_contact(self, contact_id: int) -> None:
        await self._request("DELETE", f"/Contacts/{contact_id}")

    async def search_contacts(self, field_name: str, field_value: str) -> List[Dict[str, Any]]:
        params = {"field_name": field_name, "field_value": field_value}
        return await self._request("GET", "/Contacts/Search", params=params) or []

    # =========================================================================
    # Internal Methods
    # =========================================================================

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Any] = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        query = {key: _param_value(value) for key, value in (params or {}).items() if value is not None}

        try:
            client = await self._get_client()
            response = await client.request(method, url, params=query or None, json=body)
        except httpx.TimeoutException as e:
            logger.warning(f"Insightly request timeout: {method} {path}: {e}")
            raise InsightlyClientError(f"Request timeout: {e}") from e
        except httpx.HTTPError as e:
            logger.error(f"Insightly HTTP error: {e}")
            raise InsightlyClientError(f"HTTP error: {e}") from e

        raw_text = response.text
        parsed = _safe_json(raw_text) if raw_text else None

        if response.status_code >= 400:
            raise InsightlyApiError(
                f"Insightly API error ({response.status_code})",
                response.status_code,
                parsed if parsed is not None else raw_text,
            )
        return parsed


def _param_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _safe_json(value: str) -> Any:
    try:
        return json.loads(value)
    except ValueError:
        return value


def contact_to_candidate(contact: Dict[str, Any], *, account_id: Optional[str] = None) -> ContactCandidate:
    """Map an Insightly contact onto a duplicate-check candidate."""
    return ContactCandidate(
        first_name=contact.get("FIRST_NAME") or "",
        last_name=contact.get("LAST_NAME") or "",
        email=contact.get("EMAIL_ADDRESS"),
        phone=contact.get("PHONE") or contact.get("MOBILE"),
        account_id=account_id,
    )


def contact_to_row(contact: Dict[str, Any], *, account_id: Optional[str] = None) -> Dict[str, Any]:
    """CRM contacts row for an imported Insightly contact."""
    candidate = contact_to_candidate(contact, account_id=account_id)
    tags = [tag.get("TAG_NAME") for tag in contact.get("TAGS") or [] if tag.get("TAG_NAME")]
    row: Dict[str, Any] = {
        "first_name": candidate.first_name,
        "last_name": candidate.last_name,
        "email": candidate.email,
        "phone": candidate.phone,
        "role": contact.get("TITLE"),
        "account_id": account_id,
    }
    if tags:
        row["tags"] = tags
    return row


@lru_cache
def get_insightly_client() -> Optional[InsightlyClient]:
    settings = get_settings()
    if not settings.insightly_api_key:
        return None
    return InsightlyClient(
        settings.insightly_api_key,
        pod=settings.insightly_pod,
        api_version=settings.insightly_api_version,
        timeout=settings.insightly_timeout_seconds,
    )
