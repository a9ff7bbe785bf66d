"""
CRM tool table and dispatcher.

Static tool definitions (name, description, JSON input schema) dispatched by
name. Results use the MCP tool-result shape:
``{"content": [{"type": "text", "text": ...}], "isError": bool, "structuredContent": {...}}``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Type

from fastapi import Depends
from pydantic import BaseModel, Field, ValidationError

from agent_crm.models.crm import (
    ContactCheckRequest,
    ContactCreateRequest,
    DealCheckRequest,
    DealCreateRequest,
    MergeRequest,
)
from agent_crm.models.dedup import ResolutionResponse, ResolutionResult
from agent_crm.services.crm_service import CrmService, get_crm_service
from agent_crm.services.duplicate_resolver import DuplicateResolver, get_duplicate_resolver
from agent_crm.services.errors import (
    DuplicateDetected,
    InvalidCandidate,
    InvalidMerge,
    RecordNotFound,
    StoreConflict,
)
from agent_crm.services.insightly_client import (
    InsightlyApiError,
    InsightlyClient,
    InsightlyClientError,
    contact_to_candidate,
    contact_to_row,
    get_insightly_client,
)
from agent_crm.services.merge_service import MergeResult, MergeService, get_merge_service

logger = logging.getLogger(__name__)

ToolResult = Dict[str, Any]


# =============================================================================
# Insightly tool arguments
# =============================================================================

class ListInsightlyContactsArgs(BaseModel):
    top: Optional[int] = Field(default=None, ge=1, le=500)
    skip: Optional[int] = Field(default=None, ge=0)
    tag: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    updated_after_utc: Optional[str] = None


class InsightlyContactIdArgs(BaseModel):
    contact_id: int


class SearchInsightlyContactsArgs(BaseModel):
    field_name: str
    field_value: str


class ImportInsightlyContactArgs(BaseModel):
    contact_id: int
    account_id: Optional[str] = None
    force: bool = False


# =============================================================================
# Tool table
# =============================================================================

@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    args_model: Type[BaseModel]
    requires_insightly: bool = False

    def to_schema(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.args_model.model_json_schema(by_alias=False),
        }


TOOL_DEFINITIONS: List[ToolDefinition] = [
    ToolDefinition(
        "check_duplicate_contact",
        "Check whether a contact would duplicate an existing one (email, phone, name + account)",
        ContactCheckRequest,
    ),
    ToolDefinition(
        "check_duplicate_deal",
        "Check whether a deal would duplicate an existing one in the same account",
        DealCheckRequest,
    ),
    ToolDefinition(
        "create_contact",
        "Create a new contact person in the CRM; refused when a likely duplicate exists unless force is set",
        ContactCreateRequest,
    ),
    ToolDefinition(
        "create_deal",
        "Create a new deal; refused when a likely duplicate exists unless force is set",
        DealCreateRequest,
    ),
    ToolDefinition(
        "merge_contacts",
        "Merge the source contact into the target contact and delete the source",
        MergeRequest,
    ),
    ToolDefinition(
        "merge_deals",
        "Merge the source deal into the target deal and delete the source",
        MergeRequest,
    ),
    ToolDefinition(
        "list_insightly_contacts",
        "List contacts from Insightly",
        ListInsightlyContactsArgs,
        requires_insightly=True,
    ),
    ToolDefinition(
        "get_insightly_contact",
        "Retrieve a single Insightly contact by CONTACT_ID",
        InsightlyContactIdArgs,
        requires_insightly=True,
    ),
    ToolDefinition(
        "search_insightly_contacts",
        "Search Insightly contacts by field name and value",
        SearchInsightlyContactsArgs,
        requires_insightly=True,
    ),
    ToolDefinition(
        "import_insightly_contact",
        "Import an Insightly contact into the CRM through the duplicate check",
        ImportInsightlyContactArgs,
        requires_insightly=True,
    ),
]

TOOLS_BY_NAME: Dict[str, ToolDefinition] = {tool.name: tool for tool in TOOL_DEFINITIONS}


def text_result(text: str, *, is_error: bool = False, structured: Optional[Dict[str, Any]] = None) -> ToolResult:
    result: ToolResult = {
        "content": [{"type": "text", "text": text}],
        "isError": is_error,
    }
    if structured is not None:
        result["structuredContent"] = structured
    return result


def _resolution_payload(result: ResolutionResult) -> Dict[str, Any]:
    return ResolutionResponse.from_dataclass(result).model_dump(by_alias=True)


def _duplicate_text(result: ResolutionResult, entity: str) -> str:
    top = result.matches[0]
    record = top.original_record
    label = record.get("name") or f"{record.get('first_name', '')} {record.get('last_name', '')}".strip()
    if result.suggested_action == "skip":
        advice = f"Update the existing {entity} instead; identical records cannot be forced."
    else:
        advice = f"To proceed anyway, update the existing {entity} or retry with force=true."
    return f"{result.message}\n\nExisting {entity}: {label} (ID: {top.id})\n\n{advice}"


class CrmToolDispatcher:
    def __init__(
        self,
        resolver: DuplicateResolver,
        crm_service: CrmService,
        merge_service: MergeService,
        insightly: Optional[InsightlyClient] = None,
    ) -> None:
        self.resolver = resolver
        self.crm_service = crm_service
        self.merge_service = merge_service
        self.insightly = insightly

    def list_tools(self) -> List[Dict[str, Any]]:
        return [
            tool.to_schema()
            for tool in TOOL_DEFINITIONS
            if not tool.requires_insightly or self.insightly is not None
        ]

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> ToolResult:
        tool = TOOLS_BY_NAME.get(name)
        if tool is None or (tool.requires_insightly and self.insightly is None):
            return text_result(f"Unknown tool: {name}", is_error=True)

        try:
            args = tool.args_model.model_validate(arguments or {})
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}"
                for err in exc.errors()
            )
            return text_result(f"Invalid arguments for {name}: {problems}", is_error=True)

        handler = getattr(self, f"_tool_{name}")
        logger.info("Calling CRM tool %s", name)
        try:
            return await handler(args)
        except DuplicateDetected as exc:
            entity = "deal" if "deal" in name else "contact"
            return text_result(
                _duplicate_text(exc.result, entity),
                is_error=True,
                structured=_resolution_payload(exc.result),
            )
        except (InvalidCandidate, InvalidMerge, RecordNotFound, StoreConflict) as exc:
            return text_result(f"Error: {exc}", is_error=True)
        except InsightlyApiError as exc:
            return text_result(
                f"Error: {exc}",
                is_error=True,
                structured={"status": exc.status, "body": exc.body},
            )
        except InsightlyClientError as exc:
            return text_result(f"Error: {exc}", is_error=True)

    # =========================================================================
    # CRM tools
    # =========================================================================

    async def _tool_check_duplicate_contact(self, args: ContactCheckRequest) -> ToolResult:
        result = await self.resolver.resolve_contact(args.to_candidate())
        return text_result(result.message, structured=_resolution_payload(result))

    async def _tool_check_duplicate_deal(self, args: DealCheckRequest) -> ToolResult:
        result = await self.resolver.resolve_deal(args.to_candidate())
        return text_result(result.message, structured=_resolution_payload(result))

    async def _tool_create_contact(self, args: ContactCreateRequest) -> ToolResult:
        outcome = await self.crm_service.create_contact(args.to_row(), args.to_candidate(), force=args.force)
        record = outcome.record
        text = f'Contact "{record.get("first_name")} {record.get("last_name")}" created successfully'
        if outcome.warning:
            text = f"{outcome.warning}\n\n{text} (potential duplicate exists)"
        return text_result(text, structured={"contacts": [record]})

    async def _tool_create_deal(self, args: DealCreateRequest) -> ToolResult:
        outcome = await self.crm_service.create_deal(args.to_row(), args.to_candidate(), force=args.force)
        record = outcome.record
        text = f'Deal "{record.get("name")}" created successfully'
        if outcome.warning:
            text = f"{outcome.warning}\n\n{text} (potential duplicate exists)"
        return text_result(text, structured={"deals": [record]})

    async def _tool_merge_contacts(self, args: MergeRequest) -> ToolResult:
        merged = await self.merge_service.merge_contacts(args.source_id, args.target_id)
        return text_result(
            f"Contact {args.source_id} merged into {args.target_id}",
            structured={"contacts": [merged.target], **_merge_stats(merged)},
        )

    async def _tool_merge_deals(self, args: MergeRequest) -> ToolResult:
        merged = await self.merge_service.merge_deals(args.source_id, args.target_id)
        return text_result(
            f"Deal {args.source_id} merged into {args.target_id}",
            structured={"deals": [merged.target], **_merge_stats(merged)},
        )

    # =========================================================================
    # Insightly tools
    # =========================================================================

    async def _tool_list_insightly_contacts(self, args: ListInsightlyContactsArgs) -> ToolResult:
        contacts = await self.insightly.list_contacts(**args.model_dump(exclude_none=True))
        return text_result(f"Found {len(contacts)} Insightly contacts", structured={"contacts": contacts})

    async def _tool_get_insightly_contact(self, args: InsightlyContactIdArgs) -> ToolResult:
        contact = await self.insightly.get_contact(args.contact_id)
        return text_result(
            f"Insightly contact {args.contact_id}",
            structured={"contacts": [contact]},
        )

    async def _tool_search_insightly_contacts(self, args: SearchInsightlyContactsArgs) -> ToolResult:
        contacts = await self.insightly.search_contacts(args.field_name, args.field_value)
        return text_result(f"Found {len(contacts)} Insightly contacts", structured={"contacts": contacts})

    async def _tool_import_insightly_contact(self, args: ImportInsightlyContactArgs) -> ToolResult:
        contact = await self.insightly.get_contact(args.contact_id)
        candidate = contact_to_candidate(contact, account_id=args.account_id)
        row = contact_to_row(contact, account_id=args.account_id)
        outcome = await self.crm_service.create_contact(row, candidate, force=args.force)
        text = f"Imported Insightly contact {args.contact_id} as {outcome.record.get('id')}"
        if outcome.warning:
            text = f"{outcome.warning}\n\n{text}"
        return text_result(
            text,
            structured={
                "contacts": [outcome.record],
                "duplicateCheck": _resolution_payload(outcome.duplicate_check),
            },
        )


def _merge_stats(merged: MergeResult) -> Dict[str, Any]:
    return {
        "reassignedInteractions": merged.reassigned_interactions,
        "sourceDeleted": merged.source_deleted,
    }


def get_crm_tool_dispatcher(
    resolver: DuplicateResolver = Depends(get_duplicate_resolver),
    crm_service: CrmService = Depends(get_crm_service),
    merge_service: MergeService = Depends(get_merge_service),
    insightly: Optional[InsightlyClient] = Depends(get_insightly_client),
) -> CrmToolDispatcher:
    return CrmToolDispatcher(resolver, crm_service, merge_service, insightly)
