"""
Contact API Routes

POST /api/contacts/duplicates - Duplicate check for a candidate contact
POST /api/contacts            - Duplicate-gated contact creation
POST /api/contacts/merge      - Merge a source contact into a target
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, status

from agent_crm.api.errors import HANDLED_ERRORS, handle_error
from agent_crm.models.crm import ContactCheckRequest, ContactCreateRequest, CreateResponse, MergeRequest, MergeResponse
from agent_crm.models.dedup import ResolutionResponse
from agent_crm.services.crm_service import CrmService, get_crm_service
from agent_crm.services.duplicate_resolver import DuplicateResolver, get_duplicate_resolver
from agent_crm.services.merge_service import MergeService, get_merge_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/contacts", tags=["contacts"])


@router.post(
    "/duplicates",
    response_model=ResolutionResponse,
    response_model_by_alias=True,
)
async def check_contact_duplicates(
    request: ContactCheckRequest,
    resolver: DuplicateResolver = Depends(get_duplicate_resolver),
) -> ResolutionResponse:
    try:
        result = await resolver.resolve_contact(request.to_candidate())
    except HANDLED_ERRORS as exc:
        raise handle_error(exc)
    return ResolutionResponse.from_dataclass(result)


@router.post(
    "",
    response_model=CreateResponse,
    response_model_by_alias=True,
    status_code=status.HTTP_201_CREATED,
)
async def create_contact(
    request: ContactCreateRequest,
    service: CrmService = Depends(get_crm_service),
) -> CreateResponse:
    logger.info(f"[contacts.create] {request.first_name} {request.last_name} force={request.force}")
    try:
        outcome = await service.create_contact(request.to_row(), request.to_candidate(), force=request.force)
    except HANDLED_ERRORS as exc:
        raise handle_error(exc)
    return CreateResponse(
        record=outcome.record,
        duplicateCheck=ResolutionResponse.from_dataclass(outcome.duplicate_check),
        warning=outcome.warning,
    )


@router.post("/merge", response_model=MergeResponse, response_model_by_alias=True)
async def merge_contacts(
    request: MergeRequest,
    service: MergeService = Depends(get_merge_service),
) -> MergeResponse:
    try:
        merged = await service.merge_contacts(request.source_id, request.target_id)
    except HANDLED_ERRORS as exc:
        raise handle_error(exc)
    return MergeResponse(
        record=merged.target,
        reassignedInteractions=merged.reassigned_interactions,
        sourceDeleted=merged.source_deleted,
    )
