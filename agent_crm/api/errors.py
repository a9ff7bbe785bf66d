from __future__ import annotations

import logging

from fastapi import HTTPException, status

from agent_crm.middleware.request_id import get_request_id
from agent_crm.models.dedup import ResolutionResponse
from agent_crm.services.errors import (
    CrmError,
    DuplicateDetected,
    InvalidCandidate,
    InvalidMerge,
    RecordNotFound,
    StoreConflict,
    StoreUnavailable,
)
from agent_crm.services.insightly_client import InsightlyClientError

logger = logging.getLogger(__name__)


def handle_error(exc: Exception) -> HTTPException:
    """Map CRM service errors onto HTTP responses"""
    if isinstance(exc, DuplicateDetected):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": str(exc),
                "duplicateCheck": ResolutionResponse.from_dataclass(exc.result).model_dump(by_alias=True),
                "requestId": get_request_id(),
            },
        )
    if isinstance(exc, InvalidCandidate):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    if isinstance(exc, RecordNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, InvalidMerge):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, StoreConflict):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, StoreUnavailable):
        logger.error("CRM store unavailable: %s", exc)
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"message": str(exc), "requestId": get_request_id()},
        )
    if isinstance(exc, InsightlyClientError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    logger.exception("Unhandled CRM error: %s", exc)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


HANDLED_ERRORS = (CrmError, InsightlyClientError)
