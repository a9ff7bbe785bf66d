"""
CRM request/response models (contacts, deals, merges, tool calls)
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field
from pydantic.config import ConfigDict

from agent_crm.models.dedup import ContactCandidate, DealCandidate, ResolutionResponse


# =============================================================================
# Request Models
# =============================================================================

class ContactCheckRequest(BaseModel):
    """Duplicate check input for a contact"""
    model_config = ConfigDict(populate_by_name=True)

    first_name: str = Field(..., alias="firstName")
    last_name: str = Field(..., alias="lastName")
    email: Optional[str] = None
    phone: Optional[str] = None
    account_id: Optional[str] = Field(default=None, alias="accountId")

    def to_candidate(self) -> ContactCandidate:
        return ContactCandidate(
            first_name=self.first_name,
            last_name=self.last_name,
            email=self.email,
            phone=self.phone,
            account_id=self.account_id,
        )


class ContactCreateRequest(ContactCheckRequest):
    role: Optional[str] = None
    tags: Optional[List[str]] = None
    force: bool = False

    def to_row(self) -> Dict[str, Any]:
        row = self.model_dump(exclude={"force"}, exclude_none=True)
        row.setdefault("account_id", None)
        return row


class DealCheckRequest(BaseModel):
    """Duplicate check input for a deal"""
    model_config = ConfigDict(populate_by_name=True)

    name: str
    account_id: Optional[str] = Field(default=None, alias="accountId")
    stage: Optional[str] = None

    def to_candidate(self) -> DealCandidate:
        return DealCandidate(name=self.name, account_id=self.account_id, stage=self.stage)


class DealCreateRequest(DealCheckRequest):
    stage: str = "New"
    pipeline_id: Optional[str] = Field(default=None, alias="pipelineId")
    amount: Optional[float] = None
    close_date: Optional[str] = Field(default=None, alias="closeDate")
    status: Literal["open", "won", "lost"] = "open"
    tags: Optional[List[str]] = None
    force: bool = False

    def to_row(self) -> Dict[str, Any]:
        row = self.model_dump(exclude={"force"}, exclude_none=True)
        row.setdefault("account_id", None)
        return row


class MergeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_id: str = Field(..., alias="sourceId")
    target_id: str = Field(..., alias="targetId")


class ToolCallRequest(BaseModel):
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Response Models
# =============================================================================

class CreateResponse(BaseModel):
    """Created record plus the duplicate check that gated it"""
    model_config = ConfigDict(populate_by_name=True)

    record: Dict[str, Any]
    duplicate_check: ResolutionResponse = Field(..., alias="duplicateCheck")
    warning: Optional[str] = None


class MergeResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    record: Dict[str, Any]
    reassigned_interactions: int = Field(..., alias="reassignedInteractions")
    source_deleted: bool = Field(..., alias="sourceDeleted")
