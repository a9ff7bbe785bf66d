from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

SuggestedAction = Literal["create", "merge", "update", "skip"]


@dataclass
class ContactCandidate:
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    account_id: Optional[str] = None


@dataclass
class DealCandidate:
    name: str
    account_id: Optional[str] = None
    stage: Optional[str] = None


@dataclass(frozen=True)
class ContactMatchFilter:
    """Records matching ANY populated clause are returned.

    ``phone_digits`` is already digit-normalized. The name clause is scoped to
    ``account_id``; ``account_id=None`` means "records without an account".
    """

    email: Optional[str] = None
    phone_digits: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    account_id: Optional[str] = None


@dataclass(frozen=True)
class DealMatchFilter:
    """Exact-name clause scoped to ``account_id``, plus open deals of that account."""

    name: str
    account_id: Optional[str] = None
    include_open_in_account: bool = False


@dataclass
class MatchCandidate:
    id: str
    similarity_score: float
    match_reason: str
    original_record: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ResolutionResult:
    is_duplicate: bool
    matches: List[MatchCandidate]
    suggested_action: SuggestedAction
    message: str


class MatchCandidateModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    similarity_score: float = Field(..., alias="similarityScore")
    match_reason: str = Field(..., alias="matchReason")
    original_record: Dict[str, Any] = Field(default_factory=dict, alias="originalRecord")

    @classmethod
    def from_dataclass(cls, match: MatchCandidate) -> "MatchCandidateModel":
        return cls(
            id=match.id,
            similarityScore=match.similarity_score,
            matchReason=match.match_reason,
            originalRecord=match.original_record,
        )


class ResolutionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_duplicate: bool = Field(..., alias="isDuplicate")
    matches: List[MatchCandidateModel]
    suggested_action: SuggestedAction = Field(..., alias="suggestedAction")
    message: str

    @classmethod
    def from_dataclass(cls, result: ResolutionResult) -> "ResolutionResponse":
        return cls(
            isDuplicate=result.is_duplicate,
            matches=[MatchCandidateModel.from_dataclass(m) for m in result.matches],
            suggestedAction=result.suggested_action,
            message=result.message,
        )
