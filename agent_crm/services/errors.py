from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from agent_crm.models.dedup import ResolutionResult


class CrmError(RuntimeError):
    """Base error for CRM services"""
    pass


class StoreError(CrmError):
    """Raised by store implementations when a query fails"""

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code

    @property
    def is_unique_violation(self) -> bool:
        # Postgres unique_violation
        return self.code == "23505"


class StoreUnavailable(CrmError):
    """The CRM store could not be queried (network, auth or timeout)"""
    pass


class InvalidCandidate(CrmError, ValueError):
    """Candidate record is missing required fields"""
    pass


class RecordNotFound(CrmError):
    def __init__(self, table: str, record_id: str) -> None:
        super().__init__(f"{table} record not found: {record_id}")
        self.table = table
        self.record_id = record_id


class InvalidMerge(CrmError, ValueError):
    pass


class DuplicateDetected(CrmError):
    """Creation refused because the resolver found a likely duplicate"""

    def __init__(self, result: "ResolutionResult") -> None:
        super().__init__(result.message)
        self.result = result


class StoreConflict(CrmError):
    """Insert rejected by a store uniqueness constraint"""
    pass
