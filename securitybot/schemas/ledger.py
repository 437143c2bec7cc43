"""Pydantic schemas for the false-positive ledger: marks, derived states, and parsed commands."""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from securitybot.schemas.findings import FindingKey


class ApprovalState(StrEnum):
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"


class LedgerState(StrEnum):
    """Derived suppression state of one finding key."""

    ACTIVE = "active"
    PENDING_APPROVAL = "pending_approval"
    SUPPRESSED = "suppressed"
    EXPIRED = "expired"


class LedgerEvent(StrEnum):
    MARK = "mark"
    APPROVE = "approve"
    REJECT = "reject"
    EXPIRE = "expire"


class LedgerScope(BaseModel):
    """Marks are kept per repository and change set."""

    model_config = ConfigDict(frozen=True)

    repository: str = ""
    change_set_id: str = Field(..., min_length=1)


class FalsePositiveMark(BaseModel):
    """One suppression request for a finding key. History is append-only; decisions bump version."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    key: FindingKey
    title: str = Field(..., min_length=1, description="Check display name at the time of marking.")
    requester: str = Field(..., min_length=1)
    reason: str = ""
    created_at: datetime
    expires_at: datetime
    approval_state: ApprovalState = ApprovalState.PENDING_APPROVAL
    decided_by: str | None = None
    decided_at: datetime | None = None
    sequence: int = Field(default=1, ge=1, description="Ordinal of this mark among marks for the same key.")
    version: int = Field(default=1, ge=1, description="Optimistic concurrency version.")

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class CommandAction(StrEnum):
    MARK = "mark"
    APPROVE = "approve"
    REJECT = "reject"


class ParsedCommand(BaseModel):
    """A syntactically valid false-positive command, not yet matched to a finding."""

    model_config = ConfigDict(frozen=True)

    action: CommandAction
    check_type: str
    file: str
    line: int = Field(..., ge=1)
    reason: str = ""


class CommandResult(BaseModel):
    """Outcome of a successfully applied command, used for the reply to the requester."""

    model_config = ConfigDict(frozen=True)

    action: CommandAction
    mark: FalsePositiveMark
    state: LedgerState
    message: str


class MarkHistoryEntry(BaseModel):
    """API view of a stored mark with its current derived state."""

    mark: FalsePositiveMark
    state: LedgerState


class FalsePositiveHistoryResponse(BaseModel):
    """Response body for the false-positive audit endpoint."""

    repository: str
    change_set_id: str
    track_history: bool = Field(description="False when only the latest mark per finding is returned")
    entries: list[MarkHistoryEntry]
