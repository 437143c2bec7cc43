"""Pydantic schemas for findings: untrusted provider output, canonical findings, and the review run."""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, model_validator


def normalize_path(path: str) -> str:
    """Forward slashes, no leading './' or '/'."""
    p = path.strip().replace("\\", "/")
    while p.startswith("./"):
        p = p[2:]
    return p.lstrip("/")


def same_file(reported: str, actual: str) -> bool:
    """True if a provider-reported path refers to the chunk's file (exact, or one is a path suffix of the other)."""
    a = normalize_path(reported)
    b = normalize_path(actual)
    if not a or not b:
        return False
    return a == b or b.endswith("/" + a) or a.endswith("/" + b)


class RawFinding(BaseModel):
    """
    One record from the analysis provider. Untrusted: validated against the chunk it was produced for.

    Pass validation context {"checks": <mapping of known check ids>, "chunk": <Chunk>} to enforce
    that the check id is known, the file is the chunk's file, and the line falls inside the chunk.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    check_id: str = Field(..., min_length=1)
    confidence: float = Field(..., ge=0, le=1)
    file: str = Field(..., min_length=1)
    line: int = Field(..., ge=1, description="Absolute line number in the file.")
    description: str = Field(..., min_length=1)
    suggested_fix: str | None = None

    # Set by the response parser after validation; never read from provider output.
    chunk_index: int = Field(default=0, ge=0)
    ordinal: int = Field(default=0, ge=0)
    content_hash: str = ""

    @model_validator(mode="before")
    @classmethod
    def drop_internal_fields(cls, data: object, info: ValidationInfo) -> object:
        if isinstance(data, dict) and info.context is not None:
            return {
                k: v for k, v in data.items() if k not in ("chunk_index", "ordinal", "content_hash")
            }
        return data

    @model_validator(mode="after")
    def check_against_chunk(self, info: ValidationInfo) -> "RawFinding":
        context = info.context or {}
        checks = context.get("checks")
        chunk = context.get("chunk")
        if checks is not None and self.check_id not in checks:
            raise ValueError(f"unknown check id {self.check_id!r}")
        if chunk is not None:
            if not same_file(self.file, chunk.path):
                raise ValueError(f"file {self.file!r} is not the analyzed file {chunk.path!r}")
            if not chunk.start_line <= self.line <= chunk.end_line:
                raise ValueError(
                    f"line {self.line} is outside the analyzed range {chunk.start_line}-{chunk.end_line}"
                )
        return self


class FindingKey(BaseModel):
    """Canonical identity of a finding: check, location, and the content of the flagged line."""

    model_config = ConfigDict(frozen=True)

    check_id: str = Field(..., min_length=1)
    file: str = Field(..., min_length=1)
    line: int = Field(..., ge=1)
    content_hash: str = Field(..., min_length=1)

    @property
    def token(self) -> str:
        return f"{self.check_id}|{self.file}|{self.line}|{self.content_hash}"


class FindingStatus(StrEnum):
    # An expired mark leaves the finding ACTIVE with suppression_expired set; Expired is
    # a ledger state (LedgerState.EXPIRED), not a third finding status.
    ACTIVE = "active"
    SUPPRESSED = "suppressed"


class SuppressionInfo(BaseModel):
    """Ledger annotation attached to a finding that has (or had) a false-positive mark."""

    model_config = ConfigDict(frozen=True)

    mark_id: str
    requester: str
    reason: str
    approval_state: str
    expires_at: datetime
    decided_by: str | None = None


class Finding(BaseModel):
    """Canonical, deduplicated finding. Only the false-positive ledger changes status (by copy)."""

    model_config = ConfigDict(frozen=True)

    key: FindingKey
    title: str = Field(..., min_length=1, description="Check display name, e.g. 'SQL Injection'.")
    severity: str = Field(..., min_length=1)
    confidence: float = Field(..., ge=0, le=1)
    owasp: str = ""
    cwe: str = ""
    description: str = Field(..., min_length=1)
    suggested_fix: str | None = None
    status: FindingStatus = FindingStatus.ACTIVE
    suppression: SuppressionInfo | None = None
    suppression_expired: bool = Field(
        default=False,
        description="True when a mark existed but has expired; the finding is Active again.",
    )

    @property
    def check_id(self) -> str:
        return self.key.check_id

    @property
    def file(self) -> str:
        return self.key.file

    @property
    def line(self) -> int:
        return self.key.line

    @property
    def location(self) -> str:
        return f"{self.key.file}:{self.key.line}"

    @property
    def is_active(self) -> bool:
        return self.status is FindingStatus.ACTIVE


class CoverageGap(BaseModel):
    """A chunk whose analysis did not complete; reported instead of silently dropped."""

    model_config = ConfigDict(frozen=True)

    file: str
    start_line: int = Field(..., ge=1)
    end_line: int = Field(..., ge=1)
    checksum: str
    attempts: int = Field(..., ge=0)
    reason: str


class Conclusion(StrEnum):
    PASS = "pass"
    FAIL = "fail"


class ReviewRun(BaseModel):
    """Result of one invocation. Built once, never changed after publication."""

    model_config = ConfigDict(frozen=True)

    repository: str = ""
    change_set_id: str = Field(..., min_length=1)
    commit_sha: str = Field(..., min_length=1)
    findings: tuple[Finding, ...] = ()
    coverage_gaps: tuple[CoverageGap, ...] = ()
    conclusion: Conclusion

    @property
    def active_findings(self) -> list[Finding]:
        return [f for f in self.findings if f.is_active]

    @property
    def suppressed_findings(self) -> list[Finding]:
        return [f for f in self.findings if not f.is_active]
