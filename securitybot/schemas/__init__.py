"""Pydantic schemas: bot configuration, change sets, findings, and the false-positive ledger."""

from securitybot.schemas.changeset import ChangedFile, ChangeSet, Chunk, Hunk
from securitybot.schemas.config import BotConfig, CheckDefinition, SeverityLevel
from securitybot.schemas.findings import (
    Conclusion,
    CoverageGap,
    Finding,
    FindingKey,
    FindingStatus,
    RawFinding,
    ReviewRun,
)
from securitybot.schemas.health import HealthResponse
from securitybot.schemas.ledger import (
    ApprovalState,
    FalsePositiveHistoryResponse,
    FalsePositiveMark,
    LedgerState,
    MarkHistoryEntry,
)

__all__ = [
    "ApprovalState",
    "BotConfig",
    "ChangeSet",
    "ChangedFile",
    "CheckDefinition",
    "Chunk",
    "Conclusion",
    "CoverageGap",
    "FalsePositiveHistoryResponse",
    "FalsePositiveMark",
    "Finding",
    "FindingKey",
    "FindingStatus",
    "HealthResponse",
    "Hunk",
    "LedgerState",
    "MarkHistoryEntry",
    "RawFinding",
    "ReviewRun",
    "SeverityLevel",
]
