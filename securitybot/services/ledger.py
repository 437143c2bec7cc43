"""False-positive ledger: suppression state machine over stored marks.

State is never stored; it is derived from the latest mark for a finding key each time it is
needed, so expiry is applied lazily and expired marks stay in history.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timedelta, timezone

from securitybot.core.errors import FalsePositiveCommandError, MarkVersionConflict
from securitybot.schemas.config import BotConfig
from securitybot.schemas.findings import Finding, FindingKey, FindingStatus, SuppressionInfo, normalize_path
from securitybot.schemas.ledger import (
    ApprovalState,
    CommandAction,
    CommandResult,
    FalsePositiveMark,
    LedgerEvent,
    LedgerState,
    MarkHistoryEntry,
)
from securitybot.services.commands import parse_command

logger = logging.getLogger(__name__)

TRANSITIONS: dict[tuple[LedgerState, LedgerEvent], LedgerState] = {
    (LedgerState.ACTIVE, LedgerEvent.MARK): LedgerState.PENDING_APPROVAL,
    (LedgerState.PENDING_APPROVAL, LedgerEvent.APPROVE): LedgerState.SUPPRESSED,
    (LedgerState.PENDING_APPROVAL, LedgerEvent.REJECT): LedgerState.ACTIVE,
    (LedgerState.SUPPRESSED, LedgerEvent.EXPIRE): LedgerState.ACTIVE,
}


def transition(state: LedgerState, event: LedgerEvent) -> LedgerState:
    """Next state, or FalsePositiveCommandError if the event is not allowed in this state."""
    if state is LedgerState.EXPIRED:
        state = TRANSITIONS[(LedgerState.SUPPRESSED, LedgerEvent.EXPIRE)]
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise FalsePositiveCommandError(
            f"Cannot {event.value} a finding that is {state.value.replace('_', ' ')}."
        ) from None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PermissionResolver(ABC):
    @abstractmethod
    async def is_maintainer(self, identity: str) -> bool:
        """True if identity may approve or reject false-positive marks."""


class MarkStore(ABC):
    """Persistence for marks. Writes are checked against what the caller last read."""

    @abstractmethod
    async def load(self) -> list[FalsePositiveMark]:
        """All marks in scope, any order."""

    @abstractmethod
    async def append(self, mark: FalsePositiveMark) -> None:
        """Store a new mark. Raise MarkVersionConflict if its sequence is already taken."""

    @abstractmethod
    async def replace(self, mark: FalsePositiveMark, *, previous: FalsePositiveMark) -> None:
        """Store a decision. Raise MarkVersionConflict if the stored mark is no longer `previous`."""


class FalsePositiveLedger:
    """
    Applies false-positive commands and annotates findings with their suppression state.

    Read-modify-write for one finding key is serialized in process by a per-key lock and across
    processes by the store's version checks. A conflict is reported back as a retryable
    FalsePositiveCommandError; no write ever overwrites a newer one.
    """

    def __init__(
        self,
        store: MarkStore,
        config: BotConfig,
        permissions: PermissionResolver,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.config = config
        self.fp_config = config.false_positives
        self.permissions = permissions
        self._clock = clock
        self._marks: dict[str, list[FalsePositiveMark]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._audit = config.logging.include_false_positives

    async def load(self) -> None:
        marks = await self.store.load()
        by_key: dict[str, list[FalsePositiveMark]] = {}
        for mark in marks:
            by_key.setdefault(mark.key.token, []).append(mark)
        for history in by_key.values():
            history.sort(key=lambda m: m.sequence)
        self._marks = by_key
        logger.info("False-positive ledger loaded", extra={"mark_count": len(marks), "key_count": len(by_key)})

    def _latest(self, key: FindingKey) -> FalsePositiveMark | None:
        history = self._marks.get(key.token)
        return history[-1] if history else None

    def mark_state(self, mark: FalsePositiveMark, now: datetime) -> LedgerState:
        if mark.approval_state is ApprovalState.REJECTED:
            return LedgerState.ACTIVE
        if mark.is_expired(now):
            return LedgerState.EXPIRED
        if mark.approval_state is ApprovalState.APPROVED:
            return LedgerState.SUPPRESSED
        if self.fp_config.require_approval:
            return LedgerState.PENDING_APPROVAL
        return LedgerState.SUPPRESSED

    def state_of(self, key: FindingKey, now: datetime | None = None) -> LedgerState:
        latest = self._latest(key)
        if latest is None:
            return LedgerState.ACTIVE
        return self.mark_state(latest, now or self._clock())

    def apply(self, findings: Iterable[Finding], now: datetime | None = None) -> list[Finding]:
        """
        Return copies of findings annotated with their ledger state.

        Any previous annotation is discarded first, so re-applying to already annotated
        findings gives the same result as applying to fresh ones.
        """
        now = now or self._clock()
        annotated: list[Finding] = []
        for finding in findings:
            fresh = finding.model_copy(
                update={"status": FindingStatus.ACTIVE, "suppression": None, "suppression_expired": False}
            )
            latest = self._latest(finding.key) if self.fp_config.enabled else None
            if latest is None or latest.approval_state is ApprovalState.REJECTED:
                annotated.append(fresh)
                continue
            state = self.mark_state(latest, now)
            info = SuppressionInfo(
                mark_id=latest.id,
                requester=latest.requester,
                reason=latest.reason,
                approval_state=latest.approval_state.value,
                expires_at=latest.expires_at,
                decided_by=latest.decided_by,
            )
            update: dict[str, object] = {"suppression": info}
            if state is LedgerState.SUPPRESSED:
                update["status"] = FindingStatus.SUPPRESSED
            elif state is LedgerState.EXPIRED:
                update["suppression_expired"] = True
                if self._audit:
                    logger.info(
                        "False-positive mark expired",
                        extra={"mark_id": latest.id, "finding": finding.key.token, "expires_at": latest.expires_at.isoformat()},
                    )
            annotated.append(fresh.model_copy(update=update))
        return annotated

    def history(self, key: FindingKey | None = None, now: datetime | None = None) -> list[MarkHistoryEntry]:
        """Stored marks with their derived state; only the latest per key unless track_history is on."""
        now = now or self._clock()
        histories = [self._marks.get(key.token, [])] if key is not None else list(self._marks.values())
        entries: list[MarkHistoryEntry] = []
        for marks in histories:
            selected = marks if self.fp_config.track_history else marks[-1:]
            for mark in selected:
                entries.append(MarkHistoryEntry(mark=mark, state=self.mark_state(mark, now)))
        entries.sort(key=lambda e: (e.mark.key.file, e.mark.key.line, e.mark.key.check_id, e.mark.sequence))
        return entries

    async def handle_command(self, text: str, requester: str, findings: Iterable[Finding]) -> CommandResult | None:
        """
        Parse and apply the command in a comment. Returns None if the comment has no command.

        Raises FalsePositiveCommandError for anything that cannot be applied; the ledger is
        unchanged in that case.
        """
        command = parse_command(text, self.fp_config)
        if command is None:
            return None
        if not self.fp_config.enabled:
            raise FalsePositiveCommandError("False-positive commands are disabled for this repository.")
        if self.config.check_by_name(command.check_type) is None:
            raise FalsePositiveCommandError(f"Unknown check type {command.check_type!r}.")
        target = normalize_path(command.file)
        finding = next(
            (
                f
                for f in findings
                if f.title == command.check_type and normalize_path(f.file) == target and f.line == command.line
            ),
            None,
        )
        if finding is None:
            raise FalsePositiveCommandError(
                f"No {command.check_type} finding at {command.file}:{command.line} in the current report."
            )
        if command.action is CommandAction.MARK:
            return await self.mark(finding, requester, command.reason)
        return await self.decide(finding.key, requester, command.action, command.reason)

    def _lock(self, key: FindingKey) -> asyncio.Lock:
        return self._locks.setdefault(key.token, asyncio.Lock())

    async def _write(self, write: Awaitable[None], key: FindingKey) -> None:
        try:
            await write
        except MarkVersionConflict as e:
            await self.load()
            raise FalsePositiveCommandError(
                f"The false-positive record for {key.file}:{key.line} changed while this command was applied. Please retry.",
                cause=e,
                retryable=True,
            ) from e

    async def mark(self, finding: Finding, requester: str, reason: str) -> CommandResult:
        reason = reason.strip()
        if self.fp_config.include_reason and not reason:
            raise FalsePositiveCommandError("A reason is required when marking a false positive.")
        async with self._lock(finding.key):
            now = self._clock()
            state = transition(self.state_of(finding.key, now), LedgerEvent.MARK)
            latest = self._latest(finding.key)
            mark = FalsePositiveMark(
                id=uuid.uuid4().hex,
                key=finding.key,
                title=finding.title,
                requester=requester,
                reason=reason,
                created_at=now,
                expires_at=now + timedelta(days=self.fp_config.expiration),
                sequence=latest.sequence + 1 if latest else 1,
            )
            if not self.fp_config.require_approval:
                state = transition(state, LedgerEvent.APPROVE)
                mark = mark.model_copy(
                    update={"approval_state": ApprovalState.APPROVED, "decided_by": requester, "decided_at": now}
                )
            await self._write(self.store.append(mark), finding.key)
            self._marks.setdefault(finding.key.token, []).append(mark)

        self._log_audit("False-positive mark recorded", mark, state)
        if state is LedgerState.PENDING_APPROVAL:
            message = (
                f"Marked {finding.title} at `{finding.location}` as a false positive. "
                "It stays active until a maintainer approves the mark."
            )
        else:
            message = f"Marked {finding.title} at `{finding.location}` as a false positive; it is now suppressed."
        return CommandResult(action=CommandAction.MARK, mark=mark, state=state, message=message)

    async def decide(self, key: FindingKey, decider: str, action: CommandAction, note: str = "") -> CommandResult:
        """Approve or reject the pending mark for key. Only maintainers may decide."""
        if action is CommandAction.MARK:
            raise ValueError("decide() takes approve or reject")
        if not await self.permissions.is_maintainer(decider):
            raise FalsePositiveCommandError(
                f"@{decider} does not have permission to {action.value} false-positive marks."
            )
        event = LedgerEvent.APPROVE if action is CommandAction.APPROVE else LedgerEvent.REJECT
        async with self._lock(key):
            now = self._clock()
            state = transition(self.state_of(key, now), event)
            previous = self._latest(key)
            if previous is None:
                raise FalsePositiveCommandError(f"No false-positive mark for {key.file}:{key.line}.")
            decided = previous.model_copy(
                update={
                    "approval_state": ApprovalState.APPROVED if action is CommandAction.APPROVE else ApprovalState.REJECTED,
                    "decided_by": decider,
                    "decided_at": now,
                    "version": previous.version + 1,
                }
            )
            await self._write(self.store.replace(decided, previous=previous), key)
            history = self._marks[key.token]
            history[-1] = decided

        verb = "Approved" if action is CommandAction.APPROVE else "Rejected"
        self._log_audit(f"False-positive mark {verb.lower()}", decided, state, note=note)
        outcome = "is now suppressed" if state is LedgerState.SUPPRESSED else "stays active"
        return CommandResult(
            action=action,
            mark=decided,
            state=state,
            message=f"{verb} the false-positive mark on {decided.title} at `{key.file}:{key.line}`; the finding {outcome}.",
        )

    def _log_audit(self, message: str, mark: FalsePositiveMark, state: LedgerState, note: str = "") -> None:
        if not self._audit:
            return
        extra = {
            "mark_id": mark.id,
            "finding": mark.key.token,
            "requester": mark.requester,
            "decided_by": mark.decided_by,
            "state": state.value,
            "reason": mark.reason,
        }
        if note:
            extra["note"] = note
        logger.info(message, extra=extra)
