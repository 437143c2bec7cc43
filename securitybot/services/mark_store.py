"""Mark stores: a SQL table, or a single ledger comment on the pull request."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from securitybot.core.errors import ConfigError, MarkVersionConflict, SecurityBotError
from securitybot.models.false_positive import FalsePositiveMarkRecord
from securitybot.schemas.findings import FindingKey
from securitybot.schemas.ledger import ApprovalState, FalsePositiveMark, LedgerScope
from securitybot.services.github import GitHubClient, find_marked_comment, find_marked_comments
from securitybot.services.ledger import MarkStore

if TYPE_CHECKING:
    from securitybot.schemas.config import FalsePositiveConfig

logger = logging.getLogger(__name__)

LEDGER_MARKER = "<!-- securitybot:false-positive-ledger -->"
_DATA_PATTERN = re.compile(r"<!-- securitybot:ledger-data (\{.*?\}) -->", re.DOTALL)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _to_mark(row: FalsePositiveMarkRecord) -> FalsePositiveMark:
    return FalsePositiveMark(
        id=row.id,
        key=FindingKey(
            check_id=row.check_id,
            file=row.file_path,
            line=row.line,
            content_hash=row.content_hash,
        ),
        title=row.title,
        requester=row.requester,
        reason=row.reason or "",
        created_at=_as_utc(row.created_at),
        expires_at=_as_utc(row.expires_at),
        approval_state=ApprovalState(row.approval_state),
        decided_by=row.decided_by,
        decided_at=_as_utc(row.decided_at),
        sequence=row.sequence,
        version=row.version,
    )


class SqlMarkStore(MarkStore):
    """
    Marks in the false_positive_marks table.

    Inserts rely on the unique (key, sequence) constraint and updates on SQLAlchemy's
    version_id_col, so concurrent writers from other processes surface as MarkVersionConflict.
    Session work runs in a worker thread to keep the event loop free.
    """

    def __init__(self, session_factory: Callable[[], Session], scope: LedgerScope) -> None:
        self.session_factory = session_factory
        self.scope = scope

    async def load(self) -> list[FalsePositiveMark]:
        return await asyncio.to_thread(self._load)

    async def append(self, mark: FalsePositiveMark) -> None:
        await asyncio.to_thread(self._append, mark)

    async def replace(self, mark: FalsePositiveMark, *, previous: FalsePositiveMark) -> None:
        await asyncio.to_thread(self._replace, mark, previous)

    def _load(self) -> list[FalsePositiveMark]:
        with self.session_factory() as db:
            rows = db.scalars(
                select(FalsePositiveMarkRecord)
                .where(
                    FalsePositiveMarkRecord.repository == self.scope.repository,
                    FalsePositiveMarkRecord.change_set_id == self.scope.change_set_id,
                )
                .order_by(FalsePositiveMarkRecord.sequence)
            ).all()
            return [_to_mark(row) for row in rows]

    def _append(self, mark: FalsePositiveMark) -> None:
        row = FalsePositiveMarkRecord(
            id=mark.id,
            repository=self.scope.repository,
            change_set_id=self.scope.change_set_id,
            check_id=mark.key.check_id,
            file_path=mark.key.file,
            line=mark.key.line,
            content_hash=mark.key.content_hash,
            title=mark.title,
            requester=mark.requester,
            reason=mark.reason,
            created_at=mark.created_at,
            expires_at=mark.expires_at,
            approval_state=mark.approval_state.value,
            decided_by=mark.decided_by,
            decided_at=mark.decided_at,
            sequence=mark.sequence,
        )
        with self.session_factory() as db:
            db.add(row)
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise MarkVersionConflict(
                    f"Mark {mark.sequence} for {mark.key.token} already exists.", cause=e
                ) from e

    def _replace(self, mark: FalsePositiveMark, previous: FalsePositiveMark) -> None:
        with self.session_factory() as db:
            row = db.get(FalsePositiveMarkRecord, previous.id)
            if row is None or row.version != previous.version:
                raise MarkVersionConflict(f"Mark {previous.id} changed since it was read.")
            row.approval_state = mark.approval_state.value
            row.decided_by = mark.decided_by
            row.decided_at = mark.decided_at
            row.reason = mark.reason
            try:
                db.commit()
            except StaleDataError as e:
                db.rollback()
                raise MarkVersionConflict(f"Mark {previous.id} changed since it was read.", cause=e) from e


class LedgerDocument(BaseModel):
    revision: int = Field(default=0, ge=0)
    marks: list[FalsePositiveMark] = Field(default_factory=list)


def render_ledger_comment(document: LedgerDocument) -> str:
    lines = [
        LEDGER_MARKER,
        "### False-positive ledger",
        "",
        "| Finding | Location | Requested by | State | Decided by | Expires | Reason |",
        "|---------|----------|--------------|-------|------------|---------|--------|",
    ]
    for m in sorted(document.marks, key=lambda m: (m.key.file, m.key.line, m.key.check_id, m.sequence)):
        reason = " ".join(m.reason.split()).replace("|", "\\|")
        lines.append(
            f"| {m.title} | `{m.key.file}:{m.key.line}` | @{m.requester} | {m.approval_state.value} | "
            f"{'@' + m.decided_by if m.decided_by else ''} | {m.expires_at.date().isoformat()} | {reason} |"
        )
    if not document.marks:
        lines.append("| _none_ | | | | | | |")
    payload = document.model_dump_json().replace(">", "\\u003e")
    lines.append("")
    lines.append(f"<!-- securitybot:ledger-data {payload} -->")
    return "\n".join(lines) + "\n"


def parse_ledger_comment(body: str) -> LedgerDocument:
    match = _DATA_PATTERN.search(body)
    if not match:
        raise SecurityBotError("False-positive ledger comment has no data block.")
    try:
        return LedgerDocument.model_validate(json.loads(match.group(1)))
    except (json.JSONDecodeError, ValidationError) as e:
        raise SecurityBotError("False-positive ledger comment data is unreadable.", cause=e) from e


class CommentMarkStore(MarkStore):
    """
    Marks in one pull-request comment: a readable table plus a hidden JSON document.

    The document's revision is compared before every write, and the comment is read back after
    it; any sign of another writer refuses the write with MarkVersionConflict. Only the oldest
    ledger comment counts, and a writer that created a newer duplicate deletes it.
    """

    def __init__(self, client: GitHubClient, pr_number: int) -> None:
        self.client = client
        self.pr_number = pr_number
        self._revision = 0

    async def _read(self) -> tuple[dict[str, Any] | None, LedgerDocument]:
        comment = await find_marked_comment(self.client, self.pr_number, LEDGER_MARKER)
        if comment is None:
            return None, LedgerDocument()
        return comment, parse_ledger_comment(comment.get("body") or "")

    async def load(self) -> list[FalsePositiveMark]:
        _, document = await self._read()
        self._revision = document.revision
        return list(document.marks)

    async def _write(self, change: Callable[[list[FalsePositiveMark]], list[FalsePositiveMark]]) -> None:
        comment, document = await self._read()
        if document.revision != self._revision:
            raise MarkVersionConflict(
                f"Ledger comment is at revision {document.revision}, expected {self._revision}."
            )
        updated = LedgerDocument(revision=document.revision + 1, marks=change(list(document.marks)))
        body = render_ledger_comment(updated)
        if comment is None:
            written = await self.client.create_issue_comment(self.pr_number, body)
            comment_id, created = written["id"], True
        else:
            await self.client.update_issue_comment(comment["id"], body)
            comment_id, created = comment["id"], False
        await self._confirm(comment_id, body, created=created)
        self._revision = updated.revision
        logger.info(
            "False-positive ledger comment written",
            extra={"pr_number": self.pr_number, "revision": updated.revision, "mark_count": len(updated.marks)},
        )

    async def _confirm(self, comment_id: int, body: str, *, created: bool) -> None:
        # GitHub has no conditional write, so the revision check above can race; reading back
        # after the write detects the writers that lost.
        comments = await find_marked_comments(self.client, self.pr_number, LEDGER_MARKER)
        if not comments or comments[0]["id"] != comment_id:
            if created:
                await self.client.delete_issue_comment(comment_id)
            raise MarkVersionConflict("Another writer created the ledger comment first.")
        if (comments[0].get("body") or "") != body:
            raise MarkVersionConflict("Ledger comment was rewritten by another writer.")

    async def append(self, mark: FalsePositiveMark) -> None:
        def add(marks: list[FalsePositiveMark]) -> list[FalsePositiveMark]:
            if any(m.key == mark.key and m.sequence == mark.sequence for m in marks):
                raise MarkVersionConflict(f"Mark {mark.sequence} for {mark.key.token} already exists.")
            return [*marks, mark]

        await self._write(add)

    async def replace(self, mark: FalsePositiveMark, *, previous: FalsePositiveMark) -> None:
        def swap(marks: list[FalsePositiveMark]) -> list[FalsePositiveMark]:
            for i, m in enumerate(marks):
                if m.id == previous.id:
                    if m.version != previous.version:
                        raise MarkVersionConflict(f"Mark {previous.id} changed since it was read.")
                    return [*marks[:i], mark, *marks[i + 1:]]
            raise MarkVersionConflict(f"Mark {previous.id} is no longer in the ledger.")

        await self._write(swap)


def build_mark_store(
    fp_config: FalsePositiveConfig,
    scope: LedgerScope,
    *,
    client: GitHubClient | None = None,
    pr_number: int | None = None,
    session_factory: Callable[[], Session] | None = None,
) -> MarkStore:
    """Store selected by false_positives.storage."""
    if fp_config.storage == "database":
        if session_factory is None:
            from securitybot.core.database import SessionLocal

            session_factory = SessionLocal
        return SqlMarkStore(session_factory, scope)
    if client is None or pr_number is None:
        raise ConfigError("false_positives.storage 'comments' needs a GitHub client and pull request number.")
    return CommentMarkStore(client, pr_number)
