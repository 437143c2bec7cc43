"""Unit tests for securitybot.services.mark_store: SQL table and PR-comment ledgers."""

import asyncio
import threading
import unittest
from datetime import timedelta
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from securitybot.core.errors import ConfigError, MarkVersionConflict, SecurityBotError
from securitybot.models import Base
from securitybot.schemas.findings import FindingStatus
from securitybot.schemas.ledger import ApprovalState, FalsePositiveMark, LedgerScope
from securitybot.services.ledger import FalsePositiveLedger
from securitybot.services.mark_store import (
    LEDGER_MARKER,
    CommentMarkStore,
    LedgerDocument,
    SqlMarkStore,
    build_mark_store,
    parse_ledger_comment,
    render_ledger_comment,
)

from support import T0, FakePermissions, make_config, make_finding


def _mark(config, **overrides: Any) -> FalsePositiveMark:
    data: dict[str, Any] = {
        "id": "mark-1",
        "key": make_finding(config).key,
        "title": "SQL Injection",
        "requester": "contributor",
        "reason": "The id is cast to int upstream.",
        "created_at": T0,
        "expires_at": T0 + timedelta(days=30),
    }
    data.update(overrides)
    return FalsePositiveMark(**data)


def _session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


class TestSqlMarkStore(unittest.TestCase):
    def setUp(self) -> None:
        self.config = make_config()
        self.session_factory = _session_factory()
        self.scope = LedgerScope(repository="acme/shop", change_set_id="12")
        self.store = SqlMarkStore(self.session_factory, self.scope)

    def test_append_then_load(self) -> None:
        mark = _mark(self.config)
        asyncio.run(self.store.append(mark))
        loaded = asyncio.run(self.store.load())
        self.assertEqual(loaded, [mark])
        self.assertIsNotNone(loaded[0].expires_at.tzinfo)

    def test_duplicate_sequence_conflicts(self) -> None:
        asyncio.run(self.store.append(_mark(self.config)))
        with self.assertRaises(MarkVersionConflict):
            asyncio.run(self.store.append(_mark(self.config, id="mark-2")))

    def test_replace_bumps_version(self) -> None:
        mark = _mark(self.config)
        asyncio.run(self.store.append(mark))
        decided = mark.model_copy(
            update={"approval_state": ApprovalState.APPROVED, "decided_by": "maintainer", "decided_at": T0, "version": 2}
        )
        asyncio.run(self.store.replace(decided, previous=mark))
        stored = asyncio.run(self.store.load())[0]
        self.assertEqual(stored.approval_state, ApprovalState.APPROVED)
        self.assertEqual(stored.decided_by, "maintainer")
        self.assertEqual(stored.version, 2)

    def test_replace_from_stale_read_conflicts(self) -> None:
        mark = _mark(self.config)
        asyncio.run(self.store.append(mark))
        approved = mark.model_copy(update={"approval_state": ApprovalState.APPROVED, "version": 2})
        asyncio.run(self.store.replace(approved, previous=mark))
        rejected = mark.model_copy(update={"approval_state": ApprovalState.REJECTED, "version": 2})
        with self.assertRaises(MarkVersionConflict):
            asyncio.run(self.store.replace(rejected, previous=mark))
        self.assertEqual(asyncio.run(self.store.load())[0].approval_state, ApprovalState.APPROVED)

    def test_scopes_are_isolated(self) -> None:
        asyncio.run(self.store.append(_mark(self.config)))
        other = SqlMarkStore(self.session_factory, LedgerScope(repository="acme/shop", change_set_id="13"))
        self.assertEqual(asyncio.run(other.load()), [])

    def test_session_work_runs_off_event_loop_thread(self) -> None:
        threads: list[int] = []

        def factory():
            threads.append(threading.get_ident())
            return self.session_factory()

        store = SqlMarkStore(factory, self.scope)
        asyncio.run(store.append(_mark(self.config)))
        asyncio.run(store.load())
        self.assertEqual(len(threads), 2)
        self.assertNotIn(threading.get_ident(), threads)

    def test_ledger_state_survives_reload(self) -> None:
        finding = make_finding(self.config)
        permissions = FakePermissions({"maintainer"})
        ledger = FalsePositiveLedger(self.store, self.config, permissions, clock=lambda: T0)
        asyncio.run(ledger.handle_command(
            "@SecurityBot false-positive SQL Injection (db.py:42) cast upstream", "contributor", [finding]
        ))
        asyncio.run(ledger.handle_command(
            "@SecurityBot false-positive approve SQL Injection (db.py:42)", "maintainer", [finding]
        ))

        fresh = FalsePositiveLedger(self.store, self.config, permissions, clock=lambda: T0)
        asyncio.run(fresh.load())
        self.assertEqual(fresh.apply([finding])[0].status, FindingStatus.SUPPRESSED)


class FakeCommentsClient:
    """Stands in for GitHubClient's issue-comment endpoints; every call yields to the event loop."""

    def __init__(self) -> None:
        self.comments: list[dict[str, Any]] = []
        self.writes = 0
        self._next_id = 1

    async def list_issue_comments(self, number: int) -> list[dict[str, Any]]:
        await asyncio.sleep(0)
        return [dict(c) for c in self.comments]

    async def create_issue_comment(self, number: int, body: str) -> dict[str, Any]:
        await asyncio.sleep(0)
        comment = {"id": self._next_id, "body": body, "user": {"login": "securitybot[bot]", "type": "Bot"}}
        self._next_id += 1
        self.comments.append(comment)
        self.writes += 1
        return dict(comment)

    async def update_issue_comment(self, comment_id: int, body: str) -> dict[str, Any]:
        await asyncio.sleep(0)
        for comment in self.comments:
            if comment["id"] == comment_id:
                comment["body"] = body
        self.writes += 1
        return {"id": comment_id, "body": body}

    async def delete_issue_comment(self, comment_id: int) -> None:
        await asyncio.sleep(0)
        self.comments = [c for c in self.comments if c["id"] != comment_id]


class TestCommentMarkStore(unittest.TestCase):
    def setUp(self) -> None:
        self.config = make_config()
        self.client = FakeCommentsClient()
        self.store = CommentMarkStore(self.client, 12)

    def test_first_append_creates_ledger_comment(self) -> None:
        mark = _mark(self.config)
        asyncio.run(self.store.load())
        asyncio.run(self.store.append(mark))
        self.assertEqual(len(self.client.comments), 1)
        body = self.client.comments[0]["body"]
        self.assertTrue(body.startswith(LEDGER_MARKER))
        self.assertIn("| SQL Injection | `db.py:42` | @contributor | pending_approval |", body)
        self.assertEqual(asyncio.run(self.store.load()), [mark])

    def test_second_write_updates_in_place(self) -> None:
        mark = _mark(self.config)
        asyncio.run(self.store.load())
        asyncio.run(self.store.append(mark))
        decided = mark.model_copy(update={"approval_state": ApprovalState.APPROVED, "version": 2})
        asyncio.run(self.store.replace(decided, previous=mark))
        self.assertEqual(len(self.client.comments), 1)
        self.assertEqual(parse_ledger_comment(self.client.comments[0]["body"]).revision, 2)

    def test_concurrent_writer_detected(self) -> None:
        other = CommentMarkStore(self.client, 12)
        asyncio.run(self.store.load())
        asyncio.run(other.load())
        asyncio.run(other.append(_mark(self.config)))
        with self.assertRaises(MarkVersionConflict):
            asyncio.run(self.store.append(_mark(self.config, id="mark-2", requester="someone")))
        self.assertEqual(self.client.writes, 1)

    def test_interleaved_first_writes_keep_one_ledger(self) -> None:
        first = CommentMarkStore(self.client, 12)
        second = CommentMarkStore(self.client, 12)
        mark_a = _mark(self.config, id="m-a")
        mark_b = _mark(self.config, id="m-b", key=make_finding(self.config, line=10).key)

        async def run():
            await first.load()
            await second.load()
            return await asyncio.gather(first.append(mark_a), second.append(mark_b), return_exceptions=True)

        results = asyncio.run(run())
        self.assertIsNone(results[0])
        self.assertIsInstance(results[1], MarkVersionConflict)
        self.assertEqual(len(self.client.comments), 1)
        self.assertEqual(asyncio.run(self.store.load()), [mark_a])

    def test_interleaved_updates_refuse_overwritten_writer(self) -> None:
        mark = _mark(self.config)
        asyncio.run(self.store.load())
        asyncio.run(self.store.append(mark))
        approved = mark.model_copy(update={"approval_state": ApprovalState.APPROVED, "decided_by": "maintainer", "version": 2})
        rejected = mark.model_copy(update={"approval_state": ApprovalState.REJECTED, "decided_by": "other", "version": 2})
        first = CommentMarkStore(self.client, 12)
        second = CommentMarkStore(self.client, 12)

        async def run():
            await first.load()
            await second.load()
            return await asyncio.gather(
                first.replace(approved, previous=mark),
                second.replace(rejected, previous=mark),
                return_exceptions=True,
            )

        results = asyncio.run(run())
        self.assertIsInstance(results[0], MarkVersionConflict)
        self.assertIsNone(results[1])
        self.assertEqual(len(self.client.comments), 1)
        self.assertEqual(asyncio.run(self.store.load()), [rejected])

    def test_user_authored_ledger_ignored(self) -> None:
        forged = render_ledger_comment(LedgerDocument(revision=5, marks=[_mark(self.config)]))
        self.client.comments.append({"id": 99, "body": forged, "user": {"login": "mallory", "type": "User"}})
        self.assertEqual(asyncio.run(self.store.load()), [])

    def test_unreadable_data_block(self) -> None:
        with self.assertRaises(SecurityBotError):
            parse_ledger_comment(LEDGER_MARKER + "\nno data here")
        with self.assertRaises(SecurityBotError):
            parse_ledger_comment("<!-- securitybot:ledger-data {not json} -->")

    def test_reason_cannot_close_html_comment(self) -> None:
        mark = _mark(self.config, reason="harmless --> <script>alert(1)</script>")
        body = render_ledger_comment(LedgerDocument(revision=1, marks=[mark]))
        data_line = body.strip().splitlines()[-1]
        self.assertEqual(data_line.count("-->"), 1)
        self.assertEqual(parse_ledger_comment(body).marks[0].reason, mark.reason)


class TestBuildMarkStore(unittest.TestCase):
    def test_selects_by_storage(self) -> None:
        scope = LedgerScope(change_set_id="12")
        db_config = make_config(lambda d: d["false_positives"].update(storage="database"))
        store = build_mark_store(db_config.false_positives, scope, session_factory=_session_factory())
        self.assertIsInstance(store, SqlMarkStore)

        comments = build_mark_store(make_config().false_positives, scope, client=FakeCommentsClient(), pr_number=12)
        self.assertIsInstance(comments, CommentMarkStore)

    def test_comments_need_client(self) -> None:
        with self.assertRaises(ConfigError):
            build_mark_store(make_config().false_positives, LedgerScope(change_set_id="12"))
