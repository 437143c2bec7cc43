"""Shared builders and fakes for tests: config from the shipped YAML, findings, in-memory seams."""

import copy
import json
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from securitybot.core.bot_config import parse_bot_config
from securitybot.core.errors import MarkVersionConflict
from securitybot.schemas.changeset import Chunk, line_checksum
from securitybot.schemas.config import BotConfig
from securitybot.schemas.findings import Finding, FindingKey, RawFinding
from securitybot.schemas.ledger import FalsePositiveMark
from securitybot.services.ledger import MarkStore, PermissionResolver
from securitybot.services.publisher import ReportSurface
from securitybot.services.report import RenderedReport

CONFIG_FILE = Path(__file__).resolve().parent.parent / "config" / "securitybot-config.yml"
_BASE_CONFIG = yaml.safe_load(CONFIG_FILE.read_text(encoding="utf-8"))

T0 = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
SQL_LINE = 'cursor.execute("SELECT * FROM users WHERE id = " + user_id)'


def config_data() -> dict[str, Any]:
    data = copy.deepcopy(_BASE_CONFIG)
    data["logging"].pop("file", None)
    return data


def make_config(mutate: Callable[[dict[str, Any]], None] | None = None) -> BotConfig:
    data = config_data()
    if mutate is not None:
        mutate(data)
    return parse_bot_config(data)


def make_chunk(
    path: str = "db.py",
    start_line: int = 40,
    lines: tuple[str, ...] | None = None,
    index: int = 0,
) -> Chunk:
    if lines is None:
        lines = tuple(f"value_{n} = {n}" for n in range(start_line, start_line + 10))
    return Chunk(index=index, path=path, start_line=start_line, lines=lines)


def make_raw(
    check_id: str = "sql_injection",
    confidence: float = 0.95,
    file: str = "db.py",
    line: int = 42,
    content: str = SQL_LINE,
    chunk_index: int = 0,
    ordinal: int = 0,
    description: str = "User input is concatenated into a SQL query.",
) -> RawFinding:
    return RawFinding(
        check_id=check_id,
        confidence=confidence,
        file=file,
        line=line,
        description=description,
        suggested_fix="Use a parameterized query.",
        chunk_index=chunk_index,
        ordinal=ordinal,
        content_hash=line_checksum(content),
    )


def make_finding(
    config: BotConfig,
    check_id: str = "sql_injection",
    file: str = "db.py",
    line: int = 42,
    confidence: float = 0.95,
    content: str = SQL_LINE,
) -> Finding:
    check = config.security_checks[check_id]
    return Finding(
        key=FindingKey(check_id=check_id, file=file, line=line, content_hash=line_checksum(content)),
        title=check.name,
        severity=check.severity,
        confidence=confidence,
        owasp=check.owasp,
        cwe=check.cwe,
        description="User input is concatenated into a SQL query.",
        suggested_fix="Use a parameterized query.",
    )


def findings_json(*records: dict[str, Any]) -> str:
    return json.dumps({"findings": list(records)})


class InMemoryMarkStore(MarkStore):
    def __init__(self, marks: list[FalsePositiveMark] | None = None) -> None:
        self.marks = list(marks or [])
        self.conflict_on_write = False

    async def load(self) -> list[FalsePositiveMark]:
        return list(self.marks)

    async def append(self, mark: FalsePositiveMark) -> None:
        if self.conflict_on_write:
            raise MarkVersionConflict("another writer appended first")
        if any(m.key == mark.key and m.sequence == mark.sequence for m in self.marks):
            raise MarkVersionConflict("sequence taken")
        self.marks.append(mark)

    async def replace(self, mark: FalsePositiveMark, *, previous: FalsePositiveMark) -> None:
        if self.conflict_on_write:
            raise MarkVersionConflict("another writer decided first")
        for i, m in enumerate(self.marks):
            if m.id == previous.id:
                if m.version != previous.version:
                    raise MarkVersionConflict("stale version")
                self.marks[i] = mark
                return
        raise MarkVersionConflict("missing mark")


class FakePermissions(PermissionResolver):
    def __init__(self, maintainers: set[str] | None = None) -> None:
        self.maintainers = maintainers or set()

    async def is_maintainer(self, identity: str) -> bool:
        return identity in self.maintainers


class RecordingSurface(ReportSurface):
    """Keeps one published body, replaced in place, and records every publish call."""

    def __init__(self, failures: list[Exception] | None = None) -> None:
        self.failures = list(failures or [])
        self.calls: list[RenderedReport] = []
        self.body: str | None = None

    async def publish(self, report: RenderedReport) -> None:
        self.calls.append(report)
        if self.failures:
            raise self.failures.pop(0)
        self.body = report.body

    async def fetch_published(self) -> str | None:
        return self.body


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
