"""Pydantic schemas for the change set under review and the chunks cut from it."""

import hashlib
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Hunk(BaseModel):
    """A contiguous run of new-side lines starting at an absolute (1-based) line number."""

    model_config = ConfigDict(frozen=True)

    start_line: int = Field(..., ge=1)
    lines: tuple[str, ...] = Field(default=())

    @property
    def end_line(self) -> int:
        return self.start_line + len(self.lines) - 1


class ChangedFile(BaseModel):
    """One file in the change set. Full content is a single hunk starting at line 1."""

    model_config = ConfigDict(frozen=True)

    path: str = Field(..., min_length=1)
    hunks: tuple[Hunk, ...] = Field(default=())

    @classmethod
    def from_content(cls, path: str, content: str) -> "ChangedFile":
        lines = tuple(content.splitlines())
        return cls(path=path, hunks=(Hunk(start_line=1, lines=lines),) if lines else ())


class ChangeSet(BaseModel):
    """The unit of review: a pull request at a specific head commit."""

    model_config = ConfigDict(frozen=True)

    repository: str = Field(default="", description="owner/name; empty for local runs.")
    change_set_id: str = Field(..., min_length=1, description="Pull request number or other identifier.")
    commit_sha: str = Field(..., min_length=1)
    files: tuple[ChangedFile, ...] = Field(default=())


def content_checksum(path: str, start_line: int, lines: tuple[str, ...]) -> str:
    digest = hashlib.sha256()
    digest.update(path.encode("utf-8"))
    digest.update(b"\0")
    digest.update(str(start_line).encode("ascii"))
    for line in lines:
        digest.update(b"\n")
        digest.update(line.encode("utf-8"))
    return digest.hexdigest()


def line_checksum(line: str) -> str:
    """Checksum of one source line, whitespace-trimmed so re-indentation keeps the key."""
    return hashlib.sha256(line.strip().encode("utf-8")).hexdigest()


class Chunk(BaseModel):
    """A bounded slice of one file, tracked by absolute line offset."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=0, description="Submission order within the run.")
    path: str = Field(..., min_length=1)
    start_line: int = Field(..., ge=1)
    lines: tuple[str, ...] = Field(..., min_length=1)
    checksum: str = Field(default="")

    @model_validator(mode="before")
    @classmethod
    def fill_checksum(cls, data: Any) -> Any:
        if not isinstance(data, dict) or data.get("checksum"):
            return data
        try:
            lines = tuple(data["lines"])
            checksum = content_checksum(str(data["path"]), int(data["start_line"]), lines)
        except (KeyError, TypeError, ValueError):
            return data
        return {**data, "lines": lines, "checksum": checksum}

    @property
    def end_line(self) -> int:
        return self.start_line + len(self.lines) - 1

    def line_at(self, line: int) -> str:
        """Source text at an absolute line number inside this chunk."""
        return self.lines[line - self.start_line]

    def numbered(self) -> str:
        width = len(str(self.end_line))
        return "\n".join(
            f"{self.start_line + i:>{width}} | {text}" for i, text in enumerate(self.lines)
        )
