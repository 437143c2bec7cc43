"""Split a change set into bounded, line-offset-tracked chunks for analysis.

Oversized hunks are cut into sequential windows that overlap by OVERLAP_LINES so an issue
spanning a boundary is seen whole at least once; duplicates from the overlap are removed later
by finding key. Window ends prefer statement boundaries but never exceed max_lines.
"""

import re

from securitybot.schemas.changeset import ChangedFile, ChangeSet, Chunk, Hunk

OVERLAP_LINES = 5

# Lines after which a cut is unlikely to split a statement.
_BOUNDARY_SUFFIXES = (";", "{", "}", ":")

_HUNK_HEADER = re.compile(r"^@@ -\d+(?:,\d+)? \+(\d+)(?:,(\d+))? @@")


def parse_unified_patch(patch: str) -> list[Hunk]:
    """
    Turn a unified diff (e.g. the `patch` field of a GitHub pull-request file) into new-side hunks.

    Context and added lines are kept with their absolute new-file line numbers; removed lines
    are dropped. '\\ No newline at end of file' markers are ignored.
    """
    hunks: list[Hunk] = []
    start: int | None = None
    lines: list[str] = []

    def flush() -> None:
        if start is not None and lines:
            hunks.append(Hunk(start_line=start, lines=tuple(lines)))

    for raw in patch.splitlines():
        header = _HUNK_HEADER.match(raw)
        if header:
            flush()
            start = max(1, int(header.group(1)))
            lines = []
            continue
        if start is None:
            continue
        if raw.startswith("-") or raw.startswith("\\"):
            continue
        if raw.startswith("+") or raw.startswith(" "):
            lines.append(raw[1:])
        elif raw == "":
            lines.append("")
    flush()
    return hunks


def _is_boundary(line: str) -> bool:
    stripped = line.strip()
    return not stripped or stripped.endswith(_BOUNDARY_SUFFIXES)


def _window_end(lines: tuple[str, ...], start: int, max_lines: int) -> int:
    """Exclusive end of the window starting at start (indices into lines)."""
    hard_end = min(start + max_lines, len(lines))
    if hard_end == len(lines):
        return hard_end
    # Look back at most a quarter window, and never so far that the next window makes no progress.
    floor = max(start + OVERLAP_LINES + 1, hard_end - max(1, max_lines // 4))
    for end in range(hard_end, floor - 1, -1):
        if _is_boundary(lines[end - 1]):
            return end
    return hard_end


def split_hunk(hunk: Hunk, max_lines: int) -> list[tuple[int, tuple[str, ...]]]:
    """Return (absolute start line, lines) windows covering the hunk."""
    if max_lines <= OVERLAP_LINES:
        raise ValueError(f"max_lines must exceed the overlap window ({OVERLAP_LINES})")
    lines = hunk.lines
    if not lines:
        return []
    if len(lines) <= max_lines:
        return [(hunk.start_line, lines)]

    windows: list[tuple[int, tuple[str, ...]]] = []
    start = 0
    while True:
        end = _window_end(lines, start, max_lines)
        windows.append((hunk.start_line + start, lines[start:end]))
        if end >= len(lines):
            break
        start = end - OVERLAP_LINES
    return windows


class DiffChunker:
    """Produces the ordered chunk list for a change set. Deterministic, so re-runs are repeatable."""

    def __init__(self, max_lines: int) -> None:
        if max_lines <= OVERLAP_LINES:
            raise ValueError(f"max_lines must exceed the overlap window ({OVERLAP_LINES})")
        self.max_lines = max_lines

    def chunk_file(self, changed: ChangedFile, first_index: int = 0) -> list[Chunk]:
        chunks: list[Chunk] = []
        for hunk in sorted(changed.hunks, key=lambda h: h.start_line):
            for start_line, lines in split_hunk(hunk, self.max_lines):
                if not any(line.strip() for line in lines):
                    continue
                chunks.append(
                    Chunk(
                        index=first_index + len(chunks),
                        path=changed.path,
                        start_line=start_line,
                        lines=lines,
                    )
                )
        return chunks

    def chunk(self, change_set: ChangeSet) -> list[Chunk]:
        """All chunks in submission order: files in change-set order, hunks by line."""
        chunks: list[Chunk] = []
        for changed in change_set.files:
            chunks.extend(self.chunk_file(changed, first_index=len(chunks)))
        return chunks
