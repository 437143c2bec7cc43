"""Unit tests for securitybot.services.chunker: patch parsing, window splitting, chunk ordering."""

import unittest

from securitybot.schemas.changeset import ChangedFile, ChangeSet, Chunk, Hunk
from securitybot.services.chunker import OVERLAP_LINES, DiffChunker, parse_unified_patch, split_hunk


class TestParseUnifiedPatch(unittest.TestCase):
    def test_keeps_context_and_added_lines(self) -> None:
        patch = "@@ -1,3 +1,4 @@\n import os\n-import sys\n+import json\n+import re\n def main():"
        hunks = parse_unified_patch(patch)
        self.assertEqual(len(hunks), 1)
        self.assertEqual(hunks[0].start_line, 1)
        self.assertEqual(hunks[0].lines, ("import os", "import json", "import re", "def main():"))

    def test_multiple_hunks_use_new_side_offsets(self) -> None:
        patch = (
            "@@ -1,2 +1,2 @@\n a\n-b\n+c\n"
            "@@ -10,2 +11,3 @@ def handler():\n x\n+y\n z\n"
            "\\ No newline at end of file"
        )
        hunks = parse_unified_patch(patch)
        self.assertEqual([h.start_line for h in hunks], [1, 11])
        self.assertEqual(hunks[1].lines, ("x", "y", "z"))
        self.assertEqual(hunks[1].end_line, 13)

    def test_lines_before_first_header_ignored(self) -> None:
        self.assertEqual(parse_unified_patch("diff --git a/x b/x\n+++ b/x\n"), [])


class TestSplitHunk(unittest.TestCase):
    def test_small_hunk_is_one_window(self) -> None:
        hunk = Hunk(start_line=7, lines=tuple(f"x = {i}" for i in range(10)))
        self.assertEqual(split_hunk(hunk, 30), [(7, hunk.lines)])

    def test_large_hunk_windows_overlap(self) -> None:
        hunk = Hunk(start_line=1, lines=tuple(f"x = {i}" for i in range(100)))
        windows = split_hunk(hunk, 30)
        self.assertEqual([start for start, _ in windows], [1, 26, 51, 76])
        for start, lines in windows:
            self.assertLessEqual(len(lines), 30)
        for (prev_start, prev_lines), (start, _) in zip(windows, windows[1:]):
            prev_end = prev_start + len(prev_lines) - 1
            self.assertEqual(start, prev_end - OVERLAP_LINES + 1)
        last_start, last_lines = windows[-1]
        self.assertEqual(last_start + len(last_lines) - 1, 100)

    def test_window_end_moves_back_to_boundary(self) -> None:
        lines = [f"x = {i}" for i in range(60)]
        lines[26] = "}"
        windows = split_hunk(Hunk(start_line=1, lines=tuple(lines)), 30)
        first_start, first_lines = windows[0]
        self.assertEqual(len(first_lines), 27)
        self.assertEqual(first_lines[-1], "}")
        self.assertEqual(windows[1][0], 28 - OVERLAP_LINES)

    def test_max_lines_must_exceed_overlap(self) -> None:
        with self.assertRaises(ValueError):
            split_hunk(Hunk(start_line=1, lines=("a",)), OVERLAP_LINES)


class TestDiffChunker(unittest.TestCase):
    def test_chunks_follow_file_then_line_order(self) -> None:
        change_set = ChangeSet(
            change_set_id="12",
            commit_sha="abc123",
            files=(
                ChangedFile(
                    path="b.py",
                    hunks=(Hunk(start_line=50, lines=("late = 1",)), Hunk(start_line=3, lines=("early = 1",))),
                ),
                ChangedFile.from_content("a.py", "first = 1\nsecond = 2\n"),
            ),
        )
        chunks = DiffChunker(20).chunk(change_set)
        self.assertEqual([(c.index, c.path, c.start_line) for c in chunks], [(0, "b.py", 3), (1, "b.py", 50), (2, "a.py", 1)])

    def test_blank_windows_skipped(self) -> None:
        changed = ChangedFile(path="x.py", hunks=(Hunk(start_line=1, lines=("", "   ", "")),))
        self.assertEqual(DiffChunker(20).chunk_file(changed), [])

    def test_chunking_is_deterministic(self) -> None:
        changed = ChangedFile.from_content("big.py", "\n".join(f"v{i} = {i}" for i in range(250)))
        change_set = ChangeSet(change_set_id="1", commit_sha="sha", files=(changed,))
        first = DiffChunker(100).chunk(change_set)
        second = DiffChunker(100).chunk(change_set)
        self.assertEqual(first, second)
        self.assertTrue(all(len(c.lines) <= 100 for c in first))


class TestChunk(unittest.TestCase):
    def test_checksum_depends_on_location(self) -> None:
        a = Chunk(index=0, path="a.py", start_line=1, lines=("x = 1",))
        b = Chunk(index=0, path="a.py", start_line=2, lines=("x = 1",))
        self.assertEqual(len(a.checksum), 64)
        self.assertNotEqual(a.checksum, b.checksum)

    def test_numbered_uses_absolute_lines(self) -> None:
        chunk = Chunk(index=0, path="a.py", start_line=9, lines=("a", "b"))
        self.assertEqual(chunk.numbered(), " 9 | a\n10 | b")
        self.assertEqual(chunk.end_line, 10)
        self.assertEqual(chunk.line_at(10), "b")
