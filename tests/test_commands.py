"""Unit tests for securitybot.services.commands: the false-positive command grammar."""

import unittest

from securitybot.core.errors import FalsePositiveCommandError
from securitybot.schemas.ledger import CommandAction
from securitybot.services.commands import command_example, parse_command

from support import make_config


class TestParseCommand(unittest.TestCase):
    def setUp(self) -> None:
        self.fp = make_config().false_positives

    def test_mark_with_reason(self) -> None:
        cmd = parse_command(
            "@securitybot false-positive SQL Injection (db.py:42) The id is cast to int upstream.",
            self.fp,
        )
        self.assertIsNotNone(cmd)
        self.assertEqual(cmd.action, CommandAction.MARK)
        self.assertEqual(cmd.check_type, "SQL Injection")
        self.assertEqual(cmd.file, "db.py")
        self.assertEqual(cmd.line, 42)
        self.assertEqual(cmd.reason, "The id is cast to int upstream.")

    def test_mention_is_case_insensitive(self) -> None:
        for mention in ("@SecurityBot", "@securitybot", "@SECURITYBOT"):
            cmd = parse_command(f"{mention} false-positive XSS (web/views.py:7) escaped", self.fp)
            self.assertEqual(cmd.check_type, "XSS", mention)

    def test_reason_optional_at_parse_time(self) -> None:
        cmd = parse_command("@SecurityBot false-positive SQL Injection (db.py:42)", self.fp)
        self.assertEqual(cmd.reason, "")

    def test_reason_continues_on_following_lines(self) -> None:
        text = "Thanks for the review.\n  @SecurityBot false-positive SQL Injection (db.py:42) Not reachable:\nthe caller validates ids.\n"
        cmd = parse_command(text, self.fp)
        self.assertEqual(cmd.reason, "Not reachable:\nthe caller validates ids.")

    def test_approve_and_reject(self) -> None:
        approve = parse_command("@SecurityBot false-positive approve SQL Injection (db.py:42)", self.fp)
        reject = parse_command("@SecurityBot false-positive reject SQL Injection (db.py:42) still exploitable", self.fp)
        self.assertEqual(approve.action, CommandAction.APPROVE)
        self.assertEqual(reject.action, CommandAction.REJECT)
        self.assertEqual(reject.check_type, "SQL Injection")
        self.assertEqual(reject.reason, "still exploitable")

    def test_only_first_command_read(self) -> None:
        text = (
            "@SecurityBot false-positive XSS (a.js:1) safe\n"
            "@SecurityBot false-positive SQL Injection (db.py:42) also safe"
        )
        cmd = parse_command(text, self.fp)
        self.assertEqual(cmd.check_type, "XSS")

    def test_no_command_returns_none(self) -> None:
        self.assertIsNone(parse_command("LGTM, merging.", self.fp))
        self.assertIsNone(parse_command("cc @SecurityBot false-positive SQL Injection (db.py:42)", self.fp))
        self.assertIsNone(parse_command("@SecurityBot thanks!", self.fp))

    def test_malformed_commands_raise(self) -> None:
        bad = [
            "@SecurityBot false-positive SQL Injection db.py:42",
            "@SecurityBot false-positive SQL Injection (db.py)",
            "@SecurityBot false-positive SQL Injection (db.py:0)",
            "@SecurityBot false-positive SQL Injection (db.py:42)reason",
            "@SecurityBot false-positive  SQL Injection (db.py:42)",
            "@SecurityBot false-positive",
            "@SecurityBot  false-positive SQL Injection (db.py:42) two spaces",
            "@SecurityBot\tfalse-positive SQL Injection (db.py:42) tab",
            "@SecurityBot false-positive SQL Injection ( db.py:42) padded",
            "@SecurityBot false-positive SQL Injection (db.py :42) padded",
        ]
        for text in bad:
            with self.assertRaises(FalsePositiveCommandError, msg=text) as ctx:
                parse_command(text, self.fp)
            self.assertFalse(ctx.exception.retryable)

    def test_malformed_message_shows_usage(self) -> None:
        with self.assertRaises(FalsePositiveCommandError) as ctx:
            parse_command("@SecurityBot false-positive SQL Injection", self.fp)
        self.assertIn("@SecurityBot false-positive <CheckType> (file:line) reason", ctx.exception.message)


class TestCommandExample(unittest.TestCase):
    def test_character_classes_collapsed(self) -> None:
        self.assertEqual(command_example("@[Ss]ecurity[Bb]ot false-positive"), "@SecurityBot false-positive")
        self.assertEqual(command_example("/fp"), "/fp")
