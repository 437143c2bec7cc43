"""Parse false-positive commands from pull-request comments.

Grammar, with <prefix> built from the configured command pattern:

    <prefix> <CheckType> (<file>:<line>) [reason]
    <prefix> approve <CheckType> (<file>:<line>) [note]
    <prefix> reject <CheckType> (<file>:<line>) [note]

The first word of the prefix (the bot mention) matches case-insensitively; the rest is exact.
The reason is the text after the closing parenthesis plus any following lines of the comment.
"""

import re

from securitybot.core.errors import FalsePositiveCommandError
from securitybot.schemas.config import FalsePositiveConfig, command_prefix_pattern
from securitybot.schemas.ledger import CommandAction, ParsedCommand


def compile_command(command: str) -> tuple[re.Pattern[str], re.Pattern[str]]:
    """(line starter, full command) regexes for a configured command pattern."""
    # Starter accepts any spacing; the full pattern then rejects anything but single spaces.
    loose = command_prefix_pattern(command, r"\s+")
    prefix = command_prefix_pattern(command, " ")
    try:
        starter = re.compile(rf"^[ \t]*{loose}(?:\s|$)")
        full = re.compile(
            rf"^[ \t]*{prefix} (?:(?P<action>approve|reject) )?"
            r"(?P<check>[^()\r\n]+?) \((?P<file>[^()\r\n]+):(?P<line>[1-9]\d*)\)(?P<rest>.*)$"
        )
    except re.error as e:
        raise FalsePositiveCommandError(f"Configured command pattern {command!r} is not a valid pattern.", cause=e) from e
    return starter, full


def command_example(command: str) -> str:
    """Human-readable form of the configured pattern: '@[Ss]ecurity[Bb]ot' -> '@SecurityBot'."""
    return re.sub(r"\[(\w)\w*\]", lambda m: m.group(1).upper(), command.strip())


def parse_command(text: str, config: FalsePositiveConfig) -> ParsedCommand | None:
    """
    Return the command in a comment body, or None if the comment contains none.

    Raises FalsePositiveCommandError when a line starts with the command prefix but does not
    follow the grammar exactly. Only the first command in a comment is read.
    """
    starter, full = compile_command(config.command)
    lines = text.splitlines()
    for index, line in enumerate(lines):
        if not starter.match(line):
            continue
        match = full.match(line.rstrip())
        if not match:
            example = command_example(config.command)
            raise FalsePositiveCommandError(
                f"Malformed false-positive command. Use `{example} <CheckType> (file:line) reason`."
            )
        rest = match.group("rest")
        if rest and not rest[0].isspace():
            raise FalsePositiveCommandError(
                "Malformed false-positive command: expected a space between the location and the reason."
            )
        check = match.group("check")
        if check != check.strip():
            raise FalsePositiveCommandError("Malformed false-positive command: unexpected whitespace in check type.")
        file = match.group("file")
        if file != file.strip():
            raise FalsePositiveCommandError("Malformed false-positive command: unexpected whitespace in location.")
        reason_parts = [rest.strip()] + [extra.rstrip() for extra in lines[index + 1:]]
        reason = "\n".join(reason_parts).strip()
        action = match.group("action")
        return ParsedCommand(
            action=CommandAction(action) if action else CommandAction.MARK,
            check_type=check,
            file=file,
            line=int(match.group("line")),
            reason=reason,
        )
    return None
