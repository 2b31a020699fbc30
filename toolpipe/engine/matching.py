"""Module matching: MessageMatch filters and command success conditions."""
#
# PURPOSE:
# Decides whether a tool applies to a message. A MessageMatch combines cheap
# byte/regex/header checks with an optional command whose success conditions
# (exit codes, stdout/stderr filters) act as a predicate. Checks are evaluated
# cheapest first and stop at the first failure, so a filter command only runs
# when everything else already matched.
#
# TEXT VIEW:
# Regexes run against the content decoded as latin-1, which maps every byte
# to exactly one character.
#

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import TYPE_CHECKING, List, Optional, Pattern, Sequence

from toolpipe.errors import ProcessError
from toolpipe.model.tools import CommandInvocation, HeaderMatch, MessageMatch, RegularExpression

if TYPE_CHECKING:
    from .executor import CommandExecutor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchSubject:
    content: bytes
    # Header lines without the request/status line; None when not a message
    headers: Optional[Sequence[str]] = None
    url: Optional[str] = None

    @property
    def text(self) -> str:
        return self.content.decode("latin-1")


def split_headers(head: bytes) -> List[str]:
    lines = head.decode("latin-1").split("\n")
    return [line.rstrip("\r") for line in lines[1:] if line.strip()]


@lru_cache(maxsize=256)
def _compile(pattern: str, flags: int) -> Pattern:
    return re.compile(pattern, flags)


def regex_matches(regex: RegularExpression, text: str) -> bool:
    try:
        return _compile(regex.pattern, regex.re_flags).search(text) is not None
    except re.error as exc:
        logger.warning(f"[Match] Invalid regex {regex.pattern!r}: {exc}")
        return False


def header_matches(match: HeaderMatch, headers: Optional[Sequence[str]]) -> bool:
    if headers is None:
        return True
    wanted = match.header.lower() + ":"
    for line in headers:
        if line.lower().startswith(wanted):
            if regex_matches(match.regex, line[len(wanted):].strip()):
                return True
    return False


async def message_matches(match: MessageMatch, subject: MatchSubject, executor: "CommandExecutor") -> bool:
    return (await _all_conditions(match, subject, executor)) != match.negation


async def _all_conditions(match: MessageMatch, subject: MatchSubject, executor: "CommandExecutor") -> bool:
    if match.prefix and not subject.content.startswith(match.prefix):
        return False
    if match.postfix and not subject.content.endswith(match.postfix):
        return False
    if match.regex is not None and not regex_matches(match.regex, subject.text):
        return False
    if match.header is not None and not header_matches(match.header, subject.headers):
        return False
    for nested in match.and_also:
        if not await message_matches(nested, subject, executor):
            return False
    if match.or_else:
        for nested in match.or_else:
            if await message_matches(nested, subject, executor):
                break
        else:
            return False
    if match.cmd is not None and not await command_matches(match.cmd, subject.content, executor):
        return False
    return True


async def command_matches(
    cmd: CommandInvocation,
    content: bytes,
    executor: "CommandExecutor",
    extension: Optional[str] = None,
) -> bool:
    """
    Run ``cmd`` as a predicate over ``content``.

    Every declared success condition must hold. With none declared, exit
    status 0 is a match and anything else is not. A tool that cannot be run
    (or times out) does not match.
    """
    try:
        result = await executor.invoke(cmd, content, extension=extension)
    except ProcessError as exc:
        logger.warning(f"[Match] {cmd.command_line} could not be evaluated: {exc}")
        return False

    if not cmd.has_success_conditions:
        return result.exit_code == 0
    if cmd.exit_code and result.exit_code not in cmd.exit_code:
        return False
    if cmd.stdout is not None and not await message_matches(cmd.stdout, MatchSubject(result.stdout), executor):
        return False
    if cmd.stderr is not None and not await message_matches(cmd.stderr, MatchSubject(result.stderr), executor):
        return False
    return True
