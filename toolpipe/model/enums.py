from __future__ import annotations

import re
from enum import Enum
from typing import Iterable, Optional


class InputMethod(str, Enum):
    STDIN = "stdin"
    FILENAME = "filename"


class MinimalToolScope(str, Enum):
    REQUEST_RESPONSE = "request_response"
    REQUEST_ONLY = "request_only"
    RESPONSE_ONLY = "response_only"

    def accepts(self, is_request: bool) -> bool:
        if self is MinimalToolScope.REQUEST_ONLY:
            return is_request
        if self is MinimalToolScope.RESPONSE_ONLY:
            return not is_request
        return True


class HttpListenerScope(str, Enum):
    REQUEST = "request"
    RESPONSE = "response"
    # The request is sent to the tool first, then the response
    RESPONSE_WITH_REQUEST = "response_with_request"

    @property
    def listens_to_requests(self) -> bool:
        return self is HttpListenerScope.REQUEST


class Direction(str, Enum):
    REQUEST = "request"
    RESPONSE = "response"

    @property
    def is_request(self) -> bool:
        return self is Direction.REQUEST


class HostTool(str, Enum):
    """The component of the traffic host a message came from."""

    SUITE = "suite"
    TARGET = "target"
    PROXY = "proxy"
    SPIDER = "spider"
    SCANNER = "scanner"
    INTRUDER = "intruder"
    REPEATER = "repeater"
    SEQUENCER = "sequencer"
    DECODER = "decoder"
    COMPARER = "comparer"
    EXTENDER = "extender"
    ORGANIZER = "organizer"


class Highlight(str, Enum):
    CLEAR = "clear"
    RED = "red"
    ORANGE = "orange"
    YELLOW = "yellow"
    GREEN = "green"
    CYAN = "cyan"
    BLUE = "blue"
    PINK = "pink"
    MAGENTA = "magenta"
    GRAY = "gray"

    @property
    def host_value(self) -> Optional[str]:
        """Value handed to the host; CLEAR removes any highlight."""
        return None if self is Highlight.CLEAR else self.value


class RegExpFlag(str, Enum):
    CASE_INSENSITIVE = "case_insensitive"
    MULTILINE = "multiline"
    DOTALL = "dotall"
    UNICODE_CASE = "unicode_case"
    CANON_EQ = "canon_eq"
    COMMENTS = "comments"

    @property
    def re_flag(self) -> int:
        # UNICODE_CASE and CANON_EQ have no `re` counterpart; str patterns are
        # already Unicode-aware.
        return _RE_FLAGS.get(self, 0)

    @staticmethod
    def compile(flags: Iterable["RegExpFlag"]) -> int:
        value = 0
        for flag in flags:
            value |= flag.re_flag
        return value


_RE_FLAGS = {
    RegExpFlag.CASE_INSENSITIVE: re.IGNORECASE,
    RegExpFlag.MULTILINE: re.MULTILINE,
    RegExpFlag.DOTALL: re.DOTALL,
    RegExpFlag.COMMENTS: re.VERBOSE,
}
