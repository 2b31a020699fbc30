"""
Typed, immutable tool definitions.

Every tool kind embeds a MinimalTool (the common record: name, enabled flag,
scope, command and optional filter). Models are frozen; changing a field means
building a new instance with ``model_copy(update=...)``.
"""
from __future__ import annotations

import re
import shlex
from enum import Enum
from typing import FrozenSet, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .enums import (
    Highlight,
    HostTool,
    HttpListenerScope,
    InputMethod,
    MinimalToolScope,
    RegExpFlag,
)

# Replaced by the temp file path when the input method is FILENAME
INPUT_FILENAME_TOKEN = "<INPUT>"
# ${name} in a prefix or postfix token is replaced by that parameter's value
PARAMETER_PLACEHOLDER = re.compile(r"\$\{([A-Za-z0-9_]+)\}")


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class RegularExpression(_Frozen):
    pattern: str
    flags: FrozenSet[RegExpFlag] = frozenset()

    @property
    def re_flags(self) -> int:
        return RegExpFlag.compile(self.flags)


class HeaderMatch(_Frozen):
    header: str = Field(min_length=1)
    regex: RegularExpression


class MessageMatch(_Frozen):
    """Filter deciding whether a tool applies to a message (or a stream)."""

    prefix: bytes = b""
    postfix: bytes = b""
    regex: Optional[RegularExpression] = None
    header: Optional[HeaderMatch] = None
    cmd: Optional["CommandInvocation"] = None
    negation: bool = False
    and_also: Tuple["MessageMatch", ...] = ()
    or_else: Tuple["MessageMatch", ...] = ()


class CommandParameter(_Frozen):
    """A named value the user supplies when the command is run."""

    name: str = Field(pattern=r"^[A-Za-z0-9_]+$")
    label: Optional[str] = None
    description: Optional[str] = None
    default_value: Optional[str] = None
    required: bool = False

    @property
    def display_name(self) -> str:
        if self.label is None or not self.label.strip():
            return self.name
        return self.label


class CommandInvocation(_Frozen):
    prefix: Tuple[str, ...]
    postfix: Tuple[str, ...] = ()
    input_method: InputMethod = InputMethod.STDIN
    pass_headers: bool = False
    required_in_path: Tuple[str, ...] = ()
    # Success conditions, used when the command acts as a predicate
    exit_code: Tuple[int, ...] = ()
    stdout: Optional[MessageMatch] = None
    stderr: Optional[MessageMatch] = None
    parameters: Tuple[CommandParameter, ...] = ()

    @field_validator("prefix")
    @classmethod
    def validate_prefix(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        if not v or not v[0]:
            raise ValueError("prefix must start with an executable")
        return v

    @field_validator("parameters")
    @classmethod
    def validate_parameters(cls, v: Tuple[CommandParameter, ...]) -> Tuple[CommandParameter, ...]:
        names = [p.name for p in v]
        if len(names) != len(set(names)):
            raise ValueError("parameter names must be unique")
        return v

    @property
    def executable(self) -> str:
        return self.prefix[0]

    @property
    def command_line(self) -> str:
        tokens = list(self.prefix)
        if self.input_method is InputMethod.FILENAME and not self.uses_placeholder:
            tokens.append(INPUT_FILENAME_TOKEN)
        tokens.extend(self.postfix)
        return shlex.join(tokens)

    @property
    def uses_placeholder(self) -> bool:
        return INPUT_FILENAME_TOKEN in self.prefix or INPUT_FILENAME_TOKEN in self.postfix

    @property
    def has_success_conditions(self) -> bool:
        return bool(self.exit_code) or self.stdout is not None or self.stderr is not None


MessageMatch.model_rebuild()


class MinimalTool(_Frozen):
    """The common record shared by every tool kind."""

    name: str = Field(min_length=1)
    enabled: bool = True
    scope: MinimalToolScope = MinimalToolScope.REQUEST_RESPONSE
    cmd: CommandInvocation
    filter: Optional[MessageMatch] = None

    @property
    def common(self) -> "MinimalTool":
        return self

    def with_enabled(self, value: Optional[bool] = None) -> "MinimalTool":
        return self.model_copy(update={"enabled": (not self.enabled) if value is None else value})


class _WithCommon(_Frozen):
    common: MinimalTool

    @property
    def name(self) -> str:
        return self.common.name

    @property
    def enabled(self) -> bool:
        return self.common.enabled

    def with_enabled(self, value: Optional[bool] = None):
        return self.model_copy(update={"common": self.common.with_enabled(value)})


class MessageViewer(_WithCommon):
    uses_colors: bool = False


class HttpListener(_WithCommon):
    scope: HttpListenerScope = HttpListenerScope.REQUEST
    # Empty means every host tool
    tool: FrozenSet[HostTool] = frozenset()
    ignore_output: bool = True

    def accepts_source(self, source: HostTool) -> bool:
        return not self.tool or source in self.tool


class Highlighter(_WithCommon):
    color: Highlight = Highlight.RED
    overwrite: bool = False
    apply_with_listener: bool = False


class Commentator(_WithCommon):
    overwrite: bool = False
    apply_with_listener: bool = False


class UserActionTool(_WithCommon):
    has_gui: bool = False
    min_inputs: int = Field(default=0, ge=0)
    # 0 means no upper bound
    max_inputs: int = Field(default=0, ge=0)
    avoid_pipe: bool = False

    def accepts_input_count(self, count: int) -> bool:
        if count < self.min_inputs:
            return False
        return self.max_inputs == 0 or count <= self.max_inputs


Tool = Union[MinimalTool, MessageViewer, HttpListener, Highlighter, Commentator, UserActionTool]


class ToolKind(str, Enum):
    """Collections of a Config, keyed by their name in the source document."""

    MESSAGE_VIEWER = "messageViewers"
    MACRO = "macros"
    MENU_ITEM = "menuItems"
    HTTP_LISTENER = "httpListeners"
    COMMENTATOR = "commentators"
    HIGHLIGHTER = "highlighters"
    INTRUDER_PAYLOAD_PROCESSOR = "intruderPayloadProcessors"
    INTRUDER_PAYLOAD_GENERATOR = "intruderPayloadGenerators"

    @property
    def attribute(self) -> str:
        return _ATTRIBUTES[self]


_ATTRIBUTES = {
    ToolKind.MESSAGE_VIEWER: "message_viewers",
    ToolKind.MACRO: "macros",
    ToolKind.MENU_ITEM: "menu_items",
    ToolKind.HTTP_LISTENER: "http_listeners",
    ToolKind.COMMENTATOR: "commentators",
    ToolKind.HIGHLIGHTER: "highlighters",
    ToolKind.INTRUDER_PAYLOAD_PROCESSOR: "intruder_payload_processors",
    ToolKind.INTRUDER_PAYLOAD_GENERATOR: "intruder_payload_generators",
}


class Config(_Frozen):
    """Root aggregate: ordered collections of every tool kind."""

    message_viewers: Tuple[MessageViewer, ...] = ()
    macros: Tuple[MinimalTool, ...] = ()
    menu_items: Tuple[UserActionTool, ...] = ()
    http_listeners: Tuple[HttpListener, ...] = ()
    commentators: Tuple[Commentator, ...] = ()
    highlighters: Tuple[Highlighter, ...] = ()
    intruder_payload_processors: Tuple[MinimalTool, ...] = ()
    intruder_payload_generators: Tuple[MinimalTool, ...] = ()
    developer: bool = False

    def collection(self, kind: ToolKind) -> tuple:
        return getattr(self, kind.attribute)

    def replace_collection(self, kind: ToolKind, items) -> "Config":
        return self.model_copy(update={kind.attribute: tuple(items)})

    def counts(self) -> dict:
        return {kind.value: len(self.collection(kind)) for kind in ToolKind}

    def enabled(self, kind: ToolKind) -> tuple:
        return tuple(item for item in self.collection(kind) if item.enabled)


def common_of(tool: Tool) -> MinimalTool:
    return tool.common
