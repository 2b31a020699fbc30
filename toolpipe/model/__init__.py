"""Module __init__: tool definition model."""
#
# PURPOSE:
# Typed, frozen tool definitions (tools.py), the enums they use (enums.py),
# the document parser with its required/optional field policy (parsing.py)
# and the observable projection that persists every mutation (projection.py).
#

from .enums import (
    Direction,
    Highlight,
    HostTool,
    HttpListenerScope,
    InputMethod,
    MinimalToolScope,
    RegExpFlag,
)
from .tools import (
    INPUT_FILENAME_TOKEN,
    PARAMETER_PLACEHOLDER,
    CommandInvocation,
    CommandParameter,
    Commentator,
    Config,
    HeaderMatch,
    Highlighter,
    HttpListener,
    MessageMatch,
    MessageViewer,
    MinimalTool,
    RegularExpression,
    Tool,
    ToolKind,
    UserActionTool,
)

__all__ = [
    "Direction",
    "Highlight",
    "HostTool",
    "HttpListenerScope",
    "InputMethod",
    "MinimalToolScope",
    "RegExpFlag",
    "INPUT_FILENAME_TOKEN",
    "PARAMETER_PLACEHOLDER",
    "CommandInvocation",
    "CommandParameter",
    "Commentator",
    "Config",
    "HeaderMatch",
    "Highlighter",
    "HttpListener",
    "MessageMatch",
    "MessageViewer",
    "MinimalTool",
    "RegularExpression",
    "Tool",
    "ToolKind",
    "UserActionTool",
]
