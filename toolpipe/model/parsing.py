"""
Module parsing: source document <-> Config.

The source is the generic key/value/sequence structure produced by a YAML
loader. Parsing is strict: any problem raises a ConfigParseError subclass and
no partially built Config is ever returned. Which fields are required and
which fall back to a default is spelled out per field below.
"""
from __future__ import annotations

import logging
import re
import shutil
from enum import Enum
from importlib import resources
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Type, TypeVar

import yaml
from pydantic import ValidationError

from toolpipe.errors import (
    ConfigParseError,
    InvalidEnumError,
    MalformedCollectionError,
    MissingFieldError,
)

from .enums import (
    Highlight,
    HostTool,
    HttpListenerScope,
    InputMethod,
    MinimalToolScope,
    RegExpFlag,
)
from .tools import (
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
    ToolKind,
    UserActionTool,
)

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)
M = TypeVar("M")

DEFAULTS_RESOURCE = "defaults.yaml"


# ============================================================================
# Field helpers
# ============================================================================

def parse_enum(value: Any, enum_cls: Type[E]) -> E:
    """
    Resolve ``value`` to a member of ``enum_cls`` by name.

    Matching ignores case and treats spaces and underscores as the same
    separator, so "STDIN", "stdin" and "StDiN" are all InputMethod.STDIN.
    """
    if isinstance(value, enum_cls):
        return value
    if not isinstance(value, str):
        raise InvalidEnumError(value, enum_cls.__name__)
    search = value.strip().replace(" ", "_").upper()
    for member in enum_cls:
        if member.name.upper() == search:
            return member
    raise InvalidEnumError(value, enum_cls.__name__)


def string_or_die(source: Mapping[str, Any], key: str) -> str:
    value = source.get(key)
    if not isinstance(value, str):
        raise MissingFieldError(key)
    return value


def string_sequence(source: Mapping[str, Any], key: str, required: bool = True) -> Tuple[str, ...]:
    value = source.get(key)
    if value is None:
        if required:
            raise MissingFieldError(key)
        return ()
    if not isinstance(value, (list, tuple)):
        raise MalformedCollectionError(f"{key} must be a sequence of strings", details={"key": key})
    tokens = []
    for item in value:
        # YAML turns bare numbers like `head -n 5` into ints; keep them as argv text
        if isinstance(item, bool) or not isinstance(item, (str, int, float)):
            raise MalformedCollectionError(
                f"{key} must contain only strings, got {item!r}", details={"key": key}
            )
        tokens.append(str(item))
    return tuple(tokens)


def int_sequence(source: Mapping[str, Any], key: str) -> Tuple[int, ...]:
    value = source.get(key)
    if value is None:
        return ()
    if isinstance(value, int) and not isinstance(value, bool):
        return (value,)
    if not isinstance(value, (list, tuple)) or not all(
        isinstance(v, int) and not isinstance(v, bool) for v in value
    ):
        raise MalformedCollectionError(f"{key} must be a sequence of integers", details={"key": key})
    return tuple(value)


def bool_field(source: Mapping[str, Any], key: str, default: bool) -> bool:
    value = source.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigParseError(f"{key} must be a boolean, got {value!r}", details={"key": key})
    return value


def int_field(source: Mapping[str, Any], key: str, default: int) -> int:
    value = source.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigParseError(f"{key} must be an integer, got {value!r}", details={"key": key})
    return value


def bytes_field(source: Mapping[str, Any], key: str) -> bytes:
    value = source.get(key)
    if value is None:
        return b""
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, (list, tuple)) and all(
        isinstance(v, int) and not isinstance(v, bool) and 0 <= v < 256 for v in value
    ):
        return bytes(value)
    raise MalformedCollectionError(
        f"{key} must be a string or a sequence of byte values", details={"key": key}
    )


def map_field(source: Mapping[str, Any], key: str) -> Optional[Mapping[str, Any]]:
    value = source.get(key)
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise MalformedCollectionError(f"{key} must be a map", details={"key": key})
    return value


def map_sequence(source: Mapping[str, Any], key: str) -> List[Mapping[str, Any]]:
    value = source.get(key)
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise MalformedCollectionError(f"{key} must be a sequence of maps", details={"key": key})
    for index, item in enumerate(value):
        if not isinstance(item, Mapping):
            raise MalformedCollectionError(
                f"{key}[{index}] must be a map, got {type(item).__name__}",
                details={"key": key, "index": index},
            )
    return list(value)


def _build(model_cls: Type[M], **fields) -> M:
    try:
        return model_cls(**fields)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or model_cls.__name__}: {err['msg']}"
            for err in exc.errors()
        )
        raise ConfigParseError(
            f"Invalid {model_cls.__name__}: {problems}",
            details={"model": model_cls.__name__},
        ) from exc


# ============================================================================
# Per-kind parsers
# ============================================================================

def regular_expression_from_map(source: Mapping[str, Any]) -> RegularExpression:
    flags = frozenset(parse_enum(f, RegExpFlag) for f in string_sequence(source, "flags", required=False))
    pattern = string_or_die(source, "pattern")
    try:
        re.compile(pattern, RegExpFlag.compile(flags))
    except re.error as exc:
        raise ConfigParseError(
            f"Invalid regular expression {pattern!r}: {exc}", details={"pattern": pattern}
        ) from exc
    return _build(RegularExpression, pattern=pattern, flags=flags)


def header_match_from_map(source: Mapping[str, Any]) -> HeaderMatch:
    regex = map_field(source, "regex")
    if regex is None:
        raise MissingFieldError("regex")
    return _build(
        HeaderMatch,
        header=string_or_die(source, "header"),
        regex=regular_expression_from_map(regex),
    )


def message_match_from_map(source: Mapping[str, Any]) -> MessageMatch:
    regex = map_field(source, "regex")
    header = map_field(source, "header")
    cmd = map_field(source, "cmd")
    return _build(
        MessageMatch,
        prefix=bytes_field(source, "prefix"),
        postfix=bytes_field(source, "postfix"),
        regex=regular_expression_from_map(regex) if regex is not None else None,
        header=header_match_from_map(header) if header is not None else None,
        cmd=command_invocation_from_map(cmd) if cmd is not None else None,
        negation=bool_field(source, "negation", False),
        and_also=tuple(message_match_from_map(m) for m in map_sequence(source, "andAlso")),
        or_else=tuple(message_match_from_map(m) for m in map_sequence(source, "orElse")),
    )


def command_parameter_from_map(source: Mapping[str, Any]) -> CommandParameter:
    fields: Dict[str, Any] = {
        "name": string_or_die(source, "name"),
        "required": bool_field(source, "required", False),
    }
    for key, field in (("label", "label"), ("description", "description"), ("defaultValue", "default_value")):
        value = source.get(key)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, (str, int, float)):
            raise ConfigParseError(f"{key} must be a string, got {value!r}", details={"key": key})
        fields[field] = str(value)
    return _build(CommandParameter, **fields)


def command_invocation_from_map(source: Mapping[str, Any]) -> CommandInvocation:
    prefix = string_sequence(source, "prefix")
    if not prefix:
        raise MalformedCollectionError("prefix must not be empty", details={"key": "prefix"})
    stdout = map_field(source, "stdout")
    stderr = map_field(source, "stderr")
    return _build(
        CommandInvocation,
        prefix=prefix,
        postfix=string_sequence(source, "postfix", required=False),
        input_method=parse_enum(string_or_die(source, "inputMethod"), InputMethod),
        pass_headers=bool_field(source, "passHeaders", False),
        required_in_path=string_sequence(source, "requiredInPath", required=False),
        exit_code=int_sequence(source, "exitCode"),
        stdout=message_match_from_map(stdout) if stdout is not None else None,
        stderr=message_match_from_map(stderr) if stderr is not None else None,
        parameters=tuple(command_parameter_from_map(p) for p in map_sequence(source, "parameters")),
    )


def minimal_tool_from_map(source: Mapping[str, Any], with_scope: bool = True) -> MinimalTool:
    fields: Dict[str, Any] = {
        "name": string_or_die(source, "name"),
        "enabled": bool_field(source, "enabled", True),
        "cmd": command_invocation_from_map(source),
    }
    # HttpListeners use the `scope` key for their own scope enum
    if with_scope and source.get("scope") is not None:
        fields["scope"] = parse_enum(source["scope"], MinimalToolScope)
    filter_map = map_field(source, "filter")
    if filter_map is not None:
        fields["filter"] = message_match_from_map(filter_map)
    return _build(MinimalTool, **fields)


def message_viewer_from_map(source: Mapping[str, Any]) -> MessageViewer:
    return _build(
        MessageViewer,
        common=minimal_tool_from_map(source),
        uses_colors=bool_field(source, "usesColors", False),
    )


def http_listener_from_map(source: Mapping[str, Any]) -> HttpListener:
    return _build(
        HttpListener,
        common=minimal_tool_from_map(source, with_scope=False),
        scope=parse_enum(string_or_die(source, "scope"), HttpListenerScope),
        tool=frozenset(parse_enum(t, HostTool) for t in string_sequence(source, "tool", required=False)),
        ignore_output=bool_field(source, "ignoreOutput", True),
    )


def highlighter_from_map(source: Mapping[str, Any]) -> Highlighter:
    return _build(
        Highlighter,
        common=minimal_tool_from_map(source),
        color=parse_enum(string_or_die(source, "color"), Highlight),
        overwrite=bool_field(source, "overwrite", False),
        apply_with_listener=bool_field(source, "applyWithListener", False),
    )


def commentator_from_map(source: Mapping[str, Any]) -> Commentator:
    return _build(
        Commentator,
        common=minimal_tool_from_map(source),
        overwrite=bool_field(source, "overwrite", False),
        apply_with_listener=bool_field(source, "applyWithListener", False),
    )


def user_action_tool_from_map(source: Mapping[str, Any]) -> UserActionTool:
    return _build(
        UserActionTool,
        common=minimal_tool_from_map(source),
        has_gui=bool_field(source, "hasGUI", False),
        min_inputs=int_field(source, "minInputs", 0),
        max_inputs=int_field(source, "maxInputs", 0),
        avoid_pipe=bool_field(source, "avoidPipe", False),
    )


PARSERS: Dict[ToolKind, Callable[[Mapping[str, Any]], Any]] = {
    ToolKind.MESSAGE_VIEWER: message_viewer_from_map,
    ToolKind.MACRO: minimal_tool_from_map,
    ToolKind.MENU_ITEM: user_action_tool_from_map,
    ToolKind.HTTP_LISTENER: http_listener_from_map,
    ToolKind.COMMENTATOR: commentator_from_map,
    ToolKind.HIGHLIGHTER: highlighter_from_map,
    ToolKind.INTRUDER_PAYLOAD_PROCESSOR: minimal_tool_from_map,
    ToolKind.INTRUDER_PAYLOAD_GENERATOR: minimal_tool_from_map,
}


def config_from_map(source: Optional[Mapping[str, Any]]) -> Config:
    """Build a Config from a parsed document. ``None`` (an empty document) is an empty Config."""
    if source is None:
        return Config()
    if not isinstance(source, Mapping):
        raise MalformedCollectionError(
            f"Config document must be a map, got {type(source).__name__}"
        )

    fields: Dict[str, Any] = {"developer": bool_field(source, "developer", False)}
    for kind, parser in PARSERS.items():
        items = []
        for index, item in enumerate(map_sequence(source, kind.value)):
            try:
                items.append(parser(item))
            except ConfigParseError as exc:
                exc.details.setdefault("collection", kind.value)
                exc.details.setdefault("index", index)
                raise
        fields[kind.attribute] = tuple(items)
    return Config(**fields)


def config_from_yaml(text: str) -> Config:
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigParseError(f"Malformed YAML: {exc}") from exc
    return config_from_map(document)


# ============================================================================
# Serializers (Config -> canonical source document)
# ============================================================================

def _enum_to_str(value: Enum) -> str:
    return value.name.lower()


def _bytes_to_source(value: bytes) -> Any:
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError:
        return list(value)


def regular_expression_to_map(regex: RegularExpression) -> Dict[str, Any]:
    result: Dict[str, Any] = {"pattern": regex.pattern}
    if regex.flags:
        result["flags"] = sorted(_enum_to_str(f) for f in regex.flags)
    return result


def message_match_to_map(match: MessageMatch) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    if match.prefix:
        result["prefix"] = _bytes_to_source(match.prefix)
    if match.postfix:
        result["postfix"] = _bytes_to_source(match.postfix)
    if match.regex is not None:
        result["regex"] = regular_expression_to_map(match.regex)
    if match.header is not None:
        result["header"] = {
            "header": match.header.header,
            "regex": regular_expression_to_map(match.header.regex),
        }
    if match.cmd is not None:
        result["cmd"] = command_invocation_to_map(match.cmd)
    if match.negation:
        result["negation"] = True
    if match.and_also:
        result["andAlso"] = [message_match_to_map(m) for m in match.and_also]
    if match.or_else:
        result["orElse"] = [message_match_to_map(m) for m in match.or_else]
    return result


def command_parameter_to_map(parameter: CommandParameter) -> Dict[str, Any]:
    result: Dict[str, Any] = {"name": parameter.name}
    if parameter.label is not None:
        result["label"] = parameter.label
    if parameter.description is not None:
        result["description"] = parameter.description
    if parameter.default_value is not None:
        result["defaultValue"] = parameter.default_value
    if parameter.required:
        result["required"] = True
    return result


def command_invocation_to_map(cmd: CommandInvocation) -> Dict[str, Any]:
    result: Dict[str, Any] = {
        "prefix": list(cmd.prefix),
        "inputMethod": _enum_to_str(cmd.input_method),
    }
    if cmd.postfix:
        result["postfix"] = list(cmd.postfix)
    if cmd.pass_headers:
        result["passHeaders"] = True
    if cmd.required_in_path:
        result["requiredInPath"] = list(cmd.required_in_path)
    if cmd.exit_code:
        result["exitCode"] = list(cmd.exit_code)
    if cmd.stdout is not None:
        result["stdout"] = message_match_to_map(cmd.stdout)
    if cmd.stderr is not None:
        result["stderr"] = message_match_to_map(cmd.stderr)
    if cmd.parameters:
        result["parameters"] = [command_parameter_to_map(p) for p in cmd.parameters]
    return result


def minimal_tool_to_map(tool: MinimalTool, with_scope: bool = True) -> Dict[str, Any]:
    result: Dict[str, Any] = {"name": tool.name, "enabled": tool.enabled}
    if with_scope and tool.scope is not MinimalToolScope.REQUEST_RESPONSE:
        result["scope"] = _enum_to_str(tool.scope)
    result.update(command_invocation_to_map(tool.cmd))
    if tool.filter is not None:
        result["filter"] = message_match_to_map(tool.filter)
    return result


def message_viewer_to_map(viewer: MessageViewer) -> Dict[str, Any]:
    result = minimal_tool_to_map(viewer.common)
    if viewer.uses_colors:
        result["usesColors"] = True
    return result


def http_listener_to_map(listener: HttpListener) -> Dict[str, Any]:
    result = minimal_tool_to_map(listener.common, with_scope=False)
    result["scope"] = _enum_to_str(listener.scope)
    if listener.tool:
        result["tool"] = sorted(_enum_to_str(t) for t in listener.tool)
    if not listener.ignore_output:
        result["ignoreOutput"] = False
    return result


def highlighter_to_map(highlighter: Highlighter) -> Dict[str, Any]:
    result = minimal_tool_to_map(highlighter.common)
    result["color"] = highlighter.color.value
    result["overwrite"] = highlighter.overwrite
    result["applyWithListener"] = highlighter.apply_with_listener
    return result


def commentator_to_map(commentator: Commentator) -> Dict[str, Any]:
    result = minimal_tool_to_map(commentator.common)
    result["overwrite"] = commentator.overwrite
    result["applyWithListener"] = commentator.apply_with_listener
    return result


def user_action_tool_to_map(tool: UserActionTool) -> Dict[str, Any]:
    result = minimal_tool_to_map(tool.common)
    if tool.has_gui:
        result["hasGUI"] = True
    if tool.min_inputs:
        result["minInputs"] = tool.min_inputs
    if tool.max_inputs:
        result["maxInputs"] = tool.max_inputs
    if tool.avoid_pipe:
        result["avoidPipe"] = True
    return result


SERIALIZERS: Dict[ToolKind, Callable[[Any], Dict[str, Any]]] = {
    ToolKind.MESSAGE_VIEWER: message_viewer_to_map,
    ToolKind.MACRO: minimal_tool_to_map,
    ToolKind.MENU_ITEM: user_action_tool_to_map,
    ToolKind.HTTP_LISTENER: http_listener_to_map,
    ToolKind.COMMENTATOR: commentator_to_map,
    ToolKind.HIGHLIGHTER: highlighter_to_map,
    ToolKind.INTRUDER_PAYLOAD_PROCESSOR: minimal_tool_to_map,
    ToolKind.INTRUDER_PAYLOAD_GENERATOR: minimal_tool_to_map,
}


def config_to_map(config: Config) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for kind, serializer in SERIALIZERS.items():
        items = config.collection(kind)
        if items:
            result[kind.value] = [serializer(item) for item in items]
    if config.developer:
        result["developer"] = True
    return result


def config_to_yaml(config: Config) -> str:
    return yaml.safe_dump(config_to_map(config), sort_keys=False, allow_unicode=True)


# ============================================================================
# Defaults and soft validation
# ============================================================================

def load_default_config() -> Config:
    text = resources.files("toolpipe").joinpath(DEFAULTS_RESOURCE).read_text(encoding="utf-8")
    return config_from_yaml(text)


def validate_config(config: Config) -> List[str]:
    """Report problems that do not prevent loading (blank names, missing executables)."""
    problems: List[str] = []
    for kind in ToolKind:
        for index, item in enumerate(config.collection(kind)):
            common = item.common
            if not common.name.strip():
                problems.append(f"{kind.value}[{index}] has a blank name")
            label = common.name.strip() or f"{kind.value}[{index}]"
            for dependency in (common.cmd.executable,) + common.cmd.required_in_path:
                if shutil.which(dependency) is None:
                    problems.append(f"{label}: '{dependency}' not found in PATH")
            declared = {p.name for p in common.cmd.parameters}
            for token in common.cmd.prefix + common.cmd.postfix:
                for name in PARAMETER_PLACEHOLDER.findall(token):
                    if name not in declared:
                        problems.append(f"{label}: placeholder '${{{name}}}' names no declared parameter")
    return problems
