#!/usr/bin/env python3
"""
toolpipe command line.

Usage:
    toolpipe check tools.yaml
    toolpipe import tools.yaml
    toolpipe export [--output tools.yaml]
    toolpipe list
    toolpipe toggle messageViewers 0
    toolpipe view "Python JSON formatter" < message.http
    toolpipe payloads "Wordlist" --param size=100
    toolpipe proxy --port 8080
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

from toolpipe.config import get_config, setup_logging
from toolpipe.errors import ConfigParseError, ParameterError, PipeError
from toolpipe.engine.dispatcher import Message, ToolDispatcher
from toolpipe.model.enums import Direction
from toolpipe.model.parsing import config_from_yaml, config_to_yaml, validate_config
from toolpipe.model.projection import ConfigProjection
from toolpipe.model.tools import ToolKind
from toolpipe.persistence.store import ConfigRepository, FileSettingsStore

logger = logging.getLogger("toolpipe")


def build_repository() -> ConfigRepository:
    cfg = get_config()
    return ConfigRepository(
        FileSettingsStore(cfg.storage.settings_path),
        key=cfg.storage.settings_key,
        override_file=cfg.storage.config_file,
    )


def _read_config_file(path: str):
    return config_from_yaml(Path(path).read_text(encoding="utf-8"))


def run_check(args) -> int:
    config = _read_config_file(args.file)
    for key, count in config.counts().items():
        print(f"{key}: {count}")
    problems = validate_config(config)
    for problem in problems:
        print(f"warning: {problem}", file=sys.stderr)
    return 0


def run_import(args) -> int:
    config = _read_config_file(args.file)
    build_repository().save(config)
    logger.info(f"Imported {args.file}: {config.counts()}")
    return 0


def run_export(args) -> int:
    text = config_to_yaml(build_repository().load())
    if args.output:
        Path(args.output).write_text(text, encoding="utf-8")
    else:
        sys.stdout.write(text)
    return 0


def run_list(args) -> int:
    config = build_repository().load()
    for kind in ToolKind:
        for index, tool in enumerate(config.collection(kind)):
            state = "on " if tool.enabled else "off"
            print(f"{kind.value}[{index}] {state} {tool.name}: {tool.common.cmd.command_line}")
    return 0


def run_toggle(args) -> int:
    repository = build_repository()
    projection = ConfigProjection(repository.load(), repository)
    kind = ToolKind(args.kind)
    value = {"on": True, "off": False}.get(args.state)
    tool = projection.toggle_enabled(kind, args.index, value)
    print(f"{kind.value}[{args.index}] {tool.name}: {'enabled' if tool.enabled else 'disabled'}")
    return 0


def run_view(args) -> int:
    config = build_repository().load()
    viewer = next((v for v in config.message_viewers if v.name == args.name), None)
    if viewer is None:
        print(f"No message viewer named {args.name!r}", file=sys.stderr)
        return 2
    data = Path(args.file).read_bytes() if args.file else sys.stdin.buffer.read()
    direction = Direction.RESPONSE if args.response else Direction.REQUEST
    message = Message.parse(data, direction)

    single = config.replace_collection(ToolKind.MESSAGE_VIEWER, [viewer.with_enabled(True)])
    outcomes = asyncio.run(ToolDispatcher(single).render_views(message))
    if not outcomes:
        print(f"{viewer.name} does not apply to this message", file=sys.stderr)
        return 1
    outcome = outcomes[0]
    if not outcome.ok:
        print(f"{viewer.name} failed: {outcome.error}", file=sys.stderr)
        return 1
    sys.stdout.buffer.write(outcome.output)
    return 0


def _parse_params(pairs: List[str]) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            raise ParameterError(f"Expected NAME=VALUE, got {pair!r}", details={"argument": pair})
        values[name] = value
    return values


def run_payloads(args) -> int:
    config = build_repository().load()
    generator = next((g for g in config.intruder_payload_generators if g.name == args.name), None)
    if generator is None:
        print(f"No payload generator named {args.name!r}", file=sys.stderr)
        return 2
    stream = ToolDispatcher(config).generate_payloads(generator, _parse_params(args.param))

    async def emit():
        async for payload in stream:
            sys.stdout.buffer.write(payload + b"\n")

    asyncio.run(emit())
    return 0


def run_proxy(args) -> int:
    from toolpipe.ghost.addon import ToolpipeInterceptor

    repository = build_repository()
    projection = ConfigProjection(repository.load(), repository)

    async def serve():
        interceptor = ToolpipeInterceptor(ToolDispatcher(projection.snapshot), host=args.host, port=args.port)
        await interceptor.start()
        try:
            await interceptor.wait()
        finally:
            interceptor.stop()

    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="toolpipe", description="Route messages through external tools")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    check_parser = subparsers.add_parser("check", help="Validate a YAML tool definition file")
    check_parser.add_argument("file")
    check_parser.set_defaults(func=run_check)

    import_parser = subparsers.add_parser("import", help="Replace the stored config with a YAML file")
    import_parser.add_argument("file")
    import_parser.set_defaults(func=run_import)

    export_parser = subparsers.add_parser("export", help="Write the stored config as YAML")
    export_parser.add_argument("--output", "-o")
    export_parser.set_defaults(func=run_export)

    list_parser = subparsers.add_parser("list", help="List configured tools")
    list_parser.set_defaults(func=run_list)

    toggle_parser = subparsers.add_parser("toggle", help="Enable or disable one tool")
    toggle_parser.add_argument("kind", choices=[k.value for k in ToolKind])
    toggle_parser.add_argument("index", type=int)
    toggle_parser.add_argument("state", nargs="?", choices=["on", "off"])
    toggle_parser.set_defaults(func=run_toggle)

    view_parser = subparsers.add_parser("view", help="Render a message through a viewer")
    view_parser.add_argument("name")
    view_parser.add_argument("file", nargs="?")
    view_parser.add_argument("--response", action="store_true", help="Treat the input as a response")
    view_parser.set_defaults(func=run_view)

    payloads_parser = subparsers.add_parser("payloads", help="Print the payloads of a generator, one per line")
    payloads_parser.add_argument("name")
    payloads_parser.add_argument(
        "--param", "-p", action="append", default=[], metavar="NAME=VALUE", help="Command parameter value"
    )
    payloads_parser.set_defaults(func=run_payloads)

    proxy_parser = subparsers.add_parser("proxy", help="Run a mitmproxy instance with the configured tools")
    proxy_parser.add_argument("--host", default="127.0.0.1")
    proxy_parser.add_argument("--port", type=int, default=8080)
    proxy_parser.set_defaults(func=run_proxy)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging()

    if not hasattr(args, "func"):
        parser.print_help()
        return 2

    try:
        return args.func(args)
    except ConfigParseError as e:
        print(f"Invalid config: {e}", file=sys.stderr)
        return 1
    except (PipeError, OSError, IndexError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
