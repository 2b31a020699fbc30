"""
Module executor: runs one external tool against message bytes.

    Payload ──► [temp files | stdin] ──► process ──► stdout ──► pump ──► sink
                                                 └─► stderr ──► buffer

Every invocation owns its process, its pump and its temp files. Whatever way
the invocation ends (EOF, non-zero exit, spawn failure, deadline) the process
is reaped and the temp files are deleted before ``invoke`` returns or raises.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from toolpipe.config import ExecutionConfig, get_config
from toolpipe.errors import (
    ErrorCode,
    ParameterError,
    ProcessExecutionError,
    ProcessSpawnError,
    ProcessTimeoutError,
)
from toolpipe.model.enums import InputMethod
from toolpipe.model.tools import INPUT_FILENAME_TOKEN, PARAMETER_PLACEHOLDER, CommandInvocation

from .environment import child_environment
from .pump import BufferSink, DeliveryContext, Sink, pump

logger = logging.getLogger(__name__)

Payload = Union[bytes, Sequence[bytes]]

# Each resolved parameter is also exported to the tool as TOOLPIPE_PARAM_<NAME>
PARAMETER_ENV_PREFIX = "TOOLPIPE_PARAM_"
DRAIN_CHUNK_SIZE = 65536


@dataclass(frozen=True)
class InvocationResult:
    argv: Tuple[str, ...]
    exit_code: int
    # Empty when the caller supplied its own stdout sink
    stdout: bytes
    stderr: bytes
    duration: float
    closed_early: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.closed_early

    @property
    def text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    def check_returncode(self) -> "InvocationResult":
        if self.exit_code != 0:
            raise ProcessExecutionError(
                f"{self.argv[0]} exited with status {self.exit_code}",
                argv=self.argv,
                exit_code=self.exit_code,
                stderr=self.stderr,
            )
        return self


def resolve_parameters(
    cmd: CommandInvocation, provided: Optional[Mapping[str, str]] = None
) -> Dict[str, str]:
    """
    Values for every parameter ``cmd`` declares.

    An empty supplied value falls back to the declared default. Supplied
    names the command does not declare are passed through unchanged.

    Raises:
        ParameterError: A required parameter ends up without a value
    """
    provided = dict(provided or {})
    if not cmd.parameters and not provided:
        return {}
    resolved: Dict[str, str] = {}
    missing: List[str] = []
    for parameter in cmd.parameters:
        value = provided.get(parameter.name) or parameter.default_value or ""
        if not value and parameter.required:
            missing.append(parameter.display_name)
        resolved[parameter.name] = value
    if missing:
        raise ParameterError(
            f"Missing required parameters: {', '.join(missing)}", details={"missing": missing}
        )
    for name, value in provided.items():
        resolved.setdefault(name, value)
    return resolved


def apply_parameters(token: str, values: Mapping[str, str]) -> str:
    """Substitute ``${name}`` placeholders. Without any values the token is left as is."""
    if not values:
        return token

    def substitute(match) -> str:
        name = match.group(1)
        if name not in values:
            raise ParameterError(
                f'No value provided for parameter "{name}"', details={"parameter": name}
            )
        return values[name]

    return PARAMETER_PLACEHOLDER.sub(substitute, token)


def parameter_environment(values: Mapping[str, str]) -> Dict[str, str]:
    return {PARAMETER_ENV_PREFIX + name.upper(): value for name, value in values.items()}


def build_argv(
    cmd: CommandInvocation,
    filenames: Sequence[str] = (),
    parameters: Optional[Mapping[str, str]] = None,
) -> List[str]:
    """Place input filenames at each ``<INPUT>`` token, or between prefix and postfix."""
    values = parameters or {}
    tokens = cmd.prefix + cmd.postfix
    if cmd.input_method is InputMethod.FILENAME and cmd.uses_placeholder:
        argv: List[str] = []
        for token in tokens:
            if token == INPUT_FILENAME_TOKEN:
                argv.extend(filenames)
            else:
                argv.append(apply_parameters(token, values))
        return argv
    return [
        *(apply_parameters(t, values) for t in cmd.prefix),
        *filenames,
        *(apply_parameters(t, values) for t in cmd.postfix),
    ]


def _inputs(payload: Payload) -> List[bytes]:
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return [bytes(payload)]
    return [bytes(p) for p in payload]


def _remove(paths: Sequence[str]) -> None:
    for path in paths:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass


async def _drain(stream: asyncio.StreamReader, on_chunk: Optional[Callable[[bytes], None]] = None) -> None:
    while True:
        chunk = await stream.read(DRAIN_CHUNK_SIZE)
        if not chunk:
            return
        if on_chunk is not None:
            on_chunk(chunk)


async def _settle(*tasks: Optional[asyncio.Future]) -> None:
    """Cancel whatever is still pending and wait until it has actually stopped."""
    pending = [t for t in tasks if t is not None and not t.done()]
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


class RunningInvocation:
    """A spawned tool process plus the temp files it was given."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        argv: Sequence[str],
        temp_files: Sequence[str],
        feeder: Optional[asyncio.Future] = None,
    ):
        self.process = process
        self.argv = tuple(argv)
        self.temp_files: Tuple[str, ...] = tuple(temp_files)
        self.feeder = feeder
        self.stderr_reader: Optional[asyncio.Future] = None

    def drain_stderr(self, on_chunk: Optional[Callable[[bytes], None]] = None) -> None:
        """Keep reading stderr in the background so the tool never blocks on it."""
        if self.stderr_reader is None:
            self.stderr_reader = asyncio.ensure_future(_drain(self.process.stderr, on_chunk))

    @property
    def stdout(self) -> asyncio.StreamReader:
        return self.process.stdout

    @property
    def stderr(self) -> asyncio.StreamReader:
        return self.process.stderr

    def kill(self) -> None:
        if self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass

    async def close(self) -> None:
        """Kill the process if it is still running, reap it and delete temp files."""
        try:
            self.kill()
            await _settle(self.feeder)
            # wait() only returns once both pipes have reached EOF
            stderr = self.stderr_reader if self.stderr_reader is not None else _drain(self.process.stderr)
            await asyncio.gather(_drain(self.process.stdout), stderr)
            await self.process.wait()
        finally:
            _remove(self.temp_files)
            self.temp_files = ()

    async def __aenter__(self) -> "RunningInvocation":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class CommandExecutor:
    """
    Spawns tool processes.

    Args:
        settings: Deadline, temp file and chunk settings (process-wide config by default)
        env: Overrides applied to every child environment
        delivery_context: Where stdout chunks are delivered when a caller passes a sink
    """

    _instance = None

    @staticmethod
    def instance() -> "CommandExecutor":
        if CommandExecutor._instance is None:
            CommandExecutor._instance = CommandExecutor()
        return CommandExecutor._instance

    def __init__(
        self,
        settings: Optional[ExecutionConfig] = None,
        env: Optional[Mapping[str, str]] = None,
        delivery_context: Optional[DeliveryContext] = None,
    ):
        self.settings = settings or get_config().execution
        self.env = dict(env or {})
        self.delivery_context = delivery_context

    def check_dependencies(self, cmd: CommandInvocation) -> None:
        missing = [name for name in cmd.required_in_path if shutil.which(name) is None]
        if missing:
            raise ProcessSpawnError(
                f"Required executable(s) not found in PATH: {', '.join(missing)}",
                argv=cmd.prefix,
                code=ErrorCode.PROC_MISSING_DEPENDENCY,
            )

    def _write_temp_file(self, data: bytes, extension: Optional[str]) -> str:
        fd, path = tempfile.mkstemp(prefix=self.settings.temp_prefix, suffix=extension or "")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
        except BaseException:
            _remove([path])
            raise
        return path

    async def spawn(
        self,
        cmd: CommandInvocation,
        payload: Payload = b"",
        env: Optional[Mapping[str, str]] = None,
        *,
        extension: Optional[str] = None,
        parameters: Optional[Mapping[str, str]] = None,
    ) -> RunningInvocation:
        """Start ``cmd`` and feed it ``payload``. The caller owns the result and must ``close()`` it."""
        self.check_dependencies(cmd)
        values = resolve_parameters(cmd, parameters)
        inputs = _inputs(payload)
        overrides = {**self.env, **parameter_environment(values), **(env or {})}
        temp_files: List[str] = []
        argv: List[str] = list(cmd.prefix)

        try:
            if cmd.input_method is InputMethod.FILENAME:
                for data in inputs:
                    temp_files.append(self._write_temp_file(data, extension))
                argv = build_argv(cmd, temp_files, values)
            else:
                argv = build_argv(cmd, parameters=values)

            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if cmd.input_method is InputMethod.STDIN else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=child_environment(overrides),
            )
        except FileNotFoundError as exc:
            _remove(temp_files)
            raise ProcessSpawnError(
                f"Executable not found: {argv[0]}", argv=argv, code=ErrorCode.PROC_NOT_FOUND
            ) from exc
        except PermissionError as exc:
            _remove(temp_files)
            raise ProcessSpawnError(
                f"Permission denied: {argv[0]}", argv=argv, code=ErrorCode.PROC_PERMISSION_DENIED
            ) from exc
        except OSError as exc:
            _remove(temp_files)
            raise ProcessSpawnError(f"Could not start {argv[0]}: {exc}", argv=argv) from exc
        except BaseException:
            _remove(temp_files)
            raise

        logger.debug(f"[Executor] Started pid={process.pid}: {' '.join(argv)}")

        feeder = None
        if cmd.input_method is InputMethod.STDIN:
            feeder = asyncio.ensure_future(self._feed_stdin(process, inputs))
        return RunningInvocation(process, argv, temp_files, feeder)

    @staticmethod
    async def _feed_stdin(process: asyncio.subprocess.Process, inputs: Sequence[bytes]) -> None:
        stdin = process.stdin
        try:
            for data in inputs:
                stdin.write(data)
                await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # The tool exited without reading all of its input
            logger.debug(f"[Executor] pid={process.pid} closed stdin early")
        finally:
            if not stdin.is_closing():
                stdin.close()

    async def invoke(
        self,
        cmd: CommandInvocation,
        payload: Payload = b"",
        env: Optional[Mapping[str, str]] = None,
        *,
        timeout: Optional[float] = None,
        stdout_sink: Optional[Sink] = None,
        extension: Optional[str] = None,
        parameters: Optional[Mapping[str, str]] = None,
        check: bool = False,
    ) -> InvocationResult:
        """
        Run ``cmd`` to completion.

        Args:
            cmd: What to run
            payload: Input bytes, or several inputs (one temp file each, or concatenated on stdin)
            env: Environment overrides for this invocation
            timeout: Deadline in seconds; None uses the configured default, 0 disables it
            stdout_sink: Receives stdout through the pump instead of the result buffer
            extension: Temp file suffix for FILENAME tools
            parameters: Values for the command's declared parameters
            check: Raise ProcessExecutionError on a non-zero exit

        Raises:
            ParameterError, ProcessSpawnError, ProcessTimeoutError,
            ProcessExecutionError (only with check)
        """
        if timeout is None:
            timeout = self.settings.tool_timeout_seconds
        started = time.monotonic()

        running = await self.spawn(cmd, payload, env, extension=extension, parameters=parameters)
        buffer = BufferSink() if stdout_sink is None else None
        context = None if stdout_sink is None else self.delivery_context
        handle = pump(running.stdout, stdout_sink or buffer, context=context,
                      chunk_size=self.settings.read_chunk_size)
        stderr_task = asyncio.ensure_future(running.stderr.read())

        async def complete():
            if running.feeder is not None:
                await running.feeder
            pumped = await handle.wait()
            stderr = await stderr_task
            exit_code = await running.process.wait()
            return pumped, stderr, exit_code

        try:
            try:
                pumped, stderr, exit_code = await asyncio.wait_for(complete(), timeout or None)
            except asyncio.TimeoutError:
                handle.cancel()
                running.kill()
                await handle.wait()
                logger.warning(f"[Executor] {running.argv[0]} timed out after {timeout}s")
                raise ProcessTimeoutError(
                    f"{running.argv[0]} did not finish within {timeout}s",
                    argv=running.argv,
                ) from None
        finally:
            if not handle.done():
                handle.cancel()
                await asyncio.gather(handle.wait(), return_exceptions=True)
            await _settle(stderr_task)
            await running.close()

        result = InvocationResult(
            argv=running.argv,
            exit_code=exit_code,
            stdout=buffer.data if buffer is not None else b"",
            stderr=stderr,
            duration=time.monotonic() - started,
            closed_early=pumped.closed_early,
        )
        logger.debug(
            f"[Executor] {running.argv[0]} exited {exit_code} "
            f"({pumped.bytes_delivered} bytes out, {result.duration:.3f}s)"
        )
        if check:
            result.check_returncode()
        return result
