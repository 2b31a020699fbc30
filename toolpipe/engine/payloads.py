"""Module payloads: payload generators backed by a running tool."""
#
# PURPOSE:
# An intruder payload generator is a tool started with empty input whose
# stdout is read one line at a time; each line is one payload. The process is
# started lazily on the first request and torn down when output ends, on
# reset() or on close(). Its exit status is not consulted: end of output is
# the end of the payload stream.
#
# Lines have no length limit. stderr is drained for the whole run and only
# logged in developer mode.
#

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, AsyncIterator, Dict, Mapping, Optional

from toolpipe.model.tools import MinimalTool

if TYPE_CHECKING:
    from .executor import CommandExecutor, RunningInvocation

logger = logging.getLogger(__name__)

READ_SIZE = 65536


class PayloadStream:
    def __init__(
        self,
        tool: MinimalTool,
        executor: "CommandExecutor",
        parameters: Optional[Mapping[str, str]] = None,
        developer: bool = False,
    ):
        self.tool = tool
        self.executor = executor
        self.parameters: Dict[str, str] = dict(parameters or {})
        self.developer = developer
        self._running: Optional["RunningInvocation"] = None
        self._buffer = bytearray()
        self._finished = False

    @property
    def has_more(self) -> bool:
        return not self._finished

    async def next_payload(self) -> Optional[bytes]:
        """The next payload, or None once the tool's output is exhausted."""
        if self._finished:
            return None
        if self._running is None:
            self._running = await self.executor.spawn(self.tool.cmd, b"", parameters=self.parameters)
            self._running.drain_stderr(self._on_stderr)
            logger.debug(f"[Payloads] Started generator '{self.tool.name}'")

        while True:
            end = self._buffer.find(b"\n")
            if end >= 0:
                line = bytes(self._buffer[:end])
                del self._buffer[:end + 1]
                return line.rstrip(b"\r")
            chunk = await self._running.stdout.read(READ_SIZE)
            if not chunk:
                break
            self._buffer += chunk

        if self._buffer:
            # Last line without a trailing newline
            line = bytes(self._buffer)
            self._buffer.clear()
            return line
        self._finished = True
        await self._close_running()
        return None

    async def reset(self) -> None:
        """Stop the current run; the next request starts the tool again."""
        await self._close_running()
        self._finished = False

    async def close(self) -> None:
        self._finished = True
        await self._close_running()

    def _on_stderr(self, chunk: bytes) -> None:
        if self.developer:
            logger.warning(
                f"[Payloads] {self.tool.name} wrote to stderr:\n{chunk.decode('utf-8', errors='replace')}"
            )

    async def _close_running(self) -> None:
        running, self._running = self._running, None
        self._buffer.clear()
        if running is not None:
            await running.close()

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[bytes]:
        try:
            while True:
                payload = await self.next_payload()
                if payload is None:
                    return
                yield payload
        finally:
            await self._close_running()
