"""
Module pump: ordered consumption of a process output stream into a sink.

A pump runs as an asyncio task next to the producing process. Each chunk is
handed to the sink in the order it was read, optionally marshaled onto a
declared delivery context (a concurrent.futures.Executor such as
DeliveryThread, or an event loop). The pump reports completion only after
the final delivery, the sink's ``close``, has run.
"""
from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, Union

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 65536

DeliveryContext = Union[concurrent.futures.Executor, asyncio.AbstractEventLoop]


class Sink(Protocol):
    def write(self, data: bytes) -> None:
        ...

    def close(self, closed_early: bool) -> None:
        ...


@dataclass(frozen=True)
class PumpResult:
    bytes_delivered: int
    # True when the stream was cancelled before EOF; later output was not read
    closed_early: bool


class BufferSink:
    """Collects everything written to it."""

    def __init__(self):
        self._buffer = bytearray()
        self.closed = False
        self.closed_early = False

    def write(self, data: bytes) -> None:
        self._buffer.extend(data)

    def close(self, closed_early: bool) -> None:
        self.closed = True
        self.closed_early = closed_early

    @property
    def data(self) -> bytes:
        return bytes(self._buffer)


class CallbackSink:
    def __init__(
        self,
        on_data: Callable[[bytes], Any],
        on_close: Optional[Callable[[bool], Any]] = None,
    ):
        self.on_data = on_data
        self.on_close = on_close

    def write(self, data: bytes) -> None:
        self.on_data(data)

    def close(self, closed_early: bool) -> None:
        if self.on_close is not None:
            self.on_close(closed_early)


class DeliveryThread(concurrent.futures.Executor):
    """
    A single consumer thread fed by a queue.

    Work runs strictly in submission order on ``self.thread``, so a sink with
    thread affinity sees every update serialized on that one thread.
    """

    def __init__(self, name: str = "toolpipe-delivery"):
        self._queue: "queue.Queue" = queue.Queue()
        self._lock = threading.Lock()
        self._shutdown = False
        self.thread = threading.Thread(target=self._worker_loop, name=name, daemon=True)
        self.thread.start()

    def submit(self, fn, /, *args, **kwargs) -> concurrent.futures.Future:
        with self._lock:
            if self._shutdown:
                raise RuntimeError("cannot schedule new deliveries after shutdown")
            future: concurrent.futures.Future = concurrent.futures.Future()
            self._queue.put((future, fn, args, kwargs))
        return future

    def is_current(self) -> bool:
        return threading.current_thread() is self.thread

    def _worker_loop(self):
        while True:
            item = self._queue.get()
            if item is None:
                break
            future, fn, args, kwargs = item
            if not future.set_running_or_notify_cancel():
                continue
            try:
                result = fn(*args, **kwargs)
            except Exception as exc:
                future.set_exception(exc)
            else:
                future.set_result(result)

    def shutdown(self, wait: bool = True, *, cancel_futures: bool = False) -> None:
        with self._lock:
            if not self._shutdown:
                self._shutdown = True
                if cancel_futures:
                    self._drain()
                self._queue.put(None)
        if wait and not self.is_current():
            self.thread.join()

    def _drain(self):
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return
            if item is not None:
                item[0].cancel()


async def _deliver(context: Optional[DeliveryContext], fn: Callable, *args) -> None:
    if context is None:
        fn(*args)
        return

    if isinstance(context, asyncio.AbstractEventLoop):
        if context is asyncio.get_running_loop():
            fn(*args)
            return
        future: concurrent.futures.Future = concurrent.futures.Future()

        def run():
            try:
                future.set_result(fn(*args))
            except Exception as exc:
                future.set_exception(exc)

        context.call_soon_threadsafe(run)
        await asyncio.wrap_future(future)
        return

    await asyncio.wrap_future(context.submit(fn, *args))


class PumpHandle:
    def __init__(
        self,
        source: asyncio.StreamReader,
        sink: Sink,
        context: Optional[DeliveryContext] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self.source = source
        self.sink = sink
        self.context = context
        self.chunk_size = chunk_size
        self.bytes_delivered = 0
        self._unstarted_result: Optional[PumpResult] = None
        self._task = asyncio.ensure_future(self._run())

    async def _run(self) -> PumpResult:
        closed_early = False
        try:
            while True:
                chunk = await self.source.read(self.chunk_size)
                if not chunk:
                    break
                delivery = asyncio.ensure_future(_deliver(self.context, self.sink.write, chunk))
                try:
                    await asyncio.shield(delivery)
                except asyncio.CancelledError:
                    # Bytes already read still reach the sink before it is closed
                    await delivery
                    self.bytes_delivered += len(chunk)
                    raise
                self.bytes_delivered += len(chunk)
        except asyncio.CancelledError:
            closed_early = True
        except Exception:
            await _deliver(self.context, self.sink.close, True)
            raise

        await _deliver(self.context, self.sink.close, closed_early)
        if closed_early:
            logger.debug(f"[Pump] Stream closed early after {self.bytes_delivered} bytes")
        return PumpResult(self.bytes_delivered, closed_early)

    def cancel(self) -> None:
        """Stop reading. ``wait()`` still returns once the sink has been closed."""
        self._task.cancel()

    def done(self) -> bool:
        return self._task.done()

    async def wait(self) -> PumpResult:
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise
        # Cancelled before the first read, so _run never got to close the sink
        if self._unstarted_result is None:
            await _deliver(self.context, self.sink.close, True)
            self._unstarted_result = PumpResult(self.bytes_delivered, True)
        return self._unstarted_result


def pump(
    source: asyncio.StreamReader,
    sink: Sink,
    context: Optional[DeliveryContext] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> PumpHandle:
    """Start pumping ``source`` into ``sink``. Must be called from a running event loop."""
    return PumpHandle(source, sink, context=context, chunk_size=chunk_size)
