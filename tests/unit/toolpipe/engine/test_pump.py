"""
Tests for ordered stream delivery into sinks.
"""
import asyncio
import threading

import pytest

from toolpipe.engine.pump import BufferSink, CallbackSink, DeliveryThread, pump


def fed_reader(*chunks: bytes, eof: bool = True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    for chunk in chunks:
        reader.feed_data(chunk)
    if eof:
        reader.feed_eof()
    return reader


class ThreadRecordingSink:
    def __init__(self):
        self.writes = []
        self.close_calls = []

    def write(self, data: bytes) -> None:
        self.writes.append((data, threading.current_thread()))

    def close(self, closed_early: bool) -> None:
        self.close_calls.append((closed_early, threading.current_thread()))


@pytest.mark.asyncio
async def test_pump_into_buffer_without_context():
    sink = BufferSink()
    result = await pump(fed_reader(b"hello\n"), sink).wait()
    assert sink.data == b"hello\n"
    assert sink.closed and not sink.closed_early
    assert result.bytes_delivered == 6
    assert result.closed_early is False


@pytest.mark.asyncio
async def test_delivery_happens_on_the_delivery_thread():
    delivery = DeliveryThread()
    try:
        sink = ThreadRecordingSink()
        await pump(fed_reader(b"hello\n"), sink, context=delivery).wait()
        assert b"".join(data for data, _ in sink.writes) == b"hello\n"
        assert all(thread is delivery.thread for _, thread in sink.writes)
        assert sink.close_calls == [(False, delivery.thread)]
    finally:
        delivery.shutdown()


@pytest.mark.asyncio
async def test_chunks_arrive_in_order():
    reader = asyncio.StreamReader()
    sink = BufferSink()
    handle = pump(reader, sink, chunk_size=4)
    for index in range(20):
        reader.feed_data(f"{index:03d},".encode())
        await asyncio.sleep(0)
    reader.feed_eof()
    await handle.wait()
    assert sink.data == b"".join(f"{i:03d},".encode() for i in range(20))


@pytest.mark.asyncio
async def test_cancel_closes_sink_early():
    reader = fed_reader(b"partial", eof=False)
    sink = BufferSink()
    handle = pump(reader, sink)
    await asyncio.sleep(0.05)
    handle.cancel()
    result = await handle.wait()
    assert result.closed_early is True
    assert sink.closed_early is True
    assert sink.data == b"partial"
    assert handle.done()


@pytest.mark.asyncio
async def test_cancel_before_first_read():
    sink = BufferSink()
    handle = pump(fed_reader(eof=False), sink)
    handle.cancel()
    result = await handle.wait()
    assert result.closed_early is True
    assert result.bytes_delivered == 0
    assert sink.closed and sink.closed_early
    # Waiting again does not close the sink twice
    assert await handle.wait() == result


@pytest.mark.asyncio
async def test_event_loop_as_context():
    loop = asyncio.get_running_loop()
    seen = []
    sink = CallbackSink(seen.append, lambda early: seen.append(("closed", early)))
    await pump(fed_reader(b"a", b"b"), sink, context=loop).wait()
    assert b"".join(x for x in seen if isinstance(x, bytes)) == b"ab"
    assert seen[-1] == ("closed", False)


@pytest.mark.asyncio
async def test_sink_failure_propagates_after_close():
    closed = []

    def explode(data):
        raise RuntimeError("sink broke")

    handle = pump(fed_reader(b"data"), CallbackSink(explode, closed.append))
    with pytest.raises(RuntimeError, match="sink broke"):
        await handle.wait()
    assert closed == [True]


def test_delivery_thread_runs_in_submission_order():
    delivery = DeliveryThread()
    order = []
    futures = [delivery.submit(order.append, i) for i in range(50)]
    for future in futures:
        future.result(timeout=5)
    delivery.shutdown()
    assert order == list(range(50))
    with pytest.raises(RuntimeError):
        delivery.submit(order.append, 99)
