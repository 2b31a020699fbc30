"""
Tests for the mitmproxy adapter, driven with mitmproxy's own test flows.
"""
import sys

import pytest
from mitmproxy.test import tflow

from toolpipe.engine.dispatcher import Annotations, ToolDispatcher
from toolpipe.ghost.addon import (
    HIGHLIGHT_KEY,
    ToolpipeAddon,
    annotations_of,
    apply_annotations,
    host_tool_of,
    request_message,
    response_message,
)
from toolpipe.model.enums import Direction, Highlight, HostTool, HttpListenerScope
from toolpipe.model.tools import (
    CommandInvocation,
    Commentator,
    Config,
    Highlighter,
    HttpListener,
    MinimalTool,
)

UPPER = "import sys; sys.stdout.buffer.write(sys.stdin.buffer.read().upper())"
SHOUT = "import sys; sys.stdout.buffer.write(sys.stdin.buffer.read() + b'!!')"
RETAG = "import sys; sys.stdout.buffer.write(sys.stdin.buffer.read().replace(b'qvalue', b'rewritten'))"
BYTE_COUNT = "import sys; print(len(sys.stdin.buffer.read()), 'bytes')"
ALWAYS = "import sys; sys.stdin.buffer.read()"


def tool(name, script, **kwargs):
    return MinimalTool(name=name, cmd=CommandInvocation(prefix=(sys.executable, "-c", script), **kwargs))


def addon_for(**collections):
    return ToolpipeAddon(ToolDispatcher(Config(**collections)))


def test_request_message_from_flow():
    flow = tflow.tflow()
    message = request_message(flow)
    assert message.direction is Direction.REQUEST
    assert message.body == b"content"
    assert message.content.startswith(b"GET /path HTTP/1.1\r\n")
    assert "header: qvalue" in message.headers
    assert message.source is HostTool.PROXY


def test_response_message_carries_request():
    flow = tflow.tflow(resp=True)
    message = response_message(flow)
    assert message.direction is Direction.RESPONSE
    assert message.body == b"message"
    assert message.head.startswith(b"HTTP/1.1 200 OK\r\n")
    assert message.request.body == b"content"


def test_no_response_yet():
    assert response_message(tflow.tflow()) is None


def test_replayed_flows_come_from_repeater():
    flow = tflow.tflow()
    assert host_tool_of(flow) is HostTool.PROXY
    flow.is_replay = "request"
    assert host_tool_of(flow) is HostTool.REPEATER


def test_annotations_round_trip():
    flow = tflow.tflow(resp=True)
    assert annotations_of(flow) == Annotations()
    apply_annotations(flow, Annotations(highlight=Highlight.ORANGE, comment="note"))
    assert flow.metadata[HIGHLIGHT_KEY] == "orange"
    assert annotations_of(flow) == Annotations(highlight=Highlight.ORANGE, comment="note")
    apply_annotations(flow, Annotations())
    assert HIGHLIGHT_KEY not in flow.metadata


@pytest.mark.asyncio
async def test_macro_rewrites_request_body():
    flow = tflow.tflow()
    await addon_for(macros=(tool("Upper", UPPER),)).request(flow)
    assert flow.request.raw_content == b"CONTENT"
    assert flow.request.headers["content-length"] == "7"


@pytest.mark.asyncio
async def test_content_length_follows_new_body():
    flow = tflow.tflow()
    await addon_for(macros=(tool("Shout", SHOUT),)).request(flow)
    assert flow.request.raw_content == b"content!!"
    assert flow.request.headers["content-length"] == "9"


@pytest.mark.asyncio
async def test_pass_headers_macro_rewrites_headers():
    flow = tflow.tflow()
    await addon_for(macros=(tool("Retag", RETAG, pass_headers=True),)).request(flow)
    assert flow.request.headers["header"] == "rewritten"
    assert flow.request.method == "GET"
    assert flow.request.path == "/path"
    assert flow.request.raw_content == b"content"


@pytest.mark.asyncio
async def test_response_gets_automatic_annotations():
    flow = tflow.tflow(resp=True)
    addon = addon_for(
        commentators=(Commentator(common=tool("Size", BYTE_COUNT), apply_with_listener=True),),
        highlighters=(Highlighter(common=tool("All", ALWAYS), color=Highlight.GREEN, apply_with_listener=True),),
    )
    await addon.response(flow)
    assert flow.comment == "7 bytes"
    assert flow.metadata[HIGHLIGHT_KEY] == "green"
    assert flow.response.raw_content == b"message"


@pytest.mark.asyncio
async def test_listener_output_replaces_response():
    flow = tflow.tflow(resp=True)
    listener = HttpListener(common=tool("Upper", UPPER), scope=HttpListenerScope.RESPONSE, ignore_output=False)
    await addon_for(http_listeners=(listener,)).response(flow)
    assert flow.response.raw_content == b"MESSAGE"
    assert flow.response.status_code == 200


@pytest.mark.asyncio
async def test_flow_without_tools_is_untouched():
    flow = tflow.tflow(resp=True)
    before = (flow.request.get_state(), flow.response.get_state())
    addon = addon_for()
    await addon.request(flow)
    await addon.response(flow)
    assert (flow.request.get_state(), flow.response.get_state()) == before
    assert HIGHLIGHT_KEY not in flow.metadata
