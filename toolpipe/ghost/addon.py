"""
toolpipe/ghost/addon.py
mitmproxy host adapter.
Feeds live flows to the ToolDispatcher and writes the results back.
"""

import asyncio
import logging
from typing import Optional

from mitmproxy import http, options
from mitmproxy.net.http.http1 import (
    assemble_request_head,
    assemble_response_head,
    read_request_head,
    read_response_head,
)
from mitmproxy.tools.dump import DumpMaster

from toolpipe.engine.dispatcher import Annotations, Message, ToolDispatcher
from toolpipe.model.enums import Direction, Highlight, HostTool

logger = logging.getLogger(__name__)

HIGHLIGHT_KEY = "toolpipe.highlight"


def host_tool_of(flow: http.HTTPFlow) -> HostTool:
    return HostTool.REPEATER if flow.is_replay else HostTool.PROXY


def request_message(flow: http.HTTPFlow) -> Optional[Message]:
    body = flow.request.raw_content
    if body is None:
        return None
    head = assemble_request_head(flow.request)
    return Message(
        head + body,
        len(head),
        Direction.REQUEST,
        source=host_tool_of(flow),
        url=flow.request.pretty_url,
    )


def response_message(flow: http.HTTPFlow) -> Optional[Message]:
    if flow.response is None or flow.response.raw_content is None:
        return None
    head = assemble_response_head(flow.response)
    return Message(
        head + flow.response.raw_content,
        len(head),
        Direction.RESPONSE,
        source=host_tool_of(flow),
        url=flow.request.pretty_url,
        request=request_message(flow),
    )


def annotations_of(flow: http.HTTPFlow) -> Annotations:
    value = flow.metadata.get(HIGHLIGHT_KEY)
    return Annotations(
        highlight=Highlight(value) if value else None,
        comment=flow.comment or "",
    )


def apply_annotations(flow: http.HTTPFlow, annotations: Annotations) -> None:
    if annotations.highlight is None:
        flow.metadata.pop(HIGHLIGHT_KEY, None)
    else:
        flow.metadata[HIGHLIGHT_KEY] = annotations.highlight.value
    flow.comment = annotations.comment


def _set_body(message: http.Message, body: bytes) -> None:
    message.raw_content = body
    if "content-length" in message.headers:
        message.headers["content-length"] = str(len(body))


def apply_message(flow: http.HTTPFlow, original: Message, updated: Message) -> None:
    """Write a rewritten message back into the flow."""
    if updated.content == original.content:
        return
    target = flow.request if updated.is_request else flow.response
    if updated.head != original.head:
        lines = updated.head.splitlines(keepends=True)
        if updated.is_request:
            parsed = read_request_head(lines)
            target.method = parsed.method
            target.path = parsed.path
        else:
            parsed = read_response_head(lines)
            target.status_code = parsed.status_code
            target.reason = parsed.reason
        target.http_version = parsed.http_version
        target.headers = parsed.headers
    _set_body(target, updated.body)


class ToolpipeAddon:
    """
    mitmproxy addon running macros and listeners on requests, and listeners
    plus automatic highlighters/commentators on responses.
    """

    def __init__(self, dispatcher: ToolDispatcher):
        self.dispatcher = dispatcher

    async def request(self, flow: http.HTTPFlow):
        message = request_message(flow)
        if message is None:
            return
        try:
            rewritten, _ = await self.dispatcher.apply_macros(message)
            result = await self.dispatcher.handle(rewritten, annotations_of(flow))
            apply_message(flow, message, result.message)
            apply_annotations(flow, result.annotations)
        except ValueError as e:
            logger.error(f"[Ghost] Could not apply tool output to {flow.request.pretty_url}: {e}")

    async def response(self, flow: http.HTTPFlow):
        message = response_message(flow)
        if message is None:
            return
        try:
            result = await self.dispatcher.handle(message, annotations_of(flow))
            apply_message(flow, message, result.message)
            apply_annotations(flow, result.annotations)
        except ValueError as e:
            logger.error(f"[Ghost] Could not apply tool output to {flow.request.pretty_url}: {e}")


class ToolpipeInterceptor:
    """
    Manages a background mitmproxy instance carrying the ToolpipeAddon.
    """

    def __init__(self, dispatcher: ToolDispatcher, host: str = "127.0.0.1", port: int = 8080):
        self.dispatcher = dispatcher
        self.host = host
        self.port = port
        self.master: Optional[DumpMaster] = None
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        opts = options.Options(listen_host=self.host, listen_port=self.port)
        self.master = DumpMaster(opts, with_termlog=False, with_dumper=False)
        self.master.addons.add(ToolpipeAddon(self.dispatcher))
        logger.info(f"[*] toolpipe proxy listening on {self.host}:{self.port}")
        self._task = asyncio.create_task(self._run_master())

    async def _run_master(self):
        try:
            await self.master.run()
        except Exception as e:
            logger.error(f"[Ghost] Proxy error: {e}")
            raise

    async def wait(self):
        if self._task is not None:
            await self._task

    def stop(self):
        if self.master:
            self.master.shutdown()
        if self._task and not self._task.done():
            self._task.cancel()
        logger.info("[*] toolpipe proxy stopped")
