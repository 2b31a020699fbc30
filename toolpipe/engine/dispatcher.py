"""
Module dispatcher: routes one message through the configured tools.

Per message: candidate selection -> invocation -> result application.

    Candidate selection   enabled, scope vs. direction, host tool restriction
                          (listeners), applyWithListener (automatic annotators),
                          then the tool's MessageMatch filter
    Invocation            CommandExecutor, bounded by a semaphore
    Result application    per kind (view, rewritten message, highlight,
                          comment, payload)

Every tool reports a ToolOutcome. A failing tool never stops the others; its
error is logged and carried in its outcome.

Non-zero exit status, per kind:
    MessageViewer             failure, no view
    Macro                     failure, message unchanged
    HttpListener              failure, message unchanged
    Highlighter               not a failure: the command is a predicate
    Commentator               failure, annotations unchanged
    UserActionTool            failure
    IntruderPayloadProcessor  failure, payload dropped (output None)
    IntruderPayloadGenerator  ignored (see payloads.py)
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import mimetypes
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Sequence, Tuple, Union

from toolpipe.config import ToolpipeConfig, get_config
from toolpipe.errors import DispatchError, PipeError, handle_error
from toolpipe.model.enums import Direction, Highlight, HostTool, HttpListenerScope
from toolpipe.model.tools import (
    CommandInvocation,
    Commentator,
    Config,
    Highlighter,
    HttpListener,
    MessageViewer,
    MinimalTool,
    Tool,
    ToolKind,
    UserActionTool,
)

from .executor import CommandExecutor, InvocationResult, resolve_parameters
from .matching import MatchSubject, command_matches, message_matches, split_headers
from .payloads import PayloadStream

logger = logging.getLogger(__name__)

ConfigProvider = Callable[[], Config]


def find_body_offset(data: bytes) -> int:
    """Offset just past the blank line ending the head, or len(data) if there is none."""
    candidates = [
        idx + len(sep)
        for sep in (b"\r\n\r\n", b"\n\n")
        for idx in (data.find(sep),)
        if idx != -1
    ]
    return min(candidates) if candidates else len(data)


@dataclass(frozen=True)
class Message:
    content: bytes
    body_offset: int
    direction: Direction
    source: HostTool = HostTool.PROXY
    url: Optional[str] = None
    # The request a response answers, for RESPONSE_WITH_REQUEST listeners
    request: Optional["Message"] = None

    @classmethod
    def parse(cls, content: bytes, direction: Direction, **kwargs) -> "Message":
        return cls(content, find_body_offset(content), direction, **kwargs)

    @property
    def head(self) -> bytes:
        return self.content[: self.body_offset]

    @property
    def body(self) -> bytes:
        return self.content[self.body_offset:]

    @property
    def is_request(self) -> bool:
        return self.direction.is_request

    @property
    def headers(self) -> List[str]:
        return split_headers(self.head)

    @property
    def extension(self) -> Optional[str]:
        """Temp file suffix guessed from the Content-Type header."""
        for line in self.headers:
            name, _, value = line.partition(":")
            if name.strip().lower() == "content-type":
                return mimetypes.guess_extension(value.split(";")[0].strip().lower())
        return None

    def tool_input(self, cmd: CommandInvocation) -> Optional[bytes]:
        """What ``cmd`` receives: the whole message, or the body (None when there is none)."""
        if cmd.pass_headers:
            return self.content
        return self.body or None

    def replaced(self, cmd: CommandInvocation, output: bytes) -> "Message":
        """Apply tool output. Without passHeaders the original head bytes are kept verbatim."""
        if cmd.pass_headers:
            return dataclasses.replace(self, content=output, body_offset=find_body_offset(output))
        return dataclasses.replace(self, content=self.head + output)

    def subject(self, data: bytes) -> MatchSubject:
        return MatchSubject(data, headers=self.headers, url=self.url)


@dataclass(frozen=True)
class Annotations:
    highlight: Optional[Highlight] = None
    comment: str = ""


@dataclass(frozen=True)
class ToolOutcome:
    tool: Tool
    kind: ToolKind
    result: Optional[InvocationResult] = None
    # View bytes, rewritten Message, matched Highlight, comment text or payload
    output: Any = None
    error: Optional[PipeError] = None

    @property
    def name(self) -> str:
        return self.tool.name

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class HandleResult:
    message: Message
    annotations: Annotations
    outcomes: List[ToolOutcome] = field(default_factory=list)


class ToolDispatcher:
    """
    Runs tools from the current Config snapshot against messages.

    Args:
        config_provider: Returns the Config snapshot to use (or a Config)
        executor: Process executor (one per dispatcher by default)
        settings: Runtime settings; bounds the number of concurrent tools
    """

    def __init__(
        self,
        config_provider: Union[ConfigProvider, Config],
        executor: Optional[CommandExecutor] = None,
        settings: Optional[ToolpipeConfig] = None,
    ):
        if isinstance(config_provider, Config):
            snapshot = config_provider
            config_provider = lambda: snapshot  # noqa: E731
        self.config_provider = config_provider
        self.settings = settings or get_config()
        self.executor = executor or CommandExecutor(self.settings.execution)
        self._semaphore = asyncio.Semaphore(self.settings.execution.max_concurrent_tools)

    @property
    def config(self) -> Config:
        return self.config_provider()

    # ------------------------------------------------------------------
    # Shared plumbing
    # ------------------------------------------------------------------

    async def _run(
        self,
        tool: Tool,
        payload,
        extension: Optional[str] = None,
        developer: bool = False,
        parameters: Optional[Mapping[str, str]] = None,
    ) -> InvocationResult:
        async with self._semaphore:
            result = await self.executor.invoke(
                tool.common.cmd, payload, extension=extension, parameters=parameters
            )
        if developer and result.stderr:
            logger.warning(
                f"{tool.name} called {tool.common.cmd.command_line} and stderr was not empty:\n"
                f"{result.stderr.decode('utf-8', errors='replace')}"
            )
        return result

    async def _matches_filter(self, tool: Tool, subject: MatchSubject) -> bool:
        common = tool.common
        if common.filter is None:
            return True
        return await message_matches(common.filter, subject, self.executor)

    async def _isolated(self, tool: Tool, kind: ToolKind, work: Awaitable[ToolOutcome]) -> ToolOutcome:
        try:
            return await work
        except Exception as exc:
            error = handle_error(exc, context=tool.name)
            logger.warning(f"[Dispatch] {kind.value} '{tool.name}' failed: {error}")
            return ToolOutcome(tool, kind, error=error)

    async def _gather(self, jobs: Sequence[Tuple[Tool, ToolKind, Awaitable[Optional[ToolOutcome]]]]) -> List[ToolOutcome]:
        outcomes = await asyncio.gather(*(self._isolated(tool, kind, work) for tool, kind, work in jobs))
        return [outcome for outcome in outcomes if outcome is not None]

    @staticmethod
    def _in_scope(tool: Tool, message: Message) -> bool:
        return tool.enabled and tool.common.scope.accepts(message.is_request)

    # ------------------------------------------------------------------
    # Message viewers
    # ------------------------------------------------------------------

    async def render_views(self, message: Message) -> List[ToolOutcome]:
        """Run every applicable viewer; the message itself is never changed."""
        config = self.config
        jobs = [
            (viewer, ToolKind.MESSAGE_VIEWER, self._render(viewer, message, config.developer))
            for viewer in config.message_viewers
            if self._in_scope(viewer, message)
        ]
        return await self._gather(jobs)

    async def _render(self, viewer: MessageViewer, message: Message, developer: bool) -> Optional[ToolOutcome]:
        data = message.tool_input(viewer.common.cmd)
        if data is None or not await self._matches_filter(viewer, message.subject(data)):
            return None
        result = await self._run(viewer, data, message.extension, developer)
        result.check_returncode()
        return ToolOutcome(viewer, ToolKind.MESSAGE_VIEWER, result, output=result.stdout)

    # ------------------------------------------------------------------
    # Macros
    # ------------------------------------------------------------------

    async def apply_macros(self, message: Message) -> Tuple[Message, List[ToolOutcome]]:
        """Apply macros in order; each one sees the previous macro's output."""
        config = self.config
        outcomes: List[ToolOutcome] = []
        for macro in config.macros:
            if not self._in_scope(macro, message):
                continue
            outcome = await self._isolated(
                macro, ToolKind.MACRO, self._rewrite(macro, ToolKind.MACRO, message, config.developer)
            )
            if outcome is None:
                continue
            outcomes.append(outcome)
            if outcome.ok:
                message = outcome.output
        return message, outcomes

    async def _rewrite(
        self,
        tool: Union[MinimalTool, HttpListener],
        kind: ToolKind,
        message: Message,
        developer: bool,
        inputs: Optional[List[bytes]] = None,
    ) -> Optional[ToolOutcome]:
        cmd = tool.common.cmd
        data = message.tool_input(cmd)
        if data is None or not await self._matches_filter(tool, message.subject(data)):
            return None
        result = await self._run(tool, inputs or data, message.extension, developer)
        result.check_returncode()
        return ToolOutcome(tool, kind, result, output=message.replaced(cmd, result.stdout))

    # ------------------------------------------------------------------
    # HTTP listeners
    # ------------------------------------------------------------------

    def _listener_applies(self, listener: HttpListener, message: Message) -> bool:
        return (
            listener.enabled
            and listener.scope.listens_to_requests == message.is_request
            and listener.accepts_source(message.source)
        )

    async def notify_listeners(self, message: Message) -> Tuple[Message, List[ToolOutcome]]:
        """
        Run listeners for a captured message.

        Passive listeners (ignoreOutput) run concurrently. Listeners whose
        output replaces the message run afterwards, one at a time, in order.
        """
        config = self.config
        listeners = [lst for lst in config.http_listeners if self._listener_applies(lst, message)]

        passive = [
            (lst, ToolKind.HTTP_LISTENER, self._listen(lst, message, config.developer))
            for lst in listeners
            if lst.ignore_output
        ]
        outcomes = await self._gather(passive)

        for listener in listeners:
            if listener.ignore_output:
                continue
            outcome = await self._isolated(
                listener, ToolKind.HTTP_LISTENER, self._listen(listener, message, config.developer)
            )
            if outcome is None:
                continue
            outcomes.append(outcome)
            if outcome.ok:
                message = outcome.output
        return message, outcomes

    def _listener_inputs(self, listener: HttpListener, message: Message) -> List[bytes]:
        cmd = listener.common.cmd
        inputs = []
        if listener.scope is HttpListenerScope.RESPONSE_WITH_REQUEST:
            if message.request is None:
                logger.debug(f"[Dispatch] '{listener.name}' wants the request but none was supplied")
            else:
                request_input = message.request.tool_input(cmd)
                if request_input is not None:
                    inputs.append(request_input)
        data = message.tool_input(cmd)
        if data is not None:
            inputs.append(data)
        return inputs

    async def _listen(self, listener: HttpListener, message: Message, developer: bool) -> Optional[ToolOutcome]:
        if message.tool_input(listener.common.cmd) is None:
            return None
        inputs = self._listener_inputs(listener, message)
        if listener.ignore_output:
            data = inputs[-1]
            if not await self._matches_filter(listener, message.subject(data)):
                return None
            result = await self._run(listener, inputs, message.extension, developer)
            result.check_returncode()
            return ToolOutcome(listener, ToolKind.HTTP_LISTENER, result, output=message)
        return await self._rewrite(listener, ToolKind.HTTP_LISTENER, message, developer, inputs=inputs)

    # ------------------------------------------------------------------
    # Highlighters and commentators
    # ------------------------------------------------------------------

    async def annotate(
        self,
        message: Message,
        annotations: Annotations = Annotations(),
        automatic: bool = False,
    ) -> Tuple[Annotations, List[ToolOutcome]]:
        """
        Run highlighters and commentators.

        With ``automatic`` only tools marked applyWithListener run (the
        capture path); otherwise every enabled one does (on demand).

        Highlighters: the first match (in order) sets an empty highlight;
        ``overwrite`` highlighters replace whatever is set. Commentators:
        ``overwrite`` replaces the comment, otherwise output is appended on a
        new line.
        """
        config = self.config

        def wanted(tool: Union[Highlighter, Commentator]) -> bool:
            return self._in_scope(tool, message) and (tool.apply_with_listener or not automatic)

        highlighters = [
            h for h in config.highlighters
            if wanted(h) and (annotations.highlight is None or h.overwrite)
        ]
        commentators = [c for c in config.commentators if wanted(c)]

        jobs = [(h, ToolKind.HIGHLIGHTER, self._highlight(h, message)) for h in highlighters]
        jobs += [(c, ToolKind.COMMENTATOR, self._comment(c, message, config.developer)) for c in commentators]
        outcomes = await self._gather(jobs)

        highlight = annotations.highlight
        comment = annotations.comment
        for outcome in outcomes:
            if not outcome.ok or outcome.output is None:
                continue
            if outcome.kind is ToolKind.HIGHLIGHTER:
                if highlight is None or outcome.tool.overwrite:
                    highlight = None if outcome.output is Highlight.CLEAR else outcome.output
            elif outcome.tool.overwrite or not comment:
                comment = outcome.output
            else:
                comment = f"{comment}\n{outcome.output}"
        return Annotations(highlight=highlight, comment=comment), outcomes

    async def _highlight(self, highlighter: Highlighter, message: Message) -> Optional[ToolOutcome]:
        data = message.tool_input(highlighter.common.cmd)
        if data is None or not await self._matches_filter(highlighter, message.subject(data)):
            return None
        async with self._semaphore:
            matched = await command_matches(highlighter.common.cmd, data, self.executor, message.extension)
        return ToolOutcome(highlighter, ToolKind.HIGHLIGHTER, output=highlighter.color if matched else None)

    async def _comment(self, commentator: Commentator, message: Message, developer: bool) -> Optional[ToolOutcome]:
        data = message.tool_input(commentator.common.cmd)
        if data is None or not await self._matches_filter(commentator, message.subject(data)):
            return None
        result = await self._run(commentator, data, message.extension, developer)
        result.check_returncode()
        text = result.stdout.decode("utf-8", errors="replace").rstrip("\r\n")
        return ToolOutcome(commentator, ToolKind.COMMENTATOR, result, output=text)

    # ------------------------------------------------------------------
    # Intruder payloads
    # ------------------------------------------------------------------

    async def process_payload(self, processor: MinimalTool, payload: bytes) -> ToolOutcome:
        """Transform one payload. ``output`` is None when the payload is dropped."""
        developer = self.config.developer

        async def work() -> ToolOutcome:
            if not await self._matches_filter(processor, MatchSubject(payload)):
                return ToolOutcome(processor, ToolKind.INTRUDER_PAYLOAD_PROCESSOR)
            result = await self._run(processor, payload, developer=developer)
            result.check_returncode()
            return ToolOutcome(processor, ToolKind.INTRUDER_PAYLOAD_PROCESSOR, result, output=result.stdout)

        return await self._isolated(processor, ToolKind.INTRUDER_PAYLOAD_PROCESSOR, work())

    def generate_payloads(
        self, generator: MinimalTool, parameters: Optional[Mapping[str, str]] = None
    ) -> PayloadStream:
        """
        A payload stream for ``generator``.

        Parameter values are checked here, so a missing required value raises
        ParameterError before any process is started.
        """
        values = resolve_parameters(generator.cmd, parameters)
        return PayloadStream(generator, self.executor, parameters=values, developer=self.config.developer)

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    async def run_user_action(
        self,
        tool: UserActionTool,
        messages: Sequence[Message],
        viewer: Optional[MessageViewer] = None,
        parameters: Optional[Mapping[str, str]] = None,
    ) -> ToolOutcome:
        """
        Run a context-menu tool on the selected messages.

        With ``viewer`` each message is first rendered through that viewer
        and the rendered output is what the tool receives. ``parameters``
        supplies values for the tool's declared command parameters.
        """
        developer = self.config.developer

        async def work() -> ToolOutcome:
            if not tool.accepts_input_count(len(messages)):
                raise DispatchError(
                    f"'{tool.name}' cannot run on {len(messages)} message(s)",
                    details={"min_inputs": tool.min_inputs, "max_inputs": tool.max_inputs},
                )
            pipe_through = viewer
            if pipe_through is not None and tool.avoid_pipe:
                logger.debug(f"[Dispatch] '{tool.name}' avoids piping, ignoring viewer '{viewer.name}'")
                pipe_through = None

            inputs: List[bytes] = []
            for message in messages:
                if pipe_through is not None:
                    data = message.tool_input(pipe_through.common.cmd)
                    if data is None:
                        continue
                    rendered = await self._run(pipe_through, data, message.extension, developer)
                    inputs.append(rendered.check_returncode().stdout)
                else:
                    data = message.tool_input(tool.common.cmd)
                    if data is not None:
                        inputs.append(data)

            extension = messages[0].extension if len(messages) == 1 and pipe_through is None else None
            result = await self._run(tool, inputs, extension, developer, parameters)
            result.check_returncode()
            return ToolOutcome(tool, ToolKind.MENU_ITEM, result, output=result.stdout)

        return await self._isolated(tool, ToolKind.MENU_ITEM, work())

    # ------------------------------------------------------------------
    # Capture path
    # ------------------------------------------------------------------

    async def handle(self, message: Message, annotations: Annotations = Annotations()) -> HandleResult:
        """Listeners, then automatic annotators, for one captured message."""
        message, outcomes = await self.notify_listeners(message)
        annotations, annotator_outcomes = await self.annotate(message, annotations, automatic=True)
        return HandleResult(message, annotations, outcomes + annotator_outcomes)
