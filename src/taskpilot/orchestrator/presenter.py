"""Sequential presentation of parsed assistant content.

Blocks are presented one at a time in index order. Presentation requests
are queued and drained by a single consumer task, so at most one block is
in flight and a request made while the consumer is busy only marks that
another pass is needed.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import re

from taskpilot.orchestrator.errors import TaskAbortedError
from taskpilot.orchestrator.interfaces import ToolExecutor
from taskpilot.orchestrator.messages import MessageService
from taskpilot.orchestrator.models import SayKind, TextContent, TextPart, ToolUseContent
from taskpilot.orchestrator.state import TaskState

logger = logging.getLogger(__name__)

_THINKING_OPEN = re.compile(r"<thinking>\s?")
_THINKING_CLOSE = re.compile(r"\s?</thinking>")
_TRAILING_PARTIAL_TAG = re.compile(r"\s?<\/?[A-Za-z0-9_]*$")
_TRAILING_CODE_FENCE = re.compile(r"```[A-Za-z0-9_-]+$")


def clean_text_for_display(content: str, *, partial: bool) -> str:
    """Strip thinking markers, a dangling tag and, when final, a fence artifact."""

    cleaned = _THINKING_OPEN.sub("", content)
    cleaned = _THINKING_CLOSE.sub("", cleaned)
    cleaned = _TRAILING_PARTIAL_TAG.sub("", cleaned)
    if not partial:
        stripped = cleaned.rstrip()
        match = _TRAILING_CODE_FENCE.search(stripped)
        if match is not None:
            cleaned = stripped[: match.start()].rstrip()
    return cleaned


class ContentPresenter:
    """Single-consumer work queue over the parsed assistant blocks."""

    def __init__(
        self,
        state: TaskState,
        *,
        messages: MessageService,
        tool_executor: ToolExecutor,
    ) -> None:
        self._state = state
        self._messages = messages
        self._tool_executor = tool_executor
        self._signals: asyncio.Queue[None] = asyncio.Queue()
        self._consumer: asyncio.Task[None] | None = None
        self._error: BaseException | None = None
        self.in_flight = 0
        self.max_in_flight = 0

    def request_presentation(self) -> None:
        """Ask for a presentation pass without blocking."""

        if self._state.abort:
            raise TaskAbortedError(self._state.task_id, "presentation rejected: task aborted")
        presentation = self._state.presentation
        if presentation.present_locked:
            presentation.present_has_pending_updates = True
            return
        self._signals.put_nowait(None)
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.get_running_loop().create_task(self._consume())

    async def _consume(self) -> None:
        while not self._signals.empty():
            self._signals.get_nowait()
            try:
                while await self.present_next():
                    pass
            except Exception as exc:
                logger.debug("Presentation stopped for task %s: %s", self._state.task_id, exc)
                self._error = exc
                self._state.presentation.user_message_content_ready.set()
                return

    async def present_next(self) -> bool:
        """Run one step of the presentation state machine.

        Returns True when another step should follow immediately.
        """

        if self._state.abort:
            raise TaskAbortedError(self._state.task_id, "presentation rejected: task aborted")

        presentation = self._state.presentation
        stream = self._state.stream
        if presentation.present_locked:
            presentation.present_has_pending_updates = True
            return False

        index = presentation.current_streaming_content_index
        if index >= len(presentation.assistant_message_content):
            if stream.did_complete_reading_stream:
                presentation.user_message_content_ready.set()
            return False

        block = copy.deepcopy(presentation.assistant_message_content[index])
        presentation.present_locked = True
        presentation.present_has_pending_updates = False
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if isinstance(block, TextContent):
                await self._present_text(block)
            else:
                await self._present_tool_use(block)
        finally:
            self.in_flight -= 1
            presentation.present_locked = False

        if not block.partial or stream.did_reject_tool or stream.did_already_use_tool:
            if index == len(presentation.assistant_message_content) - 1:
                presentation.user_message_content_ready.set()
            presentation.current_streaming_content_index = index + 1
            return True
        return presentation.present_has_pending_updates

    async def _present_text(self, block: TextContent) -> None:
        stream = self._state.stream
        if stream.did_reject_tool or stream.did_already_use_tool:
            return
        content = clean_text_for_display(block.content, partial=block.partial)
        if content or not block.partial:
            await self._messages.say(SayKind.TEXT, content, partial=block.partial)

    async def _present_tool_use(self, block: ToolUseContent) -> None:
        stream = self._state.stream
        user_content = self._state.presentation.user_message_content
        if stream.did_reject_tool:
            user_content.append(
                TextPart(
                    text=f"Skipping tool [{block.name}] due to user rejecting a previous tool.",
                ),
            )
            return
        if stream.did_already_use_tool:
            user_content.append(
                TextPart(
                    text=(
                        f"Tool [{block.name}] was not executed because a tool has already been "
                        "used in this message. Only one tool may be used per message. You must "
                        "assess the first tool's result before proceeding to use the next tool."
                    ),
                ),
            )
            return
        await self._tool_executor.execute_tool(block)
        if not block.partial:
            stream.did_already_use_tool = True

    async def wait_until_ready(self, timeout: float | None = None) -> None:
        """Wait for the turn-ready gate and surface consumer failures."""

        ready = self._state.presentation.user_message_content_ready
        if timeout is None:
            await ready.wait()
        else:
            await asyncio.wait_for(ready.wait(), timeout)
        if self._error is not None:
            error, self._error = self._error, None
            raise error

    async def drain(self) -> None:
        """Wait for the consumer to stop on its own; an in-flight tool runs to completion."""

        consumer = self._consumer
        if consumer is not None and not consumer.done():
            await asyncio.shield(consumer)

    async def aclose(self) -> None:
        """Cancel the consumer task if it is still running."""

        if self._consumer is not None and not self._consumer.done():
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                logger.debug("Presenter consumer cancelled for task %s", self._state.task_id)
        self._consumer = None
