"""Task start, main loop and abort."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from taskpilot.orchestrator.formatting import feedback_content, no_tools_used, task_text
from taskpilot.orchestrator.models import MessagePart, SayKind, TextPart
from taskpilot.orchestrator.task import TaskOrchestrator

logger = logging.getLogger(__name__)

_ABORT_POLL_SECONDS = 0.05


class TaskRunner:
    """Owns the outer loop around `TaskOrchestrator.recursively_make_requests`."""

    def __init__(
        self,
        orchestrator: TaskOrchestrator,
        *,
        abort_wait_timeout_seconds: float | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.state = orchestrator.state
        self._abort_wait_timeout = (
            abort_wait_timeout_seconds
            if abort_wait_timeout_seconds is not None
            else orchestrator.settings.stream.abort_wait_timeout_seconds
        )

    async def start_task(
        self,
        task: str,
        images: Sequence[str] = (),
        files: Sequence[str] = (),
    ) -> None:
        logger.info("Starting task %s", self.state.task_id)
        await self.orchestrator.messages.say(SayKind.TASK, task, images=images, files=files)
        content = feedback_content(task_text(task), images=images, files=files)
        await self.initiate_task_loop(content)

    async def initiate_task_loop(self, user_content: list[MessagePart]) -> None:
        next_content = user_content
        include_file_details = True
        while not self.state.abort:
            did_end_loop = await self.orchestrator.recursively_make_requests(
                next_content, include_file_details,
            )
            include_file_details = False
            if did_end_loop:
                self.state.mark_aborted()
                break
            next_content = [TextPart(text=no_tools_used())]
            self.state.limits.record_mistake()
        logger.info(
            "Task loop finished for task %s after %d requests (completed=%s)",
            self.state.task_id,
            self.state.api_request_count,
            self.state.did_complete_task,
        )

    async def abort_task(self) -> None:
        """Abort the task; waits briefly for the stream to wind down gracefully."""

        state = self.state
        state.mark_aborted()
        reverter = self.orchestrator.edit_reverter
        if reverter is not None and reverter.is_editing:
            await reverter.revert_changes()

        if state.stream.is_streaming:
            try:
                await asyncio.wait_for(self._wait_for_stream_abort(), self._abort_wait_timeout)
            except TimeoutError:
                logger.warning(
                    "Stream for task %s did not stop within %.1fs; abandoning it",
                    state.task_id,
                    self._abort_wait_timeout,
                )
                state.abandoned = True
        await self.orchestrator.presenter.drain()

    async def _wait_for_stream_abort(self) -> None:
        stream = self.state.stream
        while stream.is_streaming and not stream.did_finish_aborting_stream:
            await asyncio.sleep(_ABORT_POLL_SECONDS)
