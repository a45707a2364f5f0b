"""Request/response loop of one agent task."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable, Coroutine
from typing import Any

from taskpilot.config import Settings
from taskpilot.orchestrator.backend.base import StreamEvent
from taskpilot.orchestrator.checkpoints import CheckpointCoordinator
from taskpilot.orchestrator.errors import (
    ApiRequestFailedError,
    AskSupersededError,
    OrchestratorError,
    TaskAbortedError,
)
from taskpilot.orchestrator.formatting import (
    EMPTY_RESPONSE_ASK,
    NO_RESPONSE_FAILURE,
    no_tools_used,
    request_preview,
    summarize_task,
)
from taskpilot.orchestrator.interfaces import (
    CheckpointMechanism,
    ContextBuilder,
    EditReverter,
    HistoryStore,
    ModelBackend,
    Notifier,
    Telemetry,
    ToolExecutor,
    ToolReadiness,
)
from taskpilot.orchestrator.limits import LimitManager
from taskpilot.orchestrator.messages import MessageService
from taskpilot.orchestrator.models import (
    ApiRequestInfo,
    AskKind,
    AskResponse,
    CancelReason,
    HistoryMessage,
    MessagePart,
    Role,
    SayKind,
    TextPart,
    ToolUseContent,
)
from taskpilot.orchestrator.parser import AssistantMessageParser
from taskpilot.orchestrator.presenter import ContentPresenter
from taskpilot.orchestrator.retry import RetryCoordinator, RetryDecision
from taskpilot.orchestrator.state import TaskState
from taskpilot.orchestrator.stream import StreamProcessor, StreamResult
from taskpilot.orchestrator.truncation import (
    build_provider_view,
    count_active_messages,
    range_after_summary,
    should_compact,
)

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are an autonomous software engineering agent. Use exactly one tool per "
    "message, formatted as XML-style tags, and wait for its result before continuing."
)
SUMMARY_CONTINUATION = "Continue the task using the summary above as the conversation context."
_TOOL_READINESS_POLL_SECONDS = 0.1


class TaskOrchestrator:
    """Drives requests until the agent completes the task or the loop ends."""

    def __init__(
        self,
        state: TaskState,
        *,
        settings: Settings,
        backend: ModelBackend,
        history: HistoryStore,
        messages: MessageService,
        tool_executor: ToolExecutor,
        context_builder: ContextBuilder,
        parser: AssistantMessageParser | None = None,
        checkpoint_mechanism: CheckpointMechanism | None = None,
        edit_reverter: EditReverter | None = None,
        notifier: Notifier | None = None,
        telemetry: Telemetry | None = None,
        tool_readiness: ToolReadiness | None = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.state = state
        self.settings = settings
        self.backend = backend
        self.history = history
        self.messages = messages
        self.context_builder = context_builder
        self.edit_reverter = edit_reverter
        self.tool_readiness = tool_readiness
        self.system_prompt = system_prompt
        self.parser = parser or AssistantMessageParser()
        self.presenter = ContentPresenter(state, messages=messages, tool_executor=tool_executor)
        self.stream_processor = StreamProcessor(
            state,
            messages=messages,
            history=history,
            backend=backend,
            presenter=self.presenter,
            parser=self.parser,
            settings=settings.stream,
            edit_reverter=edit_reverter,
            telemetry=telemetry,
            clock=clock,
        )
        self.retry = RetryCoordinator(
            state,
            messages=messages,
            history=history,
            provider_id=settings.model.provider_id,
            telemetry=telemetry,
        )
        self.limits = LimitManager(
            state,
            messages=messages,
            settings=settings.auto_approval,
            notifier=notifier,
        )
        self.checkpoints = CheckpointCoordinator(
            state,
            messages=messages,
            mechanism=checkpoint_mechanism,
            settings=settings.checkpoints,
            notifier=notifier,
        )
        self.background_tasks: set[asyncio.Task[None]] = set()

    async def recursively_make_requests(
        self,
        user_content: list[MessagePart],
        include_file_details: bool = False,
    ) -> bool:
        """Run request turns; returns True when the task loop should end.

        Each turn that used a tool feeds its results into the next request.
        Returns False only when the operator asked to retry an empty response.
        """

        content = user_content
        include_details = include_file_details
        while True:
            try:
                outcome = await self._make_request(content, include_details)
            except TaskAbortedError:
                if self.state.abort:
                    logger.info("Task %s aborted during request", self.state.task_id)
                else:
                    logger.warning("Task %s rejected work after abort", self.state.task_id)
                return True
            except AskSupersededError as exc:
                logger.info("Task %s: %s", self.state.task_id, exc)
                return True
            except OrchestratorError as exc:
                logger.error("Task %s request failed: %s", self.state.task_id, exc)
                return True
            except Exception as exc:
                logger.exception("Task %s request cycle failed", self.state.task_id)
                self.state.request_cycle_error = f"{type(exc).__name__}: {exc}"
                return True
            if isinstance(outcome, bool):
                return outcome
            content = outcome
            include_details = False

    async def _make_request(  # noqa: C901
        self,
        user_content: list[MessagePart],
        include_file_details: bool,
    ) -> bool | list[MessagePart]:
        state = self.state
        if state.abort:
            raise TaskAbortedError(state.task_id)

        state.api_request_count += 1
        user_content = await self.limits.check_limits_before_request(user_content)

        request_ts = await self.messages.say(
            SayKind.API_REQ_STARTED,
            ApiRequestInfo(request=request_preview(user_content)).to_json(),
        )
        await self.checkpoints.handle_first_request_checkpoint(
            is_first_request=state.api_request_count == 1,
        )

        if await self.should_compact_context(request_ts):
            logger.info("Compacting context for task %s", state.task_id)
            state.currently_summarizing = True
            state.last_auto_compact_trigger_index = len(self.history.get_history())
            user_content = [TextPart(text=summarize_task())]
        else:
            loaded = await self.context_builder.load_context(user_content, include_file_details)
            user_content = list(loaded.content)
            if loaded.environment_details:
                user_content.append(TextPart(text=loaded.environment_details))
            if loaded.error_flag:
                await self.messages.say(
                    SayKind.ERROR, "Some context could not be loaded for this request.",
                )

        self.history.append(HistoryMessage(role=Role.USER, content=user_content))
        self.history.persist()
        self.messages.update_api_request(
            ApiRequestInfo(request=request_preview(user_content, loading=False)), request_ts,
        )
        self.messages.persist()

        self.stream_processor.reset_stream_state()
        try:
            stream = await self.attempt_api_request()
            result = await self.stream_processor.process_stream(stream, request_ts=request_ts)
        except (ApiRequestFailedError, TaskAbortedError, AskSupersededError):
            raise
        except Exception as exc:
            if state.abandoned:
                raise TaskAbortedError(state.task_id, "stream failed after abandon") from exc
            logger.error("Stream failed for task %s: %s", state.task_id, exc)
            await self.stream_processor.abort_stream(
                CancelReason.STREAMING_FAILED,
                request_ts=request_ts,
                streaming_failed_message=str(exc) or type(exc).__name__,
            )
            state.mark_aborted()
            return True

        if not result.did_receive_usage_chunk:
            self._spawn(self.stream_processor.fetch_and_merge_usage(request_ts, result.usage))

        if state.abort:
            raise TaskAbortedError(state.task_id, "aborted while streaming")

        self.stream_processor.mark_stream_complete()
        return await self._handle_assistant_response(result, request_ts)

    async def _handle_assistant_response(
        self,
        result: StreamResult,
        request_ts: int,
    ) -> bool | list[MessagePart]:
        state = self.state
        text = result.assistant_message
        if not text.strip():
            request_id = self.backend.get_request_id()
            logger.error(
                "Empty assistant response for task %s (request id %s)", state.task_id, request_id,
            )
            await self.messages.say(
                SayKind.ERROR,
                "Invalid API Response: The provider returned no assistant message. "
                f"(Request ID: {request_id or 'unknown'})",
            )
            self.history.append(
                HistoryMessage(role=Role.ASSISTANT, content=[TextPart(text=NO_RESPONSE_FAILURE)]),
            )
            self.history.persist()
            answer = await self.messages.ask(AskKind.API_REQ_FAILED, EMPTY_RESPONSE_ASK)
            if answer.response == AskResponse.YES_BUTTON:
                await self.messages.say(SayKind.API_REQ_RETRIED)
                return False
            return True

        presentation = state.presentation
        previous_count = len(presentation.assistant_message_content)
        presentation.assistant_message_content = self.parser.parse(text, final=True)
        if len(presentation.assistant_message_content) > previous_count:
            presentation.user_message_content_ready.clear()
        self.presenter.request_presentation()
        await self.presenter.wait_until_ready()

        self.stream_processor.record_usage(request_ts, result.usage)
        self.messages.persist()

        self.history.append(
            HistoryMessage(
                role=Role.ASSISTANT,
                content=[*result.thinking_blocks, TextPart(text=text)],
            ),
        )
        self.history.persist()

        if state.did_complete_task:
            logger.info("Task %s completed", state.task_id)
            return True

        did_use_tool = any(
            isinstance(block, ToolUseContent) for block in presentation.assistant_message_content
        )
        if not did_use_tool:
            if state.currently_summarizing:
                presentation.user_message_content.append(TextPart(text=SUMMARY_CONTINUATION))
            else:
                presentation.user_message_content.append(TextPart(text=no_tools_used()))
                state.limits.record_mistake()
        return list(presentation.user_message_content)

    async def attempt_api_request(self) -> AsyncIterator[StreamEvent]:
        """Open a stream and wait for its first chunk, retrying via the coordinator."""

        await self._wait_for_tool_readiness()
        state = self.state
        while True:
            if state.abort:
                raise TaskAbortedError(state.task_id)
            view = build_provider_view(
                self.history.get_history(), state.conversation_history_deleted_range,
            )
            iterator = aiter(self.backend.create_message(self.system_prompt, view))
            state.stream.is_waiting_for_first_chunk = True
            try:
                first = await anext(iterator)
            except StopAsyncIteration:
                return _empty_stream()
            except TaskAbortedError:
                raise
            except Exception as exc:
                state.stream.is_waiting_for_first_chunk = False
                decision = await self.retry.handle_first_chunk_error(exc)
                if decision == RetryDecision.STOP:
                    raise ApiRequestFailedError(str(exc) or type(exc).__name__) from exc
                continue
            finally:
                state.stream.is_waiting_for_first_chunk = False
            return _prepend(first, iterator)

    async def _wait_for_tool_readiness(self) -> None:
        readiness = self.tool_readiness
        if readiness is None or not readiness.is_connecting:
            return
        timeout = self.settings.stream.tool_ready_timeout_seconds

        async def _poll() -> None:
            while readiness.is_connecting:
                await asyncio.sleep(_TOOL_READINESS_POLL_SECONDS)

        try:
            await asyncio.wait_for(_poll(), timeout)
        except TimeoutError:
            logger.warning(
                "Tool servers still connecting after %.0fs for task %s; continuing",
                timeout,
                self.state.task_id,
            )

    async def should_compact_context(self, request_ts: int | None = None) -> bool:
        """Decide whether this request should ask for a context summary."""

        state = self.state
        context = self.settings.context
        if not context.use_auto_condense:
            return False
        model = self.backend.get_model()
        if not model.model_id.startswith(self.settings.model.next_gen_model_prefixes):
            return False

        history = self.history.get_history()
        if state.currently_summarizing:
            state.currently_summarizing = False
            new_range = range_after_summary(
                history,
                state.conversation_history_deleted_range,
                state.last_auto_compact_trigger_index,
            )
            if new_range != state.conversation_history_deleted_range:
                state.conversation_history_deleted_range = new_range
                self.history.set_deleted_range(new_range)
                self.history.persist()
            return False

        previous_tokens = self._previous_request_tokens(request_ts)
        if previous_tokens == 0:
            return False
        return should_compact(
            previous_total_tokens=previous_tokens,
            context_window=model.context_window,
            threshold=context.auto_condense_threshold,
            active_count=count_active_messages(
                len(history), state.conversation_history_deleted_range,
            ),
        )

    def _previous_request_tokens(self, request_ts: int | None) -> int:
        for record in reversed(self.messages.transcript):
            if record.type != "say" or record.kind != SayKind.API_REQ_STARTED.value:
                continue
            if request_ts is not None and record.ts >= request_ts:
                continue
            return ApiRequestInfo.from_json(record.text).total_tokens()
        return 0

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self.background_tasks.add(task)
        task.add_done_callback(self.background_tasks.discard)

    async def wait_for_background_tasks(self) -> None:
        """Await usage fetches and checkpoint commits still in flight."""

        if self.background_tasks:
            await asyncio.gather(*list(self.background_tasks))
        await self.checkpoints.wait_for_pending_commits()

    async def aclose(self) -> None:
        await self.presenter.aclose()
        await self.wait_for_background_tasks()


async def _prepend(
    first: StreamEvent,
    rest: AsyncIterator[StreamEvent],
) -> AsyncIterator[StreamEvent]:
    yield first
    async for event in rest:
        yield event


async def _empty_stream() -> AsyncIterator[StreamEvent]:
    return
    yield
