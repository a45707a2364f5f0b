"""Chunked stream processing for one model response."""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any

from taskpilot.config import StreamSettings
from taskpilot.orchestrator.backend.base import (
    ReasoningDetailsEvent,
    ReasoningEvent,
    RedactedThinkingEvent,
    StreamEvent,
    TextEvent,
    ThinkingEvent,
    UsageEvent,
)
from taskpilot.orchestrator.formatting import (
    INTERRUPTED_BY_API_ERROR,
    INTERRUPTED_BY_FEEDBACK,
    INTERRUPTED_BY_TOOL_USE,
    INTERRUPTED_BY_USER,
    REDACTED_THINKING_PLACEHOLDER,
    with_interruption,
)
from taskpilot.orchestrator.interfaces import EditReverter, HistoryStore, ModelBackend, Telemetry
from taskpilot.orchestrator.messages import MessageService
from taskpilot.orchestrator.models import (
    CancelReason,
    HistoryMessage,
    MessagePart,
    RedactedThinkingPart,
    Role,
    SayKind,
    TextPart,
    ThinkingPart,
)
from taskpilot.orchestrator.parser import AssistantMessageParser
from taskpilot.orchestrator.presenter import ContentPresenter
from taskpilot.orchestrator.pricing import resolve_cost
from taskpilot.orchestrator.state import TaskState
from taskpilot.orchestrator.usage import TokenUsage

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StreamResult:
    """Everything accumulated from one response stream."""

    usage: TokenUsage = field(default_factory=TokenUsage)
    assistant_message: str = ""
    reasoning_message: str = ""
    thinking_blocks: list[MessagePart] = field(default_factory=list)
    reasoning_details: list[Any] = field(default_factory=list)
    did_receive_usage_chunk: bool = False


class _Throttle:
    """Allows one update per interval; remembers suppressed updates."""

    def __init__(self, interval_seconds: float, clock: Callable[[], float]) -> None:
        self._interval = interval_seconds
        self._clock = clock
        self._last: float | None = None
        self.pending = False

    def ready(self) -> bool:
        now = self._clock()
        if self._last is None or now - self._last >= self._interval:
            self._last = now
            self.pending = False
            return True
        self.pending = True
        return False


class StreamProcessor:
    """Consumes backend events, feeds the parser and the presenter."""

    def __init__(
        self,
        state: TaskState,
        *,
        messages: MessageService,
        history: HistoryStore,
        backend: ModelBackend,
        presenter: ContentPresenter,
        parser: AssistantMessageParser,
        settings: StreamSettings,
        edit_reverter: EditReverter | None = None,
        telemetry: Telemetry | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._state = state
        self._messages = messages
        self._history = history
        self._backend = backend
        self._presenter = presenter
        self._parser = parser
        self._settings = settings
        self._edit_reverter = edit_reverter
        self._telemetry = telemetry
        self._clock = clock
        self.current_result = StreamResult()
        self._reasoning_finalized = False
        self._thinking_signature: str | None = None
        self._thinking_text = ""
        self._reasoning_throttle = self._new_throttle()
        self._text_throttle = self._new_throttle()

    def _new_throttle(self) -> _Throttle:
        return _Throttle(self._settings.throttle_ms / 1000, self._clock)

    def reset_stream_state(self) -> None:
        """Reset per-request streaming and presentation state."""

        self._state.reset_for_request()
        self._parser.reset()
        self.current_result = StreamResult()
        self._reasoning_finalized = False
        self._thinking_signature = None
        self._thinking_text = ""
        self._reasoning_throttle = self._new_throttle()
        self._text_throttle = self._new_throttle()

    def mark_stream_complete(self) -> None:
        """Flip every partial block final and mark the stream fully read."""

        for block in self._state.presentation.assistant_message_content:
            block.partial = False
        self._state.stream.did_complete_reading_stream = True

    async def process_stream(
        self,
        stream: AsyncIterator[StreamEvent],
        *,
        request_ts: int | None = None,
    ) -> StreamResult:
        """Consume the stream until it ends or a preemption condition stops it."""

        result = self.current_result
        self._state.stream.is_streaming = True
        try:
            async for event in stream:
                await self._handle_event(event, result)
                if await self._check_preemption(result, request_ts):
                    break
        except Exception:
            if not self._state.abandoned:
                raise
            logger.debug(
                "Ignoring stream error for abandoned task %s", self._state.task_id, exc_info=True,
            )
        finally:
            self._state.stream.is_streaming = False
            await self._flush(result)
        self._build_thinking_blocks(result)
        return result

    async def _handle_event(self, event: StreamEvent, result: StreamResult) -> None:
        if isinstance(event, UsageEvent):
            result.did_receive_usage_chunk = True
            result.usage.add(
                input_tokens=event.input_tokens,
                output_tokens=event.output_tokens,
                cache_write_tokens=event.cache_write_tokens,
                cache_read_tokens=event.cache_read_tokens,
                total_cost=event.total_cost,
            )
        elif isinstance(event, ReasoningEvent):
            result.reasoning_message += event.reasoning
            await self._notify_reasoning(result.reasoning_message)
        elif isinstance(event, ThinkingEvent):
            self._thinking_text += event.thinking
            if event.signature:
                self._thinking_signature = event.signature
            result.reasoning_message += event.thinking
            await self._notify_reasoning(result.reasoning_message)
        elif isinstance(event, RedactedThinkingEvent):
            result.thinking_blocks.append(RedactedThinkingPart(data=event.data))
            if not result.reasoning_message:
                await self._notify_reasoning(REDACTED_THINKING_PLACEHOLDER)
        elif isinstance(event, ReasoningDetailsEvent):
            result.reasoning_details.append(event.details)
        elif isinstance(event, TextEvent):
            await self._finalize_reasoning(result)
            result.assistant_message += event.text
            if self._text_throttle.ready():
                self._present_text(result.assistant_message)

    async def _notify_reasoning(self, text: str) -> None:
        if self._state.abort or self._reasoning_finalized or not self._reasoning_throttle.ready():
            return
        await self._messages.say(SayKind.REASONING, text, partial=True)

    async def _finalize_reasoning(self, result: StreamResult) -> None:
        if self._state.abort or self._reasoning_finalized or not result.reasoning_message:
            return
        self._reasoning_finalized = True
        self._reasoning_throttle.pending = False
        await self._messages.say(SayKind.REASONING, result.reasoning_message, partial=False)

    def _present_text(self, text: str) -> None:
        if self._state.abort:
            return
        presentation = self._state.presentation
        previous_count = len(presentation.assistant_message_content)
        presentation.assistant_message_content = self._parser.parse(text)
        if len(presentation.assistant_message_content) > previous_count:
            presentation.user_message_content_ready.clear()
        self._presenter.request_presentation()

    async def _check_preemption(self, result: StreamResult, request_ts: int | None) -> bool:
        stream = self._state.stream
        if self._state.abort:
            if not self._state.abandoned:
                await self.abort_stream(CancelReason.USER_CANCELLED, request_ts=request_ts)
            return True
        if stream.did_reject_tool:
            result.assistant_message = with_interruption(
                result.assistant_message, INTERRUPTED_BY_FEEDBACK,
            )
            return True
        if stream.did_already_use_tool:
            result.assistant_message = with_interruption(
                result.assistant_message, INTERRUPTED_BY_TOOL_USE,
            )
            return True
        return False

    async def _flush(self, result: StreamResult) -> None:
        if self._state.abort:
            return
        try:
            if result.reasoning_message and not self._reasoning_finalized:
                await self._finalize_reasoning(result)
            if self._text_throttle.pending and result.assistant_message:
                self._text_throttle.pending = False
                self._present_text(result.assistant_message)
        except Exception:
            logger.warning(
                "Failed to flush stream updates for task %s", self._state.task_id, exc_info=True,
            )

    def _build_thinking_blocks(self, result: StreamResult) -> None:
        if self._thinking_text:
            result.thinking_blocks.insert(
                0, ThinkingPart(thinking=self._thinking_text, signature=self._thinking_signature),
            )

    async def abort_stream(
        self,
        cancel_reason: CancelReason,
        *,
        request_ts: int | None = None,
        streaming_failed_message: str | None = None,
    ) -> None:
        """Gracefully wind down a stream that stopped early.

        Reverts a pending edit, closes the last partial transcript record,
        records the interrupted assistant text in history and the usage on
        the request record.
        """

        result = self.current_result
        if self._edit_reverter is not None and self._edit_reverter.is_editing:
            await self._edit_reverter.revert_changes()

        self._messages.finalize_last_partial()
        self.record_usage(
            request_ts,
            result.usage,
            cancel_reason=cancel_reason,
            streaming_failed_message=streaming_failed_message,
        )

        marker = (
            INTERRUPTED_BY_USER
            if cancel_reason == CancelReason.USER_CANCELLED
            else INTERRUPTED_BY_API_ERROR
        )
        self._history.append(
            HistoryMessage(
                role=Role.ASSISTANT,
                content=[TextPart(text=with_interruption(result.assistant_message, marker))],
            ),
        )
        self._history.persist()
        self._messages.persist()
        self._capture(
            "task.stream_aborted",
            cancel_reason=cancel_reason.value,
            tokens_in=result.usage.input_tokens,
            tokens_out=result.usage.output_tokens,
        )
        self._state.stream.did_finish_aborting_stream = True
        logger.info("Stream aborted for task %s: %s", self._state.task_id, cancel_reason.value)

    def record_usage(
        self,
        request_ts: int | None,
        usage: TokenUsage,
        *,
        cancel_reason: CancelReason | None = None,
        streaming_failed_message: str | None = None,
    ) -> None:
        """Write token counts and cost onto the request record."""

        model = self._backend.get_model()
        info = self._messages.api_request_info(request_ts)
        info.tokens_in = usage.input_tokens
        info.tokens_out = usage.output_tokens
        info.cache_writes = usage.cache_write_tokens
        info.cache_reads = usage.cache_read_tokens
        info.cost = resolve_cost(provider=model.provider_id, model=model.model_id, usage=usage)
        if cancel_reason is not None:
            info.cancel_reason = cancel_reason
        if streaming_failed_message is not None:
            info.streaming_failed_message = streaming_failed_message
        self._messages.update_api_request(info, request_ts)

    async def fetch_and_merge_usage(self, request_ts: int | None, usage: TokenUsage) -> None:
        """Fetch usage the provider did not report inline; runs in the background."""

        get_stream_usage = getattr(self._backend, "get_stream_usage", None)
        if get_stream_usage is None:
            return
        try:
            fetched = await get_stream_usage()
            if fetched is None:
                return
            usage.merge(fetched)
            self.record_usage(request_ts, usage)
            self._messages.persist()
        except Exception:
            logger.warning(
                "Background usage fetch failed for task %s", self._state.task_id, exc_info=True,
            )

    def _capture(self, event: str, **properties: Any) -> None:
        if self._telemetry is None:
            return
        try:
            self._telemetry.capture(event, task_id=self._state.task_id, **properties)
        except Exception:
            logger.debug("Telemetry capture failed for %s", event, exc_info=True)
