"""Mutable per-task state shared by the orchestration components.

The record is split by owner: streaming flags, presentation bookkeeping and
limit counters each live in their own sub-state. Components receive the
single `TaskState` handle and only write the fields they own.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from taskpilot.orchestrator.models import ContentBlock, MessagePart


@dataclass(slots=True)
class StreamState:
    """Flags describing the response stream of the current request."""

    is_streaming: bool = False
    is_waiting_for_first_chunk: bool = False
    did_complete_reading_stream: bool = False
    did_reject_tool: bool = False
    did_already_use_tool: bool = False
    did_automatically_retry_failed_api_request: bool = False
    did_finish_aborting_stream: bool = False

    def reset(self) -> None:
        self.is_streaming = False
        self.is_waiting_for_first_chunk = False
        self.did_complete_reading_stream = False
        self.did_reject_tool = False
        self.did_already_use_tool = False
        self.did_automatically_retry_failed_api_request = False


@dataclass(slots=True)
class PresentationState:
    """Parsed assistant blocks and the cursor of the sequential presenter."""

    assistant_message_content: list[ContentBlock] = field(default_factory=list)
    current_streaming_content_index: int = 0
    user_message_content: list[MessagePart] = field(default_factory=list)
    user_message_content_ready: asyncio.Event = field(default_factory=asyncio.Event)
    present_locked: bool = False
    present_has_pending_updates: bool = False

    def reset(self) -> None:
        self.assistant_message_content = []
        self.current_streaming_content_index = 0
        self.user_message_content = []
        self.user_message_content_ready.clear()
        self.present_locked = False
        self.present_has_pending_updates = False


@dataclass(slots=True)
class LimitState:
    """Counters guarded by the limit manager."""

    consecutive_mistake_count: int = 0
    consecutive_auto_approved_requests_count: int = 0

    def record_mistake(self) -> None:
        self.consecutive_mistake_count += 1

    def reset_mistakes(self) -> None:
        self.consecutive_mistake_count = 0

    def record_auto_approval(self) -> None:
        self.consecutive_auto_approved_requests_count += 1

    def reset_auto_approvals(self) -> None:
        self.consecutive_auto_approved_requests_count = 0


@dataclass(slots=True)
class TaskState:
    """Single handle to all mutable state of one task."""

    task_id: str
    stream: StreamState = field(default_factory=StreamState)
    presentation: PresentationState = field(default_factory=PresentationState)
    limits: LimitState = field(default_factory=LimitState)
    abort: bool = False
    abandoned: bool = False
    api_request_count: int = 0
    conversation_history_deleted_range: tuple[int, int] | None = None
    currently_summarizing: bool = False
    last_auto_compact_trigger_index: int | None = None
    checkpoint_error_message: str | None = None
    request_cycle_error: str | None = None
    did_complete_task: bool = False

    def mark_aborted(self) -> None:
        """Set the abort flag; it is never cleared for the lifetime of the task."""

        self.abort = True

    def reset_for_request(self) -> None:
        """Reset streaming and presentation fields before a new request."""

        self.stream.reset()
        self.presentation.reset()
