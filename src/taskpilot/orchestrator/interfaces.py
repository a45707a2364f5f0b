"""Protocols for the collaborators the task loop depends on."""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from typing import Any, Protocol

from taskpilot.orchestrator.backend.base import StreamEvent
from taskpilot.orchestrator.models import (
    HistoryMessage,
    LoadedContext,
    MessagePart,
    ModelInfo,
    ToolUseContent,
)
from taskpilot.orchestrator.usage import TokenUsage


class ModelBackend(Protocol):
    """Streaming model provider."""

    def create_message(
        self,
        system_prompt: str,
        messages: Sequence[HistoryMessage],
    ) -> AsyncIterator[StreamEvent]:
        """Open a response stream for the given prompt and active history."""

    def get_model(self) -> ModelInfo:
        """Return static facts about the backing model."""

    async def get_stream_usage(self) -> TokenUsage | None:
        """Return usage for the last stream when it was not reported inline."""

    def get_request_id(self) -> str | None:
        """Return the provider correlation id of the last request."""


class ToolExecutor(Protocol):
    """Executes one parsed tool block and records its result."""

    async def execute_tool(self, block: ToolUseContent) -> None:
        """Run the tool; results go to `user_message_content`."""


class HistoryStore(Protocol):
    """Append-only conversation history with replace-last."""

    def append(self, message: HistoryMessage) -> None: ...

    def replace_last(self, message: HistoryMessage) -> None: ...

    def get_history(self) -> list[HistoryMessage]: ...

    def set_deleted_range(self, deleted_range: tuple[int, int] | None) -> None: ...

    def persist(self) -> None: ...


class CheckpointMechanism(Protocol):
    """Workspace snapshot mechanism."""

    async def initialize(self) -> None: ...

    async def commit(self) -> str | None: ...


class ContextBuilder(Protocol):
    """Enriches user content with environment details."""

    async def load_context(
        self,
        user_content: list[MessagePart],
        include_file_details: bool,
    ) -> LoadedContext: ...


class EditReverter(Protocol):
    """Reverts an edit that was in progress when the stream stopped."""

    @property
    def is_editing(self) -> bool: ...

    async def revert_changes(self) -> None: ...


class Notifier(Protocol):
    """Host-level notifications."""

    def notify(self, subtitle: str, message: str) -> None: ...


class Telemetry(Protocol):
    """Fire-and-forget event capture."""

    def capture(self, event: str, **properties: Any) -> None: ...


class ToolReadiness(Protocol):
    """Reports whether tool servers are still connecting."""

    @property
    def is_connecting(self) -> bool: ...
