"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import replace

import pytest

from taskpilot.config import CheckpointSettings, Settings, StreamSettings
from taskpilot.orchestrator.backend.scripted import ScriptedBackend, ScriptedTurn
from taskpilot.orchestrator.history import InMemoryHistoryStore
from taskpilot.orchestrator.messages import MessageService
from taskpilot.orchestrator.models import (
    Answered,
    AskResponse,
    AskResult,
    LoadedContext,
    MessagePart,
    TextPart,
    ToolUseContent,
    TranscriptMessage,
)
from taskpilot.orchestrator.state import TaskState
from taskpilot.orchestrator.task import TaskOrchestrator


class FakeOperatorChannel:
    """Answers prompts from a queue; unanswered prompts get "no"."""

    def __init__(self, answers: Sequence[AskResult] = ()) -> None:
        self.answers: list[AskResult] = list(answers)
        self.published: list[TranscriptMessage] = []
        self.asked: list[str] = []

    def publish(self, message: TranscriptMessage) -> None:
        self.published.append(replace(message))

    async def wait_for_answer(self, message: TranscriptMessage) -> AskResult:
        self.asked.append(message.kind)
        await asyncio.sleep(0)
        if self.answers:
            return self.answers.pop(0)
        return Answered(response=AskResponse.NO_BUTTON)


class FakeToolExecutor:
    """Records executed tool blocks and writes a result into user content."""

    def __init__(self, state: TaskState, *, reject: Sequence[str] = ()) -> None:
        self.state = state
        self.reject = set(reject)
        self.executed: list[ToolUseContent] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def execute_tool(self, block: ToolUseContent) -> None:
        if block.partial:
            return
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            self.executed.append(block)
            content = self.state.presentation.user_message_content
            if block.name in self.reject:
                self.state.stream.did_reject_tool = True
                content.append(TextPart(text="The user denied this operation."))
                return
            if block.name == "attempt_completion":
                self.state.did_complete_task = True
            content.append(TextPart(text=f"[{block.name}] Result:"))
            content.append(TextPart(text="ok"))
        finally:
            self.in_flight -= 1


class FakeContextBuilder:
    def __init__(self, *, error_flag: bool = False) -> None:
        self.error_flag = error_flag
        self.calls: list[bool] = []

    async def load_context(
        self,
        user_content: list[MessagePart],
        include_file_details: bool,
    ) -> LoadedContext:
        self.calls.append(include_file_details)
        return LoadedContext(
            content=list(user_content),
            environment_details="<environment_details>\n</environment_details>",
            error_flag=self.error_flag,
        )


class RecordingTelemetry:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    def capture(self, event: str, **properties) -> None:
        self.events.append((event, properties))


class RecordingNotifier:
    def __init__(self) -> None:
        self.notifications: list[tuple[str, str]] = []

    def notify(self, subtitle: str, message: str) -> None:
        self.notifications.append((subtitle, message))


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def state() -> TaskState:
    return TaskState(task_id="task-1")


@pytest.fixture()
def channel() -> FakeOperatorChannel:
    return FakeOperatorChannel()


@pytest.fixture()
def messages(state: TaskState, channel: FakeOperatorChannel) -> MessageService:
    return MessageService(state, channel)


@pytest.fixture()
def history() -> InMemoryHistoryStore:
    return InMemoryHistoryStore()


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        stream=StreamSettings(throttle_ms=0, abort_wait_timeout_seconds=0.5),
        checkpoints=CheckpointSettings(enabled=False),
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def tool_executor(state: TaskState) -> FakeToolExecutor:
    return FakeToolExecutor(state)


@pytest.fixture()
def context_builder() -> FakeContextBuilder:
    return FakeContextBuilder()


@pytest.fixture()
def telemetry() -> RecordingTelemetry:
    return RecordingTelemetry()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def make_orchestrator(state, messages, history, settings, tool_executor, context_builder):
    """Build a `TaskOrchestrator` over a scripted backend and the fakes above."""

    def _build(
        turns: Sequence[ScriptedTurn | dict] = (),
        *,
        settings_override: Settings | None = None,
        **kwargs,
    ) -> TaskOrchestrator:
        if "backend" not in kwargs:
            kwargs["backend"] = ScriptedBackend(
                [
                    turn if isinstance(turn, ScriptedTurn) else ScriptedTurn.from_dict(turn)
                    for turn in turns
                ],
            )
        kwargs.setdefault("tool_executor", tool_executor)
        kwargs.setdefault("context_builder", context_builder)
        return TaskOrchestrator(
            state,
            settings=settings_override or settings,
            history=history,
            messages=messages,
            **kwargs,
        )

    return _build


@pytest.fixture()
def answers():
    """Shorthand constructors for operator answers."""

    class _Answers:
        yes = Answered(response=AskResponse.YES_BUTTON)
        no = Answered(response=AskResponse.NO_BUTTON)

        @staticmethod
        def message(text: str) -> Answered:
            return Answered(response=AskResponse.MESSAGE_RESPONSE, text=text)

    return _Answers
