"""Operator message service: blocking asks and non-blocking says."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from typing import Protocol

from taskpilot.orchestrator.errors import AskSupersededError, TaskAbortedError
from taskpilot.orchestrator.models import (
    Aborted,
    Answered,
    ApiRequestInfo,
    AskKind,
    AskResult,
    SayKind,
    Superseded,
    TranscriptMessage,
)
from taskpilot.orchestrator.state import TaskState

logger = logging.getLogger(__name__)


class OperatorChannel(Protocol):
    """UI side of the transcript."""

    def publish(self, message: TranscriptMessage) -> None:
        """Render a new or updated transcript record."""

    async def wait_for_answer(self, message: TranscriptMessage) -> AskResult:
        """Block until the operator answers the prompt record."""


class TranscriptSink(Protocol):
    """Persists the operator transcript."""

    def save_transcript(self, messages: Sequence[TranscriptMessage]) -> None: ...


class MessageService:
    """Owns the transcript and converts ask sentinels at the orchestration boundary."""

    def __init__(
        self,
        state: TaskState,
        channel: OperatorChannel,
        *,
        sink: TranscriptSink | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._state = state
        self._channel = channel
        self._sink = sink
        self._clock = clock
        self._last_ts = 0
        self._last_ask_ts: int | None = None
        self.transcript: list[TranscriptMessage] = []

    def load(self, messages: Sequence[TranscriptMessage]) -> None:
        self.transcript = list(messages)
        if self.transcript:
            self._last_ts = max(message.ts for message in self.transcript)

    def _next_ts(self) -> int:
        now = int(self._clock() * 1000)
        self._last_ts = max(now, self._last_ts + 1)
        return self._last_ts

    async def ask(self, kind: AskKind, text: str | None = None) -> Answered:
        """Append a blocking prompt and wait for the operator's answer.

        Raises:
            TaskAbortedError: the task was aborted before or while waiting.
            AskSupersededError: a newer prompt replaced this one.
        """

        if self._state.abort:
            raise TaskAbortedError(self._state.task_id, "ask rejected: task aborted")

        message = TranscriptMessage(ts=self._next_ts(), type="ask", kind=kind.value, text=text)
        self._last_ask_ts = message.ts
        self._append(message)
        result = await self._channel.wait_for_answer(message)

        if isinstance(result, Aborted) or self._state.abort:
            raise TaskAbortedError(self._state.task_id, "ask interrupted: task aborted")
        if isinstance(result, Superseded) or self._last_ask_ts != message.ts:
            raise AskSupersededError(f"Ask {kind.value} at {message.ts} was superseded")
        logger.debug("Ask %s answered with %s", kind.value, result.response.value)
        return result

    async def say(
        self,
        kind: SayKind,
        text: str | None = None,
        *,
        images: Sequence[str] = (),
        files: Sequence[str] = (),
        partial: bool | None = None,
    ) -> int:
        """Append or update a notification; returns the record timestamp.

        `partial=True` streams into the last partial record of the same kind,
        `partial=False` finalizes it, `None` always appends a complete record.
        """

        if self._state.abort:
            raise TaskAbortedError(self._state.task_id, "say rejected: task aborted")

        last = self.transcript[-1] if self.transcript else None
        continues_last = (
            partial is not None
            and last is not None
            and last.partial
            and last.type == "say"
            and last.kind == kind.value
        )
        if continues_last and last is not None:
            last.text = text
            last.images = tuple(images)
            last.files = tuple(files)
            last.partial = bool(partial)
            self._channel.publish(last)
            if not partial:
                self.persist()
            return last.ts

        message = TranscriptMessage(
            ts=self._next_ts(),
            type="say",
            kind=kind.value,
            text=text,
            partial=bool(partial),
            images=tuple(images),
            files=tuple(files),
        )
        self._append(message)
        return message.ts

    def _append(self, message: TranscriptMessage) -> None:
        self.transcript.append(message)
        self._channel.publish(message)
        if not message.partial:
            self.persist()

    def find(self, ts: int) -> TranscriptMessage | None:
        for message in reversed(self.transcript):
            if message.ts == ts:
                return message
        return None

    def find_last(self, kind: SayKind) -> TranscriptMessage | None:
        for message in reversed(self.transcript):
            if message.type == "say" and message.kind == kind.value:
                return message
        return None

    def last_api_request(self) -> TranscriptMessage | None:
        return self.find_last(SayKind.API_REQ_STARTED)

    def api_request_info(self, ts: int | None = None) -> ApiRequestInfo:
        record = self.find(ts) if ts is not None else self.last_api_request()
        return ApiRequestInfo.from_json(record.text if record else None)

    def update_api_request(self, info: ApiRequestInfo, ts: int | None = None) -> None:
        """Rewrite an `api_req_started` record (the last one by default)."""

        record = self.find(ts) if ts is not None else self.last_api_request()
        if record is None:
            logger.warning("No api_req_started record to update for task %s", self._state.task_id)
            return
        record.text = info.to_json()
        self._channel.publish(record)

    def attach_checkpoint_hash(self, ts: int, checkpoint_hash: str) -> None:
        record = self.find(ts)
        if record is None:
            logger.warning("Checkpoint record %s not found", ts)
            return
        record.checkpoint_hash = checkpoint_hash
        self._channel.publish(record)
        self.persist()

    def finalize_last_partial(self) -> None:
        last = self.transcript[-1] if self.transcript else None
        if last is not None and last.partial:
            last.partial = False
            self._channel.publish(last)

    def persist(self) -> None:
        if self._sink is not None:
            self._sink.save_transcript(self.transcript)
