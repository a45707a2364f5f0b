"""Deterministic backend replaying scripted turns."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from taskpilot.orchestrator.backend.base import (
    ReasoningEvent,
    StreamEvent,
    TextEvent,
    UsageEvent,
)
from taskpilot.orchestrator.errors import ContextWindowExceededError, ProviderStreamError
from taskpilot.orchestrator.models import HistoryMessage, ModelInfo
from taskpilot.orchestrator.usage import TokenUsage


@dataclass(slots=True)
class ScriptedFailure:
    """Failure raised instead of (or in the middle of) a scripted turn."""

    message: str
    status_code: int | None = None
    context_window: bool = False

    def to_exception(self, request_id: str) -> Exception:
        if self.context_window:
            return ContextWindowExceededError(self.message)
        return ProviderStreamError(
            self.message, status_code=self.status_code, request_id=request_id,
        )


@dataclass(slots=True)
class ScriptedTurn:
    """One scripted provider response."""

    events: list[StreamEvent] = field(default_factory=list)
    error: ScriptedFailure | None = None
    fail_after_events: ScriptedFailure | None = None
    deferred_usage: TokenUsage | None = None
    delay_seconds: float = 0.0

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ScriptedTurn:
        """Build a turn from its JSON form.

        Keys: `reasoning`, `text` or `chunks`, `usage`, `deferred_usage`,
        `error`, `fail_after` and `delay_seconds`.
        """

        events: list[StreamEvent] = []
        if payload.get("reasoning"):
            events.append(ReasoningEvent(reasoning=str(payload["reasoning"])))
        chunks = payload.get("chunks")
        if chunks is None and payload.get("text") is not None:
            chunks = [payload["text"]]
        events.extend(TextEvent(text=str(chunk)) for chunk in chunks or [])
        if payload.get("usage"):
            events.append(UsageEvent(**payload["usage"]))
        deferred = payload.get("deferred_usage")
        return cls(
            events=events,
            error=_failure(payload.get("error")),
            fail_after_events=_failure(payload.get("fail_after")),
            deferred_usage=TokenUsage(**deferred) if deferred else None,
            delay_seconds=float(payload.get("delay_seconds", 0.0)),
        )


def _failure(payload: dict[str, Any] | None) -> ScriptedFailure | None:
    if not payload:
        return None
    return ScriptedFailure(
        message=str(payload.get("message", "scripted failure")),
        status_code=payload.get("status_code"),
        context_window=bool(payload.get("context_window", False)),
    )


class ScriptedBackend:
    """Replays turns in order and records the history each request saw."""

    def __init__(
        self,
        turns: Sequence[ScriptedTurn],
        *,
        model: ModelInfo | None = None,
    ) -> None:
        self._turns = list(turns)
        self._model = model or ModelInfo(model_id="scripted", provider_id="scripted")
        self._request_count = 0
        self._pending_usage: TokenUsage | None = None
        self.requests: list[list[HistoryMessage]] = []
        self.system_prompts: list[str] = []

    @classmethod
    def from_file(cls, path: Path, *, model: ModelInfo | None = None) -> ScriptedBackend:
        payload = json.loads(path.read_text(encoding="utf-8"))
        turns = payload["turns"] if isinstance(payload, dict) else payload
        return cls([ScriptedTurn.from_dict(item) for item in turns], model=model)

    @property
    def remaining_turns(self) -> int:
        return len(self._turns)

    def create_message(
        self,
        system_prompt: str,
        messages: Sequence[HistoryMessage],
    ) -> AsyncIterator[StreamEvent]:
        self._request_count += 1
        self.system_prompts.append(system_prompt)
        self.requests.append(list(messages))
        turn = self._turns.pop(0) if self._turns else None
        return self._stream(turn)

    async def _stream(self, turn: ScriptedTurn | None) -> AsyncIterator[StreamEvent]:
        request_id = self.get_request_id() or ""
        if turn is None:
            raise ProviderStreamError(
                "Scripted backend has no more turns", request_id=request_id,
            )
        if turn.error is not None:
            raise turn.error.to_exception(request_id)
        self._pending_usage = turn.deferred_usage
        for event in turn.events:
            if turn.delay_seconds:
                await asyncio.sleep(turn.delay_seconds)
            else:
                await asyncio.sleep(0)
            yield event
        if turn.fail_after_events is not None:
            raise turn.fail_after_events.to_exception(request_id)

    def get_model(self) -> ModelInfo:
        return self._model

    async def get_stream_usage(self) -> TokenUsage | None:
        usage, self._pending_usage = self._pending_usage, None
        return usage

    def get_request_id(self) -> str | None:
        if self._request_count == 0:
            return None
        return f"scripted-{self._request_count}"
