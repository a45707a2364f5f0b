"""Terminal operator channel: prints transcript records and reads answers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import rich_click as click

from taskpilot.orchestrator.models import (
    Answered,
    ApiRequestInfo,
    AskKind,
    AskResponse,
    AskResult,
    SayKind,
    TranscriptMessage,
)

logger = logging.getLogger(__name__)

_YES = {"y", "yes"}
_NO = {"n", "no"}
_TEXT_ONLY_ASKS = {AskKind.FOLLOWUP.value}
_DECLINED_UNATTENDED_ASKS = {AskKind.API_REQ_FAILED.value}


def render_transcript_line(message: TranscriptMessage) -> str:
    """One-line operator view of a transcript record."""

    if message.type == "say" and message.kind == SayKind.API_REQ_STARTED.value:
        info = ApiRequestInfo.from_json(message.text)
        parts = [f"tokens_in={info.tokens_in or 0}", f"tokens_out={info.tokens_out or 0}"]
        if info.cost is not None:
            parts.append(f"cost=${info.cost:.4f}")
        if info.cancel_reason is not None:
            parts.append(f"cancel={info.cancel_reason.value}")
        if info.streaming_failed_message:
            parts.append(f"failed={info.streaming_failed_message}")
        return f"[api request] {' '.join(parts)}"
    if message.checkpoint_hash:
        return f"[{message.type}:{message.kind}] {message.checkpoint_hash}"
    return f"[{message.type}:{message.kind}] {message.text or ''}".rstrip()


class ConsoleOperatorChannel:
    """`OperatorChannel` over click echo/prompt.

    Partial records are not printed; each finalized record is printed once.
    With `assume_yes`, approvals are granted, failed requests are not retried
    and follow-up questions get an empty answer without prompting.
    """

    def __init__(
        self,
        *,
        assume_yes: bool = False,
        echo: Callable[[str], Any] = click.echo,
        prompt: Callable[..., Any] = click.prompt,
    ) -> None:
        self._assume_yes = assume_yes
        self._echo = echo
        self._prompt = prompt
        self._printed: set[int] = set()

    def publish(self, message: TranscriptMessage) -> None:
        if message.partial or message.ts in self._printed:
            return
        if message.kind == SayKind.API_REQ_STARTED.value:
            info = ApiRequestInfo.from_json(message.text)
            if info.tokens_in is None and info.cancel_reason is None:
                # printed once the request has settled
                return
        self._printed.add(message.ts)
        self._echo(render_transcript_line(message))

    async def wait_for_answer(self, message: TranscriptMessage) -> AskResult:
        if self._assume_yes:
            if message.kind in _TEXT_ONLY_ASKS:
                return Answered(response=AskResponse.MESSAGE_RESPONSE, text="")
            if message.kind in _DECLINED_UNATTENDED_ASKS:
                return Answered(response=AskResponse.NO_BUTTON)
            return Answered(response=AskResponse.YES_BUTTON)

        if message.kind in _TEXT_ONLY_ASKS:
            text = await asyncio.to_thread(self._prompt, "Answer")
            return Answered(response=AskResponse.MESSAGE_RESPONSE, text=str(text))

        raw = await asyncio.to_thread(
            self._prompt,
            "Approve? [y]es / [n]o / or type feedback",
            default="y",
            show_default=False,
        )
        return parse_answer(str(raw))


def parse_answer(raw: str) -> Answered:
    normalized = raw.strip()
    if normalized.lower() in _YES:
        return Answered(response=AskResponse.YES_BUTTON)
    if normalized.lower() in _NO:
        return Answered(response=AskResponse.NO_BUTTON)
    return Answered(response=AskResponse.MESSAGE_RESPONSE, text=normalized)


class ConsoleNotifier:
    """`Notifier` printing to stderr."""

    def notify(self, subtitle: str, message: str) -> None:
        logger.info("Notification %s: %s", subtitle, message)
        click.echo(f"[notice] {subtitle}: {message}", err=True)


class LoggingTelemetry:
    """`Telemetry` sink that records events in the debug log."""

    def capture(self, event: str, **properties: Any) -> None:
        logger.debug("telemetry %s %s", event, properties)
