"""First-chunk failure handling: automatic truncation and operator retry."""

from __future__ import annotations

import logging
from enum import Enum

from taskpilot.orchestrator.failure_classifier import classify_stream_error
from taskpilot.orchestrator.formatting import CONTEXT_WINDOW_RETRY_MESSAGE
from taskpilot.orchestrator.interfaces import HistoryStore, Telemetry
from taskpilot.orchestrator.messages import MessageService
from taskpilot.orchestrator.models import AskKind, AskResponse, SayKind
from taskpilot.orchestrator.state import TaskState
from taskpilot.orchestrator.truncation import (
    MIN_ACTIVE_MESSAGES,
    count_active_messages,
    get_next_truncation_range,
)

logger = logging.getLogger(__name__)


class RetryDecision(str, Enum):
    """Outcome of a first-chunk failure."""

    RETRY = "retry"
    STOP = "stop"


class RetryCoordinator:
    """Decides between automatic truncation, operator retry and giving up."""

    def __init__(
        self,
        state: TaskState,
        *,
        messages: MessageService,
        history: HistoryStore,
        provider_id: str = "provider",
        telemetry: Telemetry | None = None,
    ) -> None:
        self._state = state
        self._messages = messages
        self._history = history
        self._provider_id = provider_id
        self._telemetry = telemetry

    async def handle_first_chunk_error(self, error: BaseException) -> RetryDecision:
        stream = self._state.stream
        classification = classify_stream_error(error, provider=self._provider_id)
        logger.warning(
            "First chunk failed for task %s: %s (%s)",
            self._state.task_id,
            error,
            classification.reason_code,
        )
        if self._telemetry is not None:
            self._telemetry.capture(
                "task.first_chunk_failed",
                task_id=self._state.task_id,
                **classification.to_event_details(provider=self._provider_id, model=""),
            )

        if (
            classification.is_context_window_exceeded
            and not stream.did_automatically_retry_failed_api_request
        ):
            self._truncate()
            stream.did_automatically_retry_failed_api_request = True
            return RetryDecision.RETRY

        error_text = str(error) or type(error).__name__
        if classification.is_context_window_exceeded:
            active = count_active_messages(
                len(self._history.get_history()),
                self._state.conversation_history_deleted_range,
            )
            if active > MIN_ACTIVE_MESSAGES:
                error_text = CONTEXT_WINDOW_RETRY_MESSAGE
                stream.did_automatically_retry_failed_api_request = False

        info = self._messages.api_request_info()
        info.streaming_failed_message = error_text
        self._messages.update_api_request(info)

        answer = await self._messages.ask(AskKind.API_REQ_FAILED, error_text)
        if answer.response != AskResponse.YES_BUTTON:
            logger.info("Operator declined retry for task %s", self._state.task_id)
            return RetryDecision.STOP

        info = self._messages.api_request_info()
        info.streaming_failed_message = None
        self._messages.update_api_request(info)
        await self._messages.say(SayKind.API_REQ_RETRIED)
        stream.did_automatically_retry_failed_api_request = False
        return RetryDecision.RETRY

    def _truncate(self) -> None:
        history = self._history.get_history()
        previous = self._state.conversation_history_deleted_range
        new_range = get_next_truncation_range(history, previous)
        self._state.conversation_history_deleted_range = new_range
        self._history.set_deleted_range(new_range)
        self._history.persist()
        logger.info(
            "Truncated conversation for task %s: %s -> %s (%d active messages)",
            self._state.task_id,
            previous,
            new_range,
            count_active_messages(len(history), new_range),
        )
