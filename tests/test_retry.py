from __future__ import annotations

import allure
import pytest

from taskpilot.orchestrator.errors import ContextWindowExceededError, ProviderStreamError
from taskpilot.orchestrator.formatting import CONTEXT_WINDOW_RETRY_MESSAGE
from taskpilot.orchestrator.history import InMemoryHistoryStore
from taskpilot.orchestrator.models import (
    ApiRequestInfo,
    HistoryMessage,
    Role,
    SayKind,
    TextPart,
)
from taskpilot.orchestrator.retry import RetryCoordinator, RetryDecision
from taskpilot.orchestrator.truncation import count_active_messages

pytestmark = [
    allure.epic("Task Loop"),
    allure.feature("Retry & Truncation"),
]


def _history(size: int) -> InMemoryHistoryStore:
    return InMemoryHistoryStore(
        HistoryMessage(
            role=Role.USER if index % 2 == 0 else Role.ASSISTANT,
            content=[TextPart(text=str(index))],
        )
        for index in range(size)
    )


async def _coordinator(state, messages, history, telemetry=None) -> RetryCoordinator:
    await messages.say(SayKind.API_REQ_STARTED, ApiRequestInfo(request="req").to_json())
    return RetryCoordinator(
        state,
        messages=messages,
        history=history,
        provider_id="openai",
        telemetry=telemetry,
    )


@pytest.mark.asyncio
async def test_first_context_window_error_truncates_automatically(
    state, messages, channel, telemetry,
) -> None:
    history = _history(20)
    coordinator = await _coordinator(state, messages, history, telemetry)

    decision = await coordinator.handle_first_chunk_error(ContextWindowExceededError("too long"))

    assert decision == RetryDecision.RETRY
    assert channel.asked == []
    assert state.stream.did_automatically_retry_failed_api_request
    deleted = state.conversation_history_deleted_range
    assert deleted is not None
    assert history.deleted_range == deleted
    assert history.persist_count == 1
    assert 5 <= count_active_messages(20, deleted) <= 6
    assert telemetry.events[0][0] == "task.first_chunk_failed"


@pytest.mark.asyncio
async def test_repeated_context_error_asks_with_truncation_message(
    state, messages, channel, answers,
) -> None:
    history = _history(20)
    coordinator = await _coordinator(state, messages, history)
    state.stream.did_automatically_retry_failed_api_request = True
    channel.answers.append(answers.no)

    decision = await coordinator.handle_first_chunk_error(ContextWindowExceededError("too long"))

    assert decision == RetryDecision.STOP
    assert channel.asked == ["api_req_failed"]
    assert messages.transcript[-1].text == CONTEXT_WINDOW_RETRY_MESSAGE
    assert not state.stream.did_automatically_retry_failed_api_request
    assert messages.api_request_info().streaming_failed_message == CONTEXT_WINDOW_RETRY_MESSAGE


@pytest.mark.asyncio
async def test_context_error_on_minimal_history_keeps_original_text(
    state, messages, channel,
) -> None:
    history = _history(3)
    coordinator = await _coordinator(state, messages, history)
    state.stream.did_automatically_retry_failed_api_request = True

    decision = await coordinator.handle_first_chunk_error(
        ContextWindowExceededError("prompt is too long"),
    )

    assert decision == RetryDecision.STOP
    assert messages.transcript[-1].text == "prompt is too long"
    assert state.stream.did_automatically_retry_failed_api_request


@pytest.mark.asyncio
async def test_operator_retry_clears_failure_and_flag(state, messages, channel, answers) -> None:
    coordinator = await _coordinator(state, messages, _history(4))
    channel.answers.append(answers.yes)

    decision = await coordinator.handle_first_chunk_error(
        ProviderStreamError("502 bad gateway", status_code=502),
    )

    assert decision == RetryDecision.RETRY
    assert messages.api_request_info().streaming_failed_message is None
    assert messages.transcript[-1].kind == SayKind.API_REQ_RETRIED.value
    assert not state.stream.did_automatically_retry_failed_api_request
    assert state.conversation_history_deleted_range is None
