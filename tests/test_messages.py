from __future__ import annotations

import allure
import pytest

from taskpilot.orchestrator.errors import AskSupersededError, TaskAbortedError
from taskpilot.orchestrator.messages import MessageService
from taskpilot.orchestrator.models import (
    Aborted,
    ApiRequestInfo,
    AskKind,
    AskResponse,
    SayKind,
    Superseded,
)

pytestmark = [
    allure.epic("Task Loop"),
    allure.feature("Operator Transcript"),
]


class _Sink:
    def __init__(self) -> None:
        self.saved: list[int] = []

    def save_transcript(self, messages) -> None:
        self.saved.append(len(messages))


@pytest.mark.asyncio
async def test_partial_say_streams_into_one_record(messages, channel) -> None:
    first = await messages.say(SayKind.TEXT, "Hel", partial=True)
    second = await messages.say(SayKind.TEXT, "Hello", partial=True)
    final = await messages.say(SayKind.TEXT, "Hello world", partial=False)

    assert first == second == final
    assert len(messages.transcript) == 1
    record = messages.transcript[0]
    assert record.text == "Hello world"
    assert not record.partial
    assert [message.text for message in channel.published] == ["Hel", "Hello", "Hello world"]


@pytest.mark.asyncio
async def test_complete_say_always_appends(messages) -> None:
    await messages.say(SayKind.TEXT, "one", partial=True)
    await messages.say(SayKind.ERROR, "boom")
    await messages.say(SayKind.TEXT, "two", partial=True)

    assert [record.kind for record in messages.transcript] == ["text", "error", "text"]


@pytest.mark.asyncio
async def test_timestamps_are_strictly_increasing(state, channel) -> None:
    service = MessageService(state, channel, clock=lambda: 100.0)

    stamps = [await service.say(SayKind.TEXT, str(index)) for index in range(3)]

    assert stamps == [100_000, 100_001, 100_002]


@pytest.mark.asyncio
async def test_ask_returns_answer(messages, channel, answers) -> None:
    channel.answers.append(answers.message("looks good"))

    answer = await messages.ask(AskKind.FOLLOWUP, "Which file?")

    assert answer.response == AskResponse.MESSAGE_RESPONSE
    assert answer.text == "looks good"
    assert channel.asked == ["followup"]
    assert messages.transcript[-1].type == "ask"


@pytest.mark.asyncio
async def test_ask_sentinels_become_errors_at_the_boundary(messages, channel) -> None:
    channel.answers.extend([Superseded(), Aborted()])

    with pytest.raises(AskSupersededError):
        await messages.ask(AskKind.TOOL, "{}")
    with pytest.raises(TaskAbortedError):
        await messages.ask(AskKind.TOOL, "{}")


@pytest.mark.asyncio
async def test_say_and_ask_are_rejected_after_abort(messages, state) -> None:
    state.mark_aborted()

    with pytest.raises(TaskAbortedError):
        await messages.say(SayKind.TEXT, "late")
    with pytest.raises(TaskAbortedError):
        await messages.ask(AskKind.FOLLOWUP, "late?")
    assert messages.transcript == []


@pytest.mark.asyncio
async def test_api_request_record_updates_and_persistence(state, channel) -> None:
    sink = _Sink()
    service = MessageService(state, channel, sink=sink)
    ts = await service.say(SayKind.API_REQ_STARTED, ApiRequestInfo(request="hi").to_json())

    info = service.api_request_info(ts)
    info.tokens_in = 12
    info.cost = 0.5
    service.update_api_request(info, ts)
    service.attach_checkpoint_hash(ts, "abc123")

    stored = ApiRequestInfo.from_json(service.find(ts).text)
    assert stored.request == "hi"
    assert stored.tokens_in == 12
    assert stored.cost == 0.5
    assert service.find(ts).checkpoint_hash == "abc123"
    assert sink.saved == [1, 1]


@pytest.mark.asyncio
async def test_finalize_last_partial(messages) -> None:
    await messages.say(SayKind.REASONING, "thinking", partial=True)

    messages.finalize_last_partial()

    assert not messages.transcript[-1].partial
