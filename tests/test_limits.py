from __future__ import annotations

import allure
import pytest

from taskpilot.config import AutoApprovalSettings
from taskpilot.orchestrator.limits import MISTAKE_LIMIT, LimitManager
from taskpilot.orchestrator.models import SayKind, TextPart

pytestmark = [
    allure.epic("Task Loop"),
    allure.feature("Limits"),
]

CONTENT = [TextPart(text="next step")]


def _manager(state, messages, notifier=None, **settings) -> LimitManager:
    return LimitManager(
        state,
        messages=messages,
        settings=AutoApprovalSettings(**settings),
        notifier=notifier,
    )


@pytest.mark.asyncio
async def test_below_ceilings_nothing_is_asked(state, messages, channel) -> None:
    manager = _manager(state, messages)
    state.limits.consecutive_mistake_count = MISTAKE_LIMIT - 1

    content = await manager.check_limits_before_request(CONTENT)

    assert content is CONTENT
    assert channel.asked == []


@pytest.mark.asyncio
async def test_mistake_ceiling_with_plain_continue_keeps_content(
    state, messages, channel, answers,
) -> None:
    manager = _manager(state, messages)
    for _ in range(MISTAKE_LIMIT):
        state.limits.record_mistake()
    channel.answers.append(answers.yes)

    content = await manager.check_limits_before_request(CONTENT)

    assert channel.asked == ["mistake_limit_reached"]
    assert content is CONTENT
    assert state.limits.consecutive_mistake_count == 0


@pytest.mark.asyncio
async def test_mistake_ceiling_feedback_replaces_content(
    state, messages, channel, answers,
) -> None:
    manager = _manager(state, messages)
    state.limits.consecutive_mistake_count = MISTAKE_LIMIT
    channel.answers.append(answers.message("try smaller steps"))

    content = await manager.check_limits_before_request(CONTENT)

    assert state.limits.consecutive_mistake_count == 0
    assert "<feedback>\ntry smaller steps\n</feedback>" in content[0].text
    assert messages.transcript[-1].kind == SayKind.USER_FEEDBACK.value


@pytest.mark.asyncio
async def test_auto_approval_ceiling_only_when_enabled(
    state, messages, channel, answers, notifier,
) -> None:
    state.limits.consecutive_auto_approved_requests_count = 5

    disabled = _manager(state, messages, enabled=False, max_requests=5)
    await disabled.check_limits_before_request(CONTENT)
    assert channel.asked == []

    enabled = _manager(
        state, messages, notifier, enabled=True, max_requests=5, enable_notifications=True,
    )
    channel.answers.append(answers.message("keep going"))
    content = await enabled.check_limits_before_request(CONTENT)

    assert channel.asked == ["auto_approval_max_req_reached"]
    assert state.limits.consecutive_auto_approved_requests_count == 0
    assert "keep going" in content[0].text
    assert notifier.notifications[0][0] == "Max Requests Reached"


@pytest.mark.asyncio
async def test_both_ceilings_are_checked_in_order(state, messages, channel) -> None:
    manager = _manager(state, messages, enabled=True, max_requests=1)
    state.limits.consecutive_mistake_count = MISTAKE_LIMIT
    state.limits.record_auto_approval()

    await manager.check_limits_before_request(CONTENT)

    assert channel.asked == ["mistake_limit_reached", "auto_approval_max_req_reached"]
    assert state.limits.consecutive_mistake_count == 0
    assert state.limits.consecutive_auto_approved_requests_count == 0
