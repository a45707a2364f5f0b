from __future__ import annotations

import allure
import pytest

from taskpilot.orchestrator.formatting import context_truncation_notice
from taskpilot.orchestrator.models import HistoryMessage, Role, TextPart
from taskpilot.orchestrator.truncation import (
    MIN_ACTIVE_MESSAGES,
    active_messages,
    build_provider_view,
    count_active_messages,
    get_context_window_info,
    get_next_truncation_range,
    range_after_summary,
    should_compact,
)

pytestmark = [
    allure.epic("Task Loop"),
    allure.feature("Retry & Truncation"),
]


def _history(size: int) -> list[HistoryMessage]:
    return [
        HistoryMessage(
            role=Role.USER if index % 2 == 0 else Role.ASSISTANT,
            content=[TextPart(text=f"message {index}")],
        )
        for index in range(size)
    ]


@pytest.mark.parametrize("size", range(12, 41))
def test_quarter_truncation_leaves_a_quarter_of_active_messages(size: int) -> None:
    history = _history(size)

    deleted = get_next_truncation_range(history, None)

    assert deleted is not None
    assert deleted[0] == 2
    assert history[deleted[1]].role == Role.ASSISTANT
    remaining = count_active_messages(size, deleted)
    assert size // 4 <= remaining <= size // 4 + 1


@pytest.mark.parametrize("size", range(0, 12))
def test_truncation_never_drops_below_minimum(size: int) -> None:
    history = _history(size)

    deleted = get_next_truncation_range(history, None)

    if deleted is not None:
        assert count_active_messages(size, deleted) >= MIN_ACTIVE_MESSAGES


def test_truncation_keeps_first_pair_and_role_alternation() -> None:
    history = _history(20)
    deleted = get_next_truncation_range(history, None)

    view = active_messages(history, deleted)

    assert view[0] is history[0]
    assert view[1] is history[1]
    assert [message.role for message in view[2:4]] == [Role.USER, Role.ASSISTANT]


def test_truncation_without_progress_returns_current_range() -> None:
    history = _history(20)
    current = (2, 17)

    assert get_next_truncation_range(history, current) == current
    assert get_next_truncation_range(_history(4), None) is None


def test_range_after_summary_elides_history_before_summary_request() -> None:
    history = _history(10)

    deleted = range_after_summary(history, None, summary_request_index=8)

    assert deleted == (2, 7)
    assert [message.text() for message in active_messages(history, deleted)] == [
        "message 0",
        "message 1",
        "message 8",
        "message 9",
    ]


def test_provider_view_marks_first_assistant_message() -> None:
    history = _history(12)

    untouched = build_provider_view(history, None)
    truncated = build_provider_view(history, (2, 7))

    assert untouched == history
    assert len(truncated) == 6
    assert truncated[1].content[-1] == TextPart(text=context_truncation_notice())
    assert history[1].content == [TextPart(text="message 1")]


def test_context_window_info_reserves_headroom() -> None:
    assert get_context_window_info(64_000).max_allowed_size == 37_000
    assert get_context_window_info(128_000).max_allowed_size == 98_000
    assert get_context_window_info(200_000).max_allowed_size == 160_000
    assert get_context_window_info(1_000_000).max_allowed_size == 960_000


def test_should_compact_uses_threshold_and_active_count() -> None:
    assert should_compact(
        previous_total_tokens=70_000,
        context_window=128_000,
        threshold=0.5,
        active_count=6,
    )
    assert not should_compact(
        previous_total_tokens=70_000,
        context_window=128_000,
        threshold=None,
        active_count=6,
    )
    assert not should_compact(
        previous_total_tokens=500_000,
        context_window=128_000,
        threshold=0.5,
        active_count=2,
    )
