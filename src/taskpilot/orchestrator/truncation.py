"""Context-window bookkeeping: active history, truncation ranges, compaction."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from taskpilot.orchestrator.formatting import context_truncation_notice
from taskpilot.orchestrator.models import HistoryMessage, Role, TextPart

# The first user/assistant pair is never elided.
RANGE_START = 2
MIN_ACTIVE_MESSAGES = 3


@dataclass(slots=True)
class ContextWindowInfo:
    """Context window and the largest prompt it comfortably accepts."""

    context_window: int
    max_allowed_size: int


def get_context_window_info(context_window: int) -> ContextWindowInfo:
    if context_window == 64_000:
        max_allowed = context_window - 27_000
    elif context_window == 128_000:
        max_allowed = context_window - 30_000
    elif context_window == 200_000:
        max_allowed = context_window - 40_000
    else:
        max_allowed = max(context_window - 40_000, int(context_window * 0.8))
    return ContextWindowInfo(context_window=context_window, max_allowed_size=max_allowed)


def active_messages(
    history: Sequence[HistoryMessage],
    deleted_range: tuple[int, int] | None,
) -> list[HistoryMessage]:
    """History as the provider sees it, with the deleted range elided."""

    if deleted_range is None:
        return list(history)
    start, end = deleted_range
    return [*history[:start], *history[end + 1 :]]


def count_active_messages(history_length: int, deleted_range: tuple[int, int] | None) -> int:
    if deleted_range is None:
        return history_length
    start, end = deleted_range
    return history_length - (end - start + 1)


def get_next_truncation_range(
    history: Sequence[HistoryMessage],
    deleted_range: tuple[int, int] | None,
) -> tuple[int, int] | None:
    """Return the deleted range widened to keep a quarter of the active messages.

    The range always starts after the first user/assistant pair and ends on an
    assistant message, so the kept history still alternates roles. When no
    progress is possible the current range is returned unchanged.
    """

    active = count_active_messages(len(history), deleted_range)
    keep = max(active // 4, MIN_ACTIVE_MESSAGES)

    end = len(history) + 1 - keep
    if 0 <= end < len(history) and history[end].role != Role.ASSISTANT:
        end -= 1

    floor = deleted_range[1] if deleted_range is not None else RANGE_START - 1
    if end <= floor or end >= len(history) - 1:
        return deleted_range
    return (RANGE_START, end)


def range_after_summary(
    history: Sequence[HistoryMessage],
    deleted_range: tuple[int, int] | None,
    summary_request_index: int | None,
) -> tuple[int, int] | None:
    """Extend the deleted range so the pre-summary history is elided.

    Keeps the summary request and the summary itself visible. An existing
    range is extended by at least two messages where the history allows it.
    """

    end = summary_request_index - 1 if summary_request_index is not None else -1
    if deleted_range is not None:
        end = max(end, deleted_range[1] + 2)
    end = min(end, len(history) - 3)
    if end >= RANGE_START and history[end].role != Role.ASSISTANT:
        end -= 1
    floor = deleted_range[1] if deleted_range is not None else RANGE_START - 1
    if end < RANGE_START or end <= floor:
        return deleted_range
    return (RANGE_START, end)


def should_compact(
    *,
    previous_total_tokens: int,
    context_window: int,
    threshold: float | None,
    active_count: int,
) -> bool:
    """Whether the previous request came close enough to the window to compact."""

    if active_count <= 2:
        return False
    info = get_context_window_info(context_window)
    limit = info.max_allowed_size
    if threshold is not None:
        limit = min(int(context_window * threshold), limit)
    return previous_total_tokens >= limit


def build_provider_view(
    history: Sequence[HistoryMessage],
    deleted_range: tuple[int, int] | None,
) -> list[HistoryMessage]:
    """Active history with a truncation notice on the first assistant message."""

    view = active_messages(history, deleted_range)
    if deleted_range is None or len(view) < 2 or view[1].role != Role.ASSISTANT:
        return view
    first_reply = view[1]
    view[1] = HistoryMessage(
        role=first_reply.role,
        content=[*first_reply.content, TextPart(text=context_truncation_notice())],
    )
    return view
