"""In-memory conversation history store."""

from __future__ import annotations

from collections.abc import Iterable

from taskpilot.orchestrator.models import HistoryMessage


class InMemoryHistoryStore:
    """Append-only history; `persist` only counts calls."""

    def __init__(self, messages: Iterable[HistoryMessage] = ()) -> None:
        self._messages: list[HistoryMessage] = list(messages)
        self.deleted_range: tuple[int, int] | None = None
        self.persist_count = 0

    def append(self, message: HistoryMessage) -> None:
        self._messages.append(message)

    def replace_last(self, message: HistoryMessage) -> None:
        if not self._messages:
            raise IndexError("Cannot replace the last message of an empty history")
        self._messages[-1] = message

    def get_history(self) -> list[HistoryMessage]:
        return list(self._messages)

    def set_deleted_range(self, deleted_range: tuple[int, int] | None) -> None:
        self.deleted_range = deleted_range

    def persist(self) -> None:
        self.persist_count += 1
