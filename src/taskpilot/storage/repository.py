"""Task history repository backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import delete, func
from sqlmodel import Session, col, select

from taskpilot.orchestrator.models import HistoryMessage, TaskStatus, TranscriptMessage
from taskpilot.storage.alembic_runner import upgrade_head
from taskpilot.storage.common import build_sqlite_engine, to_utc_aware, utc_now
from taskpilot.storage.sqlmodel_models import (
    ConversationMessageRow,
    TaskRow,
    TranscriptMessageRow,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TaskView:
    """Stored task summary."""

    task_id: str
    prompt: str
    status: TaskStatus
    provider_id: str
    model_id: str
    api_request_count: int
    deleted_range: tuple[int, int] | None
    message_count: int
    created_at: datetime
    updated_at: datetime


class TaskNotFoundError(LookupError):
    """Raised when a task id is not present in storage."""


class TaskHistoryRepository:
    """Persistence facade for tasks, conversation history and transcripts."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_task(
        self,
        *,
        prompt: str,
        provider_id: str,
        model_id: str,
        task_id: str | None = None,
    ) -> TaskView:
        now = utc_now()
        row = TaskRow(
            task_id=task_id or str(uuid4()),
            prompt=prompt,
            status=TaskStatus.RUNNING.value,
            provider_id=provider_id,
            model_id=model_id,
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _task_view(row, message_count=0)

    def get_task(self, task_id: str) -> TaskView:
        with Session(self.engine) as session:
            row = session.get(TaskRow, task_id)
            if row is None:
                raise TaskNotFoundError(task_id)
            return _task_view(row, message_count=self._message_count(session, task_id))

    def list_tasks(self, *, limit: int = 50) -> list[TaskView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow).order_by(col(TaskRow.created_at).desc()).limit(limit),
            ).all()
            return [
                _task_view(row, message_count=self._message_count(session, row.task_id))
                for row in rows
            ]

    def update_task(
        self,
        task_id: str,
        *,
        status: TaskStatus | None = None,
        api_request_count: int | None = None,
    ) -> None:
        with Session(self.engine) as session:
            row = self._require_task(session, task_id)
            if status is not None:
                row.status = status.value
            if api_request_count is not None:
                row.api_request_count = api_request_count
            row.updated_at = utc_now()
            session.add(row)
            session.commit()

    def set_deleted_range(self, task_id: str, deleted_range: tuple[int, int] | None) -> None:
        with Session(self.engine) as session:
            row = self._require_task(session, task_id)
            row.deleted_range_start = deleted_range[0] if deleted_range else None
            row.deleted_range_end = deleted_range[1] if deleted_range else None
            row.updated_at = utc_now()
            session.add(row)
            session.commit()

    def save_conversation(self, task_id: str, messages: Sequence[HistoryMessage]) -> None:
        """Replace the stored conversation history of a task."""

        now = utc_now()
        with Session(self.engine) as session:
            self._require_task(session, task_id)
            session.execute(
                delete(ConversationMessageRow).where(
                    col(ConversationMessageRow.task_id) == task_id,
                ),
            )
            for position, message in enumerate(messages):
                session.add(
                    ConversationMessageRow(
                        task_id=task_id,
                        position=position,
                        role=message.role.value,
                        content_json=json.dumps(message.to_dict()["content"], ensure_ascii=False),
                        created_at=now,
                    ),
                )
            session.commit()
        logger.debug("Saved %d conversation messages for task %s", len(messages), task_id)

    def load_conversation(self, task_id: str) -> list[HistoryMessage]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ConversationMessageRow)
                .where(ConversationMessageRow.task_id == task_id)
                .order_by(col(ConversationMessageRow.position)),
            ).all()
            return [
                HistoryMessage.from_dict(
                    {"role": row.role, "content": json.loads(row.content_json)},
                )
                for row in rows
            ]

    def save_transcript(self, task_id: str, messages: Sequence[TranscriptMessage]) -> None:
        """Replace the stored operator transcript of a task."""

        with Session(self.engine) as session:
            self._require_task(session, task_id)
            session.execute(
                delete(TranscriptMessageRow).where(col(TranscriptMessageRow.task_id) == task_id),
            )
            for position, message in enumerate(messages):
                session.add(
                    TranscriptMessageRow(
                        task_id=task_id,
                        position=position,
                        ts=message.ts,
                        type=message.type,
                        kind=message.kind,
                        text=message.text,
                        partial=message.partial,
                        images_json=json.dumps(list(message.images)),
                        files_json=json.dumps(list(message.files)),
                        checkpoint_hash=message.checkpoint_hash,
                    ),
                )
            session.commit()

    def load_transcript(self, task_id: str) -> list[TranscriptMessage]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TranscriptMessageRow)
                .where(TranscriptMessageRow.task_id == task_id)
                .order_by(col(TranscriptMessageRow.position)),
            ).all()
            return [
                TranscriptMessage(
                    ts=row.ts,
                    type=row.type,
                    kind=row.kind,
                    text=row.text,
                    partial=row.partial,
                    images=tuple(json.loads(row.images_json)),
                    files=tuple(json.loads(row.files_json)),
                    checkpoint_hash=row.checkpoint_hash,
                )
                for row in rows
            ]

    @staticmethod
    def _require_task(session: Session, task_id: str) -> TaskRow:
        row = session.get(TaskRow, task_id)
        if row is None:
            raise TaskNotFoundError(task_id)
        return row

    @staticmethod
    def _message_count(session: Session, task_id: str) -> int:
        count = session.exec(
            select(func.count())
            .select_from(ConversationMessageRow)
            .where(ConversationMessageRow.task_id == task_id),
        ).one()
        return int(count)


class SqliteHistoryStore:
    """`HistoryStore` over the repository; `persist` writes the whole history."""

    def __init__(self, repository: TaskHistoryRepository, task_id: str) -> None:
        self._repository = repository
        self.task_id = task_id
        self._messages = repository.load_conversation(task_id)
        self.deleted_range = repository.get_task(task_id).deleted_range

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
        self._repository.set_deleted_range(self.task_id, deleted_range)

    def persist(self) -> None:
        self._repository.save_conversation(self.task_id, self._messages)

    def save_transcript(self, messages: Sequence[TranscriptMessage]) -> None:
        self._repository.save_transcript(self.task_id, messages)


def _task_view(row: TaskRow, *, message_count: int) -> TaskView:
    deleted_range = None
    if row.deleted_range_start is not None and row.deleted_range_end is not None:
        deleted_range = (row.deleted_range_start, row.deleted_range_end)
    return TaskView(
        task_id=row.task_id,
        prompt=row.prompt,
        status=TaskStatus(row.status),
        provider_id=row.provider_id,
        model_id=row.model_id,
        api_request_count=row.api_request_count,
        deleted_range=deleted_range,
        message_count=message_count,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )
