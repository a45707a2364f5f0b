"""SQLModel ORM tables for task history storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]

    task_id: str = Field(primary_key=True)
    prompt: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    provider_id: str
    model_id: str
    api_request_count: int = 0
    deleted_range_start: int | None = None
    deleted_range_end: int | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ConversationMessageRow(SQLModel, table=True):
    __tablename__ = "conversation_messages"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("task_id", "position", name="uq_conversation_messages_task_position"),
    )

    message_id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    position: int
    role: str
    content_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TranscriptMessageRow(SQLModel, table=True):
    __tablename__ = "transcript_messages"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("task_id", "position", name="uq_transcript_messages_task_position"),
    )

    record_id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    position: int
    ts: int
    type: str
    kind: str
    text: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    partial: bool = False
    images_json: str = "[]"
    files_json: str = "[]"
    checkpoint_hash: str | None = None
