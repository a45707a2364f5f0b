"""Task, conversation history and operator transcript tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("provider_id", sa.String(), nullable=False),
        sa.Column("model_id", sa.String(), nullable=False),
        sa.Column("api_request_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("deleted_range_start", sa.Integer(), nullable=True),
        sa.Column("deleted_range_end", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_tasks_status", "tasks", ["status"], unique=False)

    op.create_table(
        "conversation_messages",
        sa.Column("message_id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("content_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("message_id"),
        sa.UniqueConstraint(
            "task_id",
            "position",
            name="uq_conversation_messages_task_position",
        ),
    )
    op.create_index(
        "ix_conversation_messages_task_id",
        "conversation_messages",
        ["task_id"],
        unique=False,
    )

    op.create_table(
        "transcript_messages",
        sa.Column("record_id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("ts", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("text", sa.Text(), nullable=True),
        sa.Column("partial", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("images_json", sa.String(), nullable=False, server_default="[]"),
        sa.Column("files_json", sa.String(), nullable=False, server_default="[]"),
        sa.Column("checkpoint_hash", sa.String(), nullable=True),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("record_id"),
        sa.UniqueConstraint(
            "task_id",
            "position",
            name="uq_transcript_messages_task_position",
        ),
    )
    op.create_index(
        "ix_transcript_messages_task_id",
        "transcript_messages",
        ["task_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_transcript_messages_task_id", table_name="transcript_messages")
    op.drop_table("transcript_messages")
    op.drop_index("ix_conversation_messages_task_id", table_name="conversation_messages")
    op.drop_table("conversation_messages")
    op.drop_index("ix_tasks_status", table_name="tasks")
    op.drop_table("tasks")
