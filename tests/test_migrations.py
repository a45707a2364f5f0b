from pathlib import Path

import allure
from sqlalchemy import inspect

from taskpilot.storage.alembic_runner import current_revision
from taskpilot.storage.repository import TaskHistoryRepository

pytestmark = [
    allure.epic("Task History"),
    allure.feature("Schema"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = TaskHistoryRepository(tmp_path / "nested" / "migrations.db")
    assert current_revision(repository.engine) is None

    repository.init_schema()

    assert current_revision(repository.engine) == "20261018_0001"
    tables = set(inspect(repository.engine).get_table_names())
    assert {"tasks", "conversation_messages", "transcript_messages"} <= tables
    repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    repository = TaskHistoryRepository(tmp_path / "again.db")
    repository.init_schema()
    repository.create_task(prompt="first", provider_id="openai", model_id="gpt-4o-mini")

    repository.init_schema()

    assert len(repository.list_tasks()) == 1
    repository.close()
