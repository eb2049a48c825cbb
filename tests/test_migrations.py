from pathlib import Path

import allure
from sqlalchemy import inspect, text

from agent_chatroom.tasks.repository import TaskRepository

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Task Store & Claims"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = TaskRepository(tmp_path / "migrations.db")
    repository.init_schema()
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar_one()
    assert version == "20261019_0001"
    assert journal_mode == "wal"

    tables = set(inspect(repository.engine).get_table_names())
    assert {"chatroom_tasks", "chatroom_task_events", "agent_processes"} <= tables
    primary_key = inspect(repository.engine).get_pk_constraint("agent_processes")
    assert primary_key["constrained_columns"] == ["chatroom_id", "role"]
    repository.close()
