"""Shared test fixtures."""

from __future__ import annotations

import sys
import time
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from agent_chatroom.drivers.base import AgentCapabilities, AgentStartOptions, ProcessDriver
from agent_chatroom.supervisor.records import ProcessRecordStore
from agent_chatroom.tasks.repository import TaskRepository
from agent_chatroom.tasks.service import TaskService

SLEEP_SCRIPT = "import time; time.sleep(60)"


class PythonScriptDriver(ProcessDriver):
    """Runs an inline Python script in place of a real agent CLI."""

    tool = "script"
    display_name = "Python script"
    command = sys.executable
    capabilities = AgentCapabilities(abort=True, model_selection=True)

    def __init__(self, script: str = SLEEP_SCRIPT) -> None:
        self.script = script

    def build_args(self, options: AgentStartOptions, *, prompt_file: Path | None) -> list[str]:
        return [self.command, "-c", self.script]


class NoAbortScriptDriver(PythonScriptDriver):
    tool = "script-no-abort"
    capabilities = AgentCapabilities()


def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture()
def script_driver() -> Callable[..., PythonScriptDriver]:
    """Factory for drivers that run ``sys.executable -c <script>``."""

    def _build(script: str = SLEEP_SCRIPT, *, abort: bool = True) -> PythonScriptDriver:
        if abort:
            return PythonScriptDriver(script)
        return NoAbortScriptDriver(script)

    return _build


@pytest.fixture()
def wait_until() -> Callable[..., bool]:
    return _wait_until


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "chatroom.db"


@pytest.fixture()
def task_repository(db_path: Path) -> Iterator[TaskRepository]:
    repository = TaskRepository(db_path)
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def task_service(task_repository: TaskRepository) -> TaskService:
    return TaskService(task_repository)


@pytest.fixture()
def record_store(db_path: Path) -> Iterator[ProcessRecordStore]:
    store = ProcessRecordStore(db_path)
    store.init_schema()
    yield store
    store.close()
