"""Explicitly constructed runtime context passed down to controllers and the daemon."""

from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from agent_chatroom.config import Settings
from agent_chatroom.drivers.registry import DriverRegistry, build_default_registry
from agent_chatroom.prompts import PromptProvider, RolePromptProvider
from agent_chatroom.supervisor.records import ProcessRecordStore
from agent_chatroom.supervisor.supervisor import AgentSupervisor
from agent_chatroom.tasks.repository import TaskRepository
from agent_chatroom.tasks.service import TaskService


@dataclass(slots=True)
class RuntimeContext:
    """Everything one host process needs; build a fresh one per test."""

    settings: Settings
    registry: DriverRegistry
    tasks: TaskService
    records: ProcessRecordStore
    supervisor: AgentSupervisor
    prompts: PromptProvider


@contextmanager
def open_runtime(
    settings: Settings,
    *,
    registry: DriverRegistry | None = None,
    prompts: PromptProvider | None = None,
) -> Iterator[RuntimeContext]:
    """Migrate the store, wire the components, and close DB resources on exit."""

    registry = registry or build_default_registry()
    task_repository = TaskRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    records = ProcessRecordStore(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    try:
        task_repository.init_schema()
        supervisor = AgentSupervisor(
            registry=registry,
            records=records,
            supervisor_id=f"{settings.daemon.machine_id}:{os.getpid()}",
            log_dir=settings.log_dir,
            stop_grace_seconds=settings.daemon.stop_grace_seconds,
            kill_wait_seconds=settings.daemon.kill_wait_seconds,
        )
        yield RuntimeContext(
            settings=settings,
            registry=registry,
            tasks=TaskService(task_repository),
            records=records,
            supervisor=supervisor,
            prompts=prompts or RolePromptProvider(),
        )
    finally:
        records.close()
        task_repository.close()
