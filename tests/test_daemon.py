from __future__ import annotations

import os
import signal
import sqlite3
import subprocess
import sys
from collections.abc import Callable, Iterator
from contextlib import ExitStack
from pathlib import Path

import allure
import pytest
from sqlalchemy.exc import OperationalError

from agent_chatroom.config import AgentSettings, DaemonSettings, Settings
from agent_chatroom.context import RuntimeContext, open_runtime
from agent_chatroom.drivers.registry import DriverRegistry
from agent_chatroom.supervisor.daemon import AgentDaemon, DaemonPidFile, stop_daemon
from agent_chatroom.supervisor.models import AgentProcessState, StopOutcome
from agent_chatroom.tasks.models import TaskCreate, TaskOrigin, TaskStatus

pytestmark = [
    allure.epic("Agent Supervision"),
    allure.feature("Daemon Poll Loop"),
]


def _settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "daemon.db",
        state_dir=tmp_path / "state",
        daemon=DaemonSettings(
            machine_id="test-host",
            poll_interval_seconds=0.05,
            stop_grace_seconds=0.5,
        ),
        agents=AgentSettings(default_tool="script", working_dir=tmp_path),
    )


@pytest.fixture()
def make_runtime(tmp_path: Path) -> Iterator[Callable[..., RuntimeContext]]:
    runtimes: list[RuntimeContext] = []

    with ExitStack() as stack:

        def _open(*drivers) -> RuntimeContext:
            runtime = stack.enter_context(
                open_runtime(_settings(tmp_path), registry=DriverRegistry(drivers)),
            )
            runtimes.append(runtime)
            return runtime

        yield _open
        for runtime in runtimes:
            runtime.supervisor.stop_all()


def _daemon(runtime: RuntimeContext) -> AgentDaemon:
    return AgentDaemon(
        settings=runtime.settings,
        supervisor=runtime.supervisor,
        tasks=runtime.tasks,
        prompts=runtime.prompts,
    )


def _pending_chat_task(runtime: RuntimeContext, *, role: str = "builder") -> str:
    task = runtime.tasks.create_task(
        TaskCreate(chatroom_id="room", origin=TaskOrigin.CHAT, content="Add a flag."),
    )
    runtime.tasks.transition(task.task_id, TaskStatus.PENDING, assign_role=role)
    return task.task_id


def test_run_once_spawns_one_agent_per_actionable_task(make_runtime, script_driver) -> None:
    runtime = make_runtime(script_driver())
    _pending_chat_task(runtime)
    daemon = _daemon(runtime)

    first = daemon.run_once()
    second = daemon.run_once()

    assert first.spawned == 1
    assert second.spawned == 0
    assert second.reused == 0
    processes = runtime.supervisor.status(chatroom_id="room")
    assert [(process.role, process.alive) for process in processes] == [("builder", True)]


def test_run_once_reuses_agent_for_next_task_of_same_role(make_runtime, script_driver) -> None:
    runtime = make_runtime(script_driver())
    backlog = runtime.tasks.create_task(
        TaskCreate(chatroom_id="room", origin=TaskOrigin.BACKLOG, assigned_role="builder"),
    )
    _pending_chat_task(runtime)
    runtime.tasks.transition(backlog.task_id, TaskStatus.BACKLOG_ACKNOWLEDGED)
    daemon = _daemon(runtime)

    poll = daemon.run_once()

    assert poll.spawned == 1
    assert poll.reused == 1


def test_crashed_agent_is_not_respawned(make_runtime, script_driver, wait_until) -> None:
    runtime = make_runtime(script_driver("import sys; sys.exit(5)"))
    _pending_chat_task(runtime)
    daemon = _daemon(runtime)
    assert daemon.run_once().spawned == 1
    assert wait_until(lambda: bool(runtime.supervisor.poll_exits()))

    backlog = runtime.tasks.create_task(
        TaskCreate(chatroom_id="room", origin=TaskOrigin.BACKLOG, assigned_role="builder"),
    )
    runtime.tasks.transition(backlog.task_id, TaskStatus.BACKLOG_ACKNOWLEDGED)
    poll = daemon.run_once()

    assert poll.spawned == 0
    record = runtime.records.get(chatroom_id="room", role="builder")
    assert record.state == AgentProcessState.CRASHED
    assert record.exit_code == 5


def test_unknown_tool_is_reported_once_and_task_is_untouched(make_runtime, script_driver) -> None:
    runtime = make_runtime(script_driver())
    task_id = _pending_chat_task(runtime)
    runtime.settings.agents.role_tools["builder"] = "vim"
    daemon = _daemon(runtime)

    first = daemon.run_once()
    second = daemon.run_once()

    assert first.spawn_failures == 1
    assert second.spawn_failures == 0
    assert runtime.tasks.repository.read_task(task_id).status == TaskStatus.PENDING


def test_run_loop_once_reconciles_and_leaves_agents_running(
    make_runtime,
    script_driver,
) -> None:
    runtime = make_runtime(script_driver())
    _pending_chat_task(runtime)

    summary = _daemon(runtime).run_loop(once=True)

    assert summary.polls == 1
    assert summary.spawned == 1
    assert runtime.records.get(chatroom_id="room", role="builder") is not None


def test_run_loop_stops_agents_on_exit_when_configured(make_runtime, script_driver) -> None:
    runtime = make_runtime(script_driver())
    runtime.settings.daemon.stop_agents_on_exit = True
    _pending_chat_task(runtime)

    _daemon(runtime).run_loop(once=True)

    assert runtime.records.list_records() == []


def test_pid_file_is_exclusive_and_cleaned_up(tmp_path: Path) -> None:
    pid_path = tmp_path / "state" / "daemon.pid"
    holder = DaemonPidFile(pid_path)
    contender = DaemonPidFile(pid_path)

    assert holder.acquire()
    try:
        assert not contender.acquire()
        assert contender.running_pid() == os.getpid()
    finally:
        holder.release()

    assert not pid_path.exists()
    assert contender.running_pid() is None


def test_stale_pid_file_is_removed(tmp_path: Path) -> None:
    pid_path = tmp_path / "daemon.pid"
    pid_path.write_text("999999999\n", encoding="utf-8")

    assert DaemonPidFile(pid_path).running_pid() is None
    assert not pid_path.exists()


def test_stop_daemon_without_running_daemon(tmp_path: Path) -> None:
    outcome, pid = stop_daemon(
        DaemonPidFile(tmp_path / "daemon.pid"),
        grace_seconds=0.1,
        kill_wait_seconds=0.1,
    )

    assert outcome == StopOutcome.NOT_RUNNING
    assert pid is None


def _locked_database() -> OperationalError:
    return OperationalError(
        "INSERT INTO agent_processes",
        {},
        sqlite3.OperationalError("database is locked"),
    )


def test_record_write_failure_leaves_task_for_next_poll(
    make_runtime,
    script_driver,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    runtime = make_runtime(script_driver())
    _pending_chat_task(runtime)
    upsert = runtime.records.upsert
    failures: list[dict] = []

    def _locked_once(**kwargs):
        if not failures:
            failures.append(kwargs)
            raise _locked_database()
        return upsert(**kwargs)

    monkeypatch.setattr(runtime.records, "upsert", _locked_once)
    daemon = _daemon(runtime)

    first = daemon.run_once()
    second = daemon.run_once()

    assert first.spawn_failures == 1
    assert first.spawned == 0
    assert second.spawned == 1
    assert runtime.records.get(chatroom_id="room", role="builder") is not None


def test_run_loop_survives_failed_poll(
    make_runtime,
    script_driver,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    runtime = make_runtime(script_driver())

    def _locked(*_args, **_kwargs):
        raise _locked_database()

    monkeypatch.setattr(runtime.tasks.repository, "list_actionable", _locked)

    summary = _daemon(runtime).run_loop(once=True)

    assert summary.polls == 1
    assert summary.spawned == 0


def _start_fake_daemon(pid_path: Path, script: str) -> subprocess.Popen[str]:
    process = subprocess.Popen(  # noqa: S603
        [sys.executable, "-c", script],
        stdout=subprocess.PIPE,
        text=True,
    )
    assert process.stdout is not None
    assert process.stdout.readline().strip() == "ready"
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    pid_path.write_text(f"{process.pid}\n", encoding="utf-8")
    return process


@pytest.mark.parametrize(
    ("script", "expected_outcome", "expected_returncode"),
    [
        (
            "import time\nprint('ready', flush=True)\ntime.sleep(60)\n",
            StopOutcome.TERMINATED,
            -signal.SIGTERM,
        ),
        (
            "import signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('ready', flush=True)\n"
            "time.sleep(60)\n",
            StopOutcome.KILLED,
            -signal.SIGKILL,
        ),
    ],
)
def test_stop_daemon_stops_live_daemon_and_removes_pid_file(
    tmp_path: Path,
    script: str,
    expected_outcome: StopOutcome,
    expected_returncode: int,
) -> None:
    pid_path = tmp_path / "state" / "daemon.pid"
    process = _start_fake_daemon(pid_path, script)
    try:
        outcome, pid = stop_daemon(
            DaemonPidFile(pid_path),
            grace_seconds=0.5,
            kill_wait_seconds=5.0,
        )

        assert outcome == expected_outcome
        assert pid == process.pid
        assert process.wait(timeout=10) == expected_returncode
        assert not pid_path.exists()
    finally:
        if process.poll() is None:
            process.kill()
        process.wait(timeout=10)
        if process.stdout is not None:
            process.stdout.close()
