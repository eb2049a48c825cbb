from __future__ import annotations

import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from agent_chatroom import __version__
from agent_chatroom.main import agent_chatroom

pytestmark = [
    allure.epic("Operator CLI"),
    allure.feature("Daemon, Agents & Tasks Commands"),
]


@pytest.fixture()
def runner(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> CliRunner:
    monkeypatch.setenv("AGENT_CHATROOM_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("AGENT_CHATROOM_MACHINE_ID", "cli-host")
    monkeypatch.setenv("AGENT_CHATROOM_WORKING_DIR", str(tmp_path))
    return CliRunner()


def _create_task(runner: CliRunner, db_path: Path, *extra: str) -> str:
    result = runner.invoke(
        agent_chatroom,
        ["tasks", "create", "--db-path", str(db_path), "--chatroom-id", "room", *extra],
    )
    assert result.exit_code == 0, result.output
    match = re.search(r"Task created: (\S+)", result.output)
    assert match is not None
    return match.group(1)


def test_version_option() -> None:
    result = CliRunner().invoke(agent_chatroom, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_daemon_status_and_stop_when_not_running(runner: CliRunner, tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"

    status = runner.invoke(agent_chatroom, ["daemon", "status", "--db-path", str(db_path)])
    stop = runner.invoke(agent_chatroom, ["daemon", "stop"])

    assert status.exit_code == 0, status.output
    assert "Daemon: stopped" in status.output
    assert "Machine: cli-host" in status.output
    assert "Agents: 0" in status.output
    assert stop.exit_code == 0, stop.output
    assert "Daemon is not running." in stop.output


def test_daemon_start_once_polls_and_releases_pid_file(runner: CliRunner, tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"

    result = runner.invoke(
        agent_chatroom,
        ["daemon", "start", "--db-path", str(db_path), "--once"],
    )

    assert result.exit_code == 0, result.output
    assert "Daemon stopped: polls=1 spawned=0" in result.output
    assert not (tmp_path / "state" / "daemon.pid").exists()


def test_chat_task_lifecycle_through_cli(runner: CliRunner, tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    task_id = _create_task(runner, db_path, "--content", "Add dark mode")

    promote = runner.invoke(
        agent_chatroom,
        [
            "tasks",
            "promote",
            "--db-path",
            str(db_path),
            "--chatroom-id",
            "room",
            "--role",
            "builder",
        ],
    )
    assert promote.exit_code == 0, promote.output
    assert f"Task {task_id} promote: queued -> pending" in promote.output
    assert "Actionable by: builder" in promote.output

    skip = runner.invoke(
        agent_chatroom,
        [
            "tasks",
            "move",
            "--db-path",
            str(db_path),
            "--task-id",
            task_id,
            "--status",
            "in_progress",
        ],
    )
    assert skip.exit_code != 0

    claim = runner.invoke(
        agent_chatroom,
        [
            "tasks",
            "claim",
            "--db-path",
            str(db_path),
            "--task-id",
            task_id,
            "--role",
            "builder",
            "--claimed-by",
            "agent-1",
        ],
    )
    assert claim.exit_code == 0, claim.output
    assert "pending -> acknowledged" in claim.output

    inspect = runner.invoke(
        agent_chatroom,
        ["tasks", "inspect", "--db-path", str(db_path), "--task-id", task_id],
    )
    assert inspect.exit_code == 0, inspect.output
    assert "Status: acknowledged" in inspect.output
    assert "Claimed by: agent-1" in inspect.output
    assert "Events: 3" in inspect.output


def test_tasks_list_filters_by_status(runner: CliRunner, tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    _create_task(runner, db_path)
    backlog_id = _create_task(runner, db_path, "--origin", "backlog", "--role", "reviewer")

    result = runner.invoke(
        agent_chatroom,
        ["tasks", "list", "--db-path", str(db_path), "--status", "backlog"],
    )

    assert result.exit_code == 0, result.output
    assert "Tasks: 1" in result.output
    assert backlog_id in result.output
    assert "role=reviewer" in result.output


def test_agents_stop_when_nothing_runs_is_a_no_op(runner: CliRunner, tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"

    result = runner.invoke(
        agent_chatroom,
        ["agents", "stop", "--db-path", str(db_path), "--chatroom-id", "room", "--role", "builder"],
    )
    listing = runner.invoke(agent_chatroom, ["agents", "list", "--db-path", str(db_path)])

    assert result.exit_code == 0, result.output
    assert "room/builder: not_running" in result.output
    assert "Agents: 0" in listing.output


def test_tools_commands(runner: CliRunner) -> None:
    listing = runner.invoke(agent_chatroom, ["tools", "list"])
    claude_models = runner.invoke(agent_chatroom, ["tools", "models", "--tool", "claude"])
    unknown = runner.invoke(agent_chatroom, ["tools", "models", "--tool", "vim"])

    assert listing.exit_code == 0, listing.output
    assert "Tools: 3" in listing.output
    assert "opencode (OpenCode)" in listing.output
    assert claude_models.exit_code == 0, claude_models.output
    assert "Models for claude: 0" in claude_models.output
    assert unknown.exit_code != 0


def test_inspect_missing_task_fails(runner: CliRunner, tmp_path: Path) -> None:
    result = runner.invoke(
        agent_chatroom,
        ["tasks", "inspect", "--db-path", str(tmp_path / "cli.db"), "--task-id", "missing"],
    )

    assert result.exit_code != 0
    assert "Task not found: missing" in result.output
