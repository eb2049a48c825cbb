"""CLI entrypoint for agent-chatroom."""

from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click
from sqlalchemy.exc import SQLAlchemyError

from agent_chatroom import __version__
from agent_chatroom.controllers import (
    AgentsListCommand,
    AgentStopCommand,
    ChatroomCliController,
    CommandResult,
    DaemonCommand,
    TaskClaimCommand,
    TaskCreateCommand,
    TaskInspectCommand,
    TaskListCommand,
    TaskMoveCommand,
    TaskPromoteCommand,
    ToolModelsCommand,
)
from agent_chatroom.errors import ChatroomError
from agent_chatroom.tasks.models import TaskOrigin, TaskStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = ChatroomCliController()

T = TypeVar("T")

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
_STATE_DIR_OPTION = click.option(
    "--state-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Directory for the daemon PID file and agent logs.",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-chatroom")
def agent_chatroom() -> None:
    """Agent chatroom CLI."""


@agent_chatroom.group()
def daemon() -> None:
    """Supervisor daemon commands."""


@daemon.command("start")
@_DB_PATH_OPTION
@_STATE_DIR_OPTION
@click.option("--once", is_flag=True, default=False, help="Run a single poll and exit.")
def daemon_start(db_path: Path | None, state_dir: Path | None, once: bool) -> None:
    """Run the supervisor daemon in the foreground until SIGINT/SIGTERM."""

    _emit_result(
        _run(lambda: CONTROLLER.start_daemon(DaemonCommand(db_path, state_dir, once=once))),
        failure_message="Daemon did not start.",
    )


@daemon.command("stop")
@_STATE_DIR_OPTION
def daemon_stop(state_dir: Path | None) -> None:
    """Stop the running daemon: SIGTERM, short grace period, then SIGKILL."""

    _emit_result(
        _run(lambda: CONTROLLER.stop_daemon(DaemonCommand(None, state_dir))),
        failure_message="Daemon stop failed.",
    )


@daemon.command("status")
@_DB_PATH_OPTION
@_STATE_DIR_OPTION
def daemon_status(db_path: Path | None, state_dir: Path | None) -> None:
    """Show whether the daemon is running and which agents it knows about."""

    _emit_result(
        _run(lambda: CONTROLLER.daemon_status(DaemonCommand(db_path, state_dir))),
        failure_message="Daemon status failed.",
    )


@agent_chatroom.group()
def agents() -> None:
    """Agent process commands."""


@agents.command("list")
@_DB_PATH_OPTION
@_STATE_DIR_OPTION
@click.option("--chatroom-id", default=None, help="Only show agents of this chatroom.")
def agents_list(db_path: Path | None, state_dir: Path | None, chatroom_id: str | None) -> None:
    """List persisted agent process records and their liveness."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.list_agents(
                AgentsListCommand(db_path=db_path, state_dir=state_dir, chatroom_id=chatroom_id),
            ),
        ),
    )


@agents.command("stop")
@_DB_PATH_OPTION
@_STATE_DIR_OPTION
@click.option("--chatroom-id", required=True, help="Chatroom id.")
@click.option("--role", required=True, help="Agent role.")
def agents_stop(db_path: Path | None, state_dir: Path | None, chatroom_id: str, role: str) -> None:
    """Stop one agent; stopping an agent that is not running is a no-op."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.stop_agent(
                AgentStopCommand(
                    db_path=db_path,
                    state_dir=state_dir,
                    chatroom_id=chatroom_id,
                    role=role,
                ),
            ),
        ),
    )


@agents.command("abort")
@_DB_PATH_OPTION
@_STATE_DIR_OPTION
@click.option("--chatroom-id", required=True, help="Chatroom id.")
@click.option("--role", required=True, help="Agent role.")
def agents_abort(db_path: Path | None, state_dir: Path | None, chatroom_id: str, role: str) -> None:
    """Abort one agent's work; fails for tools without abort support. Tasks are untouched."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.stop_agent(
                AgentStopCommand(
                    db_path=db_path,
                    state_dir=state_dir,
                    chatroom_id=chatroom_id,
                    role=role,
                    abort=True,
                ),
            ),
        ),
    )


@agent_chatroom.group()
def tools() -> None:
    """Agent tool driver commands."""


@tools.command("list")
def tools_list() -> None:
    """List registered agent tools, their capabilities and whether they are installed."""

    _emit_lines(_run(CONTROLLER.list_tools))


@tools.command("models")
@click.option("--tool", required=True, help="Tool identifier, for example opencode.")
def tools_models(tool: str) -> None:
    """List models a tool accepts."""

    _emit_lines(_run(lambda: CONTROLLER.list_models(ToolModelsCommand(tool=tool.lower()))))


@agent_chatroom.group()
def tasks() -> None:
    """Task lifecycle commands."""


@tasks.command("create")
@_DB_PATH_OPTION
@click.option("--chatroom-id", required=True, help="Chatroom id.")
@click.option(
    "--origin",
    type=click.Choice([origin.value for origin in TaskOrigin]),
    default=TaskOrigin.CHAT.value,
    show_default=True,
    help="Task origin; selects the transition graph.",
)
@click.option("--content", default="", help="Task description.")
@click.option("--role", default=None, help="Role the task is intended for.")
def tasks_create(
    db_path: Path | None,
    chatroom_id: str,
    origin: str,
    content: str,
    role: str | None,
) -> None:
    """Create a chat (queued) or backlog task."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.create_task(
                TaskCreateCommand(
                    db_path=db_path,
                    chatroom_id=chatroom_id,
                    origin=origin,
                    content=content,
                    role=role,
                ),
            ),
        ),
    )


@tasks.command("list")
@_DB_PATH_OPTION
@click.option("--chatroom-id", default=None, help="Chatroom filter.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus]),
    default=None,
    help="Status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of tasks to print.",
)
def tasks_list(
    db_path: Path | None,
    chatroom_id: str | None,
    status: str | None,
    limit: int,
) -> None:
    """List tasks in queue order."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.list_tasks(
                TaskListCommand(
                    db_path=db_path,
                    chatroom_id=chatroom_id,
                    status=status,
                    limit=limit,
                ),
            ),
        ),
    )


@tasks.command("inspect")
@_DB_PATH_OPTION
@click.option("--task-id", required=True, help="Task id.")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Show one task and its transition history."""

    _emit_lines(
        _run(lambda: CONTROLLER.inspect_task(TaskInspectCommand(db_path=db_path, task_id=task_id))),
    )


@tasks.command("move")
@_DB_PATH_OPTION
@click.option("--task-id", required=True, help="Task id.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus]),
    required=True,
    help="Target status; must be the next status in the task's origin graph.",
)
@click.option("--actor-role", default=None, help="Role requesting the change.")
@click.option(
    "--assign-role",
    default=None,
    help="Role to hand the task to when it becomes actionable.",
)
def tasks_move(
    db_path: Path | None,
    task_id: str,
    status: str,
    actor_role: str | None,
    assign_role: str | None,
) -> None:
    """Apply one validated status transition."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.move_task(
                TaskMoveCommand(
                    db_path=db_path,
                    task_id=task_id,
                    status=status,
                    actor_role=actor_role,
                    assign_role=assign_role,
                ),
            ),
        ),
    )


@tasks.command("claim")
@_DB_PATH_OPTION
@click.option("--task-id", required=True, help="Task id.")
@click.option("--role", required=True, help="Claiming role; must match the assigned role.")
@click.option(
    "--claimed-by",
    default=None,
    help="Agent or machine identifier recorded on the task.",
)
def tasks_claim(db_path: Path | None, task_id: str, role: str, claimed_by: str | None) -> None:
    """Claim an actionable task exactly once."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.claim_task(
                TaskClaimCommand(
                    db_path=db_path,
                    task_id=task_id,
                    role=role,
                    claimed_by=claimed_by,
                ),
            ),
        ),
    )


@tasks.command("promote")
@_DB_PATH_OPTION
@click.option("--chatroom-id", required=True, help="Chatroom id.")
@click.option("--role", required=True, help="Role the promoted task is assigned to.")
def tasks_promote(db_path: Path | None, chatroom_id: str, role: str) -> None:
    """Promote the oldest queued chat task to pending when nothing else is active."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.promote_task(
                TaskPromoteCommand(db_path=db_path, chatroom_id=chatroom_id, role=role),
            ),
        ),
    )


def _run(action: Callable[[], T]) -> T:
    try:
        return action()
    except (ChatroomError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    except (SQLAlchemyError, OSError) as error:
        raise click.ClickException(f"Storage error: {error}") from error


def _emit_result(result: CommandResult, *, failure_message: str) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(failure_message)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_chatroom()
