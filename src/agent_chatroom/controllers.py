"""Controllers for chatroom CLI commands."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from agent_chatroom.config import Settings
from agent_chatroom.context import open_runtime
from agent_chatroom.drivers.registry import build_default_registry
from agent_chatroom.errors import ProcessTerminationError, TaskNotFoundError
from agent_chatroom.supervisor.daemon import (
    AgentDaemon,
    DaemonPidFile,
    configure_daemon_logging,
    stop_daemon,
)
from agent_chatroom.supervisor.models import AgentProcess, StopOutcome, StopResult
from agent_chatroom.tasks.models import TaskCreate, TaskOrigin, TaskStatus, TransitionResult

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DaemonCommand:
    """CLI input shared by daemon start/stop/status."""

    db_path: Path | None
    state_dir: Path | None
    once: bool = False


@dataclass(slots=True)
class AgentsListCommand:
    """CLI input for agent process listing."""

    db_path: Path | None
    state_dir: Path | None
    chatroom_id: str | None


@dataclass(slots=True)
class AgentStopCommand:
    """CLI input for stopping or aborting one agent."""

    db_path: Path | None
    state_dir: Path | None
    chatroom_id: str
    role: str
    abort: bool = False


@dataclass(slots=True)
class ToolModelsCommand:
    """CLI input for model listing."""

    tool: str


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for task creation."""

    db_path: Path | None
    chatroom_id: str
    origin: str
    content: str
    role: str | None


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    chatroom_id: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskInspectCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskMoveCommand:
    """CLI input for an explicit status transition."""

    db_path: Path | None
    task_id: str
    status: str
    actor_role: str | None
    assign_role: str | None


@dataclass(slots=True)
class TaskClaimCommand:
    """CLI input for claiming an actionable task."""

    db_path: Path | None
    task_id: str
    role: str
    claimed_by: str | None


@dataclass(slots=True)
class TaskPromoteCommand:
    """CLI input for FIFO promotion of the next queued chat task."""

    db_path: Path | None
    chatroom_id: str
    role: str


@dataclass(slots=True)
class CommandResult:
    """Lines to render plus whether the command should exit non-zero."""

    lines: list[str]
    success: bool = True


class ChatroomCliController:
    """Coordinates daemon, agent, tool and task CLI operations."""

    def start_daemon(self, command: DaemonCommand) -> CommandResult:
        settings = _settings(command.db_path, command.state_dir)
        settings.validate(known_tools=build_default_registry().tools())
        pid_file = DaemonPidFile(settings.pid_file)
        if not pid_file.acquire():
            running = pid_file.read_pid()
            return CommandResult(
                lines=[f"Daemon already running (pid={running if running else '?'})."],
                success=False,
            )

        configure_daemon_logging(settings.state_dir / "daemon.log")
        logger.info(
            "Daemon starting: machine=%s db=%s poll=%.1fs",
            settings.daemon.machine_id,
            settings.db_path,
            settings.daemon.poll_interval_seconds,
        )
        try:
            with open_runtime(settings) as runtime:
                daemon = AgentDaemon(
                    settings=settings,
                    supervisor=runtime.supervisor,
                    tasks=runtime.tasks,
                    prompts=runtime.prompts,
                )
                summary = daemon.run_loop(once=command.once)
        finally:
            pid_file.release()

        return CommandResult(
            lines=[
                "Daemon stopped: "
                f"polls={summary.polls} spawned={summary.spawned} reused={summary.reused} "
                f"exited={summary.exited} spawn_failures={summary.spawn_failures}",
            ],
        )

    def stop_daemon(self, command: DaemonCommand) -> CommandResult:
        settings = _settings(command.db_path, command.state_dir)
        pid_file = DaemonPidFile(settings.pid_file)
        try:
            outcome, pid = stop_daemon(
                pid_file,
                grace_seconds=settings.daemon.stop_grace_seconds,
                kill_wait_seconds=settings.daemon.kill_wait_seconds,
            )
        except ProcessTerminationError as error:
            return CommandResult(lines=[f"Failed to stop daemon: {error}"], success=False)
        except OSError as error:
            return CommandResult(
                lines=[f"Failed to stop daemon ({settings.pid_file}): {error}"],
                success=False,
            )

        if outcome == StopOutcome.NOT_RUNNING:
            return CommandResult(lines=["Daemon is not running."])
        if outcome == StopOutcome.KILLED:
            return CommandResult(lines=[f"Daemon force-killed (pid={pid})."])
        return CommandResult(lines=[f"Daemon stopped (pid={pid})."])

    def daemon_status(self, command: DaemonCommand) -> CommandResult:
        settings = _settings(command.db_path, command.state_dir)
        pid = DaemonPidFile(settings.pid_file).running_pid()
        lines = [
            f"Daemon: {'running' if pid is not None else 'stopped'}"
            + (f" (pid={pid})" if pid is not None else ""),
            f"Machine: {settings.daemon.machine_id}",
            f"State dir: {settings.state_dir}",
        ]
        with open_runtime(settings) as runtime:
            processes = runtime.supervisor.status()
        lines.append(f"Agents: {len(processes)}")
        lines.extend(_process_lines(processes))
        return CommandResult(lines=lines)

    def list_agents(self, command: AgentsListCommand) -> list[str]:
        settings = _settings(command.db_path, command.state_dir)
        with open_runtime(settings) as runtime:
            processes = runtime.supervisor.status(chatroom_id=command.chatroom_id)
        return [f"Agents: {len(processes)}", *_process_lines(processes)]

    def stop_agent(self, command: AgentStopCommand) -> list[str]:
        settings = _settings(command.db_path, command.state_dir)
        with open_runtime(settings) as runtime:
            if command.abort:
                result = runtime.supervisor.abort(
                    chatroom_id=command.chatroom_id,
                    role=command.role,
                )
            else:
                result = runtime.supervisor.stop(
                    chatroom_id=command.chatroom_id,
                    role=command.role,
                )
        return [_stop_line(result)]

    def list_tools(self) -> list[str]:
        registry = build_default_registry()
        available = set(registry.detect_available())
        lines = [f"Tools: {len(registry.tools())}"]
        for driver in registry.all():
            capabilities = ",".join(driver.capabilities.enabled()) or "-"
            lines.append(
                f"  {driver.tool} ({driver.display_name}) command={driver.command} "
                f"installed={'yes' if driver.tool in available else 'no'} "
                f"capabilities={capabilities}",
            )
        return lines

    def list_models(self, command: ToolModelsCommand) -> list[str]:
        driver = build_default_registry().get(command.tool)
        models = driver.list_models()
        lines = [f"Models for {driver.tool}: {len(models)}"]
        lines.extend(f"  {model}" for model in models)
        return lines

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        settings = _settings(command.db_path, None)
        with open_runtime(settings) as runtime:
            task = runtime.tasks.create_task(
                TaskCreate(
                    chatroom_id=command.chatroom_id,
                    origin=_parse_origin(command.origin),
                    content=command.content,
                    assigned_role=command.role,
                ),
            )
        return [
            f"Task created: {task.task_id}",
            f"Status: {task.status.value}",
            f"Queue position: {task.queue_position}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = _settings(command.db_path, None)
        status_filter = _parse_status(command.status)
        with open_runtime(settings) as runtime:
            tasks = runtime.tasks.repository.list_tasks(
                chatroom_id=command.chatroom_id,
                status=status_filter,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} chatroom={task.chatroom_id} origin={task.origin.value} "
                f"status={task.status.value} role={task.assigned_role or '-'} "
                f"position={task.queue_position}",
            )
        return lines

    def inspect_task(self, command: TaskInspectCommand) -> list[str]:
        settings = _settings(command.db_path, None)
        with open_runtime(settings) as runtime:
            details = runtime.tasks.repository.get_task_details(task_id=command.task_id)
        if details is None:
            raise TaskNotFoundError(command.task_id)

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Chatroom: {task.chatroom_id}",
            f"Origin: {task.origin.value}",
            f"Status: {task.status.value}",
            f"Assigned role: {task.assigned_role or '-'}",
            f"Claimed by: {task.claimed_by or '-'}",
            f"Content: {task.content or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'} "
                f"actor={event.actor_role or '-'}",
            )
        return lines

    def move_task(self, command: TaskMoveCommand) -> list[str]:
        settings = _settings(command.db_path, None)
        target = _parse_status(command.status)
        if target is None:
            raise ValueError("--status is required.")
        with open_runtime(settings) as runtime:
            result = runtime.tasks.transition(
                command.task_id,
                target,
                actor_role=command.actor_role,
                assign_role=command.assign_role,
            )
        return _transition_lines(result)

    def claim_task(self, command: TaskClaimCommand) -> list[str]:
        settings = _settings(command.db_path, None)
        with open_runtime(settings) as runtime:
            result = runtime.tasks.claim(
                command.task_id,
                role=command.role,
                claimed_by=command.claimed_by,
            )
        return _transition_lines(result)

    def promote_task(self, command: TaskPromoteCommand) -> list[str]:
        settings = _settings(command.db_path, None)
        with open_runtime(settings) as runtime:
            result = runtime.tasks.promote_next(command.chatroom_id, role=command.role)
        if result is None:
            return [f"Nothing to promote in chatroom {command.chatroom_id}."]
        return _transition_lines(result)


def _settings(db_path: Path | None, state_dir: Path | None) -> Settings:
    return Settings.from_env(db_path=db_path, state_dir=state_dir)


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    try:
        return TaskStatus(value.strip().lower())
    except ValueError as error:
        allowed = ", ".join(status.value for status in TaskStatus)
        raise ValueError(
            f"Unsupported task status: {value!r}. Expected one of: {allowed}.",
        ) from error


def _parse_origin(value: str) -> TaskOrigin:
    try:
        return TaskOrigin(value.strip().lower())
    except ValueError as error:
        raise ValueError(
            f"Unsupported task origin: {value!r}. Expected chat or backlog.",
        ) from error


def _transition_lines(result: TransitionResult) -> list[str]:
    task = result.task
    lines = [
        f"Task {task.task_id} {result.trigger}: "
        f"{result.status_from.value} -> {task.status.value}",
    ]
    if result.actionable_role is not None:
        lines.append(f"Actionable by: {result.actionable_role}")
    return lines


def _stop_line(result: StopResult) -> str:
    pid = result.pid if result.pid is not None else "-"
    return (
        f"{result.chatroom_id}/{result.role}: {result.outcome.value} "
        f"(pid={pid}, record_removed={'yes' if result.record_removed else 'no'})"
    )


def _process_lines(processes: list[AgentProcess]) -> list[str]:
    lines: list[str] = []
    for process in processes:
        lines.append(
            f"  {process.chatroom_id}/{process.role} tool={process.tool} "
            f"pid={process.pid if process.pid is not None else '-'} state={process.state.value} "
            f"alive={'yes' if process.alive else 'no'} model={process.model or '-'}",
        )
    return lines
