"""Long-lived supervisor daemon: single-instance lock, poll loop, stop command."""

from __future__ import annotations

import fcntl
import logging
import os
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from sqlalchemy.exc import SQLAlchemyError

from agent_chatroom.config import Settings
from agent_chatroom.errors import SpawnError, UnknownToolError, UnsupportedCapabilityError
from agent_chatroom.prompts import PromptContext, PromptProvider
from agent_chatroom.supervisor.models import AgentProcessState, StopOutcome
from agent_chatroom.supervisor.process import is_pid_alive, terminate_process
from agent_chatroom.supervisor.supervisor import AgentSupervisor
from agent_chatroom.tasks.models import TaskStatus, TaskView
from agent_chatroom.tasks.service import TaskService

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class DaemonPidFile:
    """PID file guarded by an exclusive ``flock`` held for the daemon's lifetime."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._handle: IO[str] | None = None

    def acquire(self) -> bool:
        """Take the lock and write our PID; False when another daemon holds it."""

        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = self.path.open("a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            handle.close()
            return False
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle
        return True

    def release(self) -> None:
        if self._handle is None:
            return
        self.path.unlink(missing_ok=True)
        fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        self._handle.close()
        self._handle = None

    def read_pid(self) -> int | None:
        try:
            raw = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        try:
            return int(raw)
        except ValueError:
            return None

    def running_pid(self) -> int | None:
        """PID of the live daemon, cleaning up a stale file left by a dead one."""

        pid = self.read_pid()
        if pid is not None and is_pid_alive(pid):
            return pid
        if self.path.exists() and not self._locked_by_other():
            logger.info("Removing stale daemon PID file %s (pid=%s)", self.path, pid)
            self.path.unlink(missing_ok=True)
        return None

    def _locked_by_other(self) -> bool:
        try:
            handle = self.path.open("a+", encoding="utf-8")
        except FileNotFoundError:
            return False
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            return True
        else:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            return False
        finally:
            handle.close()


@dataclass(slots=True)
class DaemonPollSummary:
    """Counters for one or more poll iterations."""

    polls: int = 0
    spawned: int = 0
    reused: int = 0
    exited: int = 0
    spawn_failures: int = 0


class AgentDaemon:
    """Poll the task store and keep one agent running per actionable ``(chatroom, role)``."""

    def __init__(
        self,
        *,
        settings: Settings,
        supervisor: AgentSupervisor,
        tasks: TaskService,
        prompts: PromptProvider,
    ) -> None:
        self.settings = settings
        self.supervisor = supervisor
        self.tasks = tasks
        self.prompts = prompts
        self._dispatched: set[tuple[str, TaskStatus]] = set()
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def run_loop(self, *, once: bool = False) -> DaemonPollSummary:
        aggregate = DaemonPollSummary()
        summary = self.supervisor.reconcile()
        logger.info(
            "Reconciled process records: adopted=%d stale_removed=%d crashed=%d skipped=%d",
            len(summary.adopted),
            len(summary.stale_removed),
            len(summary.crashed),
            len(summary.skipped),
        )
        try:
            with self._signal_handlers():
                while True:
                    try:
                        poll = self.run_once()
                    except SQLAlchemyError:
                        logger.exception("Daemon poll failed; retrying on the next poll")
                        poll = DaemonPollSummary(polls=1)
                    aggregate.polls += poll.polls
                    aggregate.spawned += poll.spawned
                    aggregate.reused += poll.reused
                    aggregate.exited += poll.exited
                    aggregate.spawn_failures += poll.spawn_failures
                    if once or self._stop_requested:
                        break
                    self._sleep_with_stop(self.settings.daemon.poll_interval_seconds)
        finally:
            if self._stop_signal_name is not None:
                logger.info("Daemon stopping on %s", self._stop_signal_name)
            if self.settings.daemon.stop_agents_on_exit:
                self.supervisor.stop_all()
        return aggregate

    def run_once(self) -> DaemonPollSummary:
        poll = DaemonPollSummary(polls=1)
        poll.exited = len(self.supervisor.poll_exits())
        for task in self.tasks.repository.list_actionable():
            if self._stop_requested:
                break
            if task.assigned_role is None:
                continue
            dispatch_key = (task.task_id, task.status)
            if dispatch_key in self._dispatched:
                continue
            record = self.supervisor.records.get(
                chatroom_id=task.chatroom_id,
                role=task.assigned_role,
            )
            if record is not None and record.state == AgentProcessState.CRASHED:
                logger.warning(
                    "Not respawning crashed %s agent for %s/%s; stop it to clear the record",
                    record.tool,
                    task.chatroom_id,
                    task.assigned_role,
                )
                self._dispatched.add(dispatch_key)
                continue
            self._dispatch(task, poll)
        return poll

    def _dispatch(self, task: TaskView, poll: DaemonPollSummary) -> None:
        role = task.assigned_role or ""
        context = PromptContext(
            chatroom_id=task.chatroom_id,
            role=role,
            team_roles=self.settings.agents.team_roles,
            task=task,
        )
        try:
            result = self.supervisor.spawn(
                chatroom_id=task.chatroom_id,
                role=role,
                tool=self.settings.agents.tool_for(role),
                role_prompt=self.prompts.role_prompt(context),
                initial_message=self.prompts.initial_message(context),
                working_dir=self.settings.agents.working_dir,
                model=self.settings.agents.model_for(role),
            )
        except SpawnError as error:
            poll.spawn_failures += 1
            logger.error("Could not spawn %s for task %s: %s", role, task.task_id, error)
            if not error.transient:
                self._dispatched.add((task.task_id, task.status))
            return
        except (UnknownToolError, UnsupportedCapabilityError) as error:
            poll.spawn_failures += 1
            logger.error("Could not spawn %s for task %s: %s", role, task.task_id, error)
            self._dispatched.add((task.task_id, task.status))
            return
        except SQLAlchemyError as error:
            # Left undispatched so the next poll retries it.
            poll.spawn_failures += 1
            logger.error(
                "Could not record %s agent for task %s: %s",
                role,
                task.task_id,
                error,
            )
            return

        self._dispatched.add((task.task_id, task.status))
        if result.reused:
            poll.reused += 1
        else:
            poll.spawned += 1

    def request_stop(self, *, signal_name: str) -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        installed = True
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def stop_daemon(
    pid_file: DaemonPidFile,
    *,
    grace_seconds: float,
    kill_wait_seconds: float,
) -> tuple[StopOutcome, int | None]:
    """Stop a running daemon: SIGTERM, bounded wait, SIGKILL.

    Returns the outcome and the PID that was signalled. Raises
    ``ProcessTerminationError`` if the daemon survives SIGKILL.
    """

    pid = pid_file.running_pid()
    if pid is None:
        return StopOutcome.NOT_RUNNING, None
    outcome = terminate_process(
        pid,
        grace_seconds=grace_seconds,
        kill_wait_seconds=kill_wait_seconds,
        process_group=False,
    )
    # A SIGKILLed daemon cannot clean up after itself.
    if not is_pid_alive(pid):
        pid_file.path.unlink(missing_ok=True)
    return outcome, pid


def configure_daemon_logging(log_file: Path, *, level: int = logging.INFO) -> None:
    """Console plus file logging for the long-lived daemon process only."""

    log_file.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_file, encoding="utf-8", delay=True),
        ],
    )
