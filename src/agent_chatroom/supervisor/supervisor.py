"""Owns the agent processes spawned on this machine."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError

from agent_chatroom.drivers.base import AgentStartOptions, ProcessHandle
from agent_chatroom.drivers.registry import DriverRegistry
from agent_chatroom.errors import ProcessTerminationError, UnsupportedCapabilityError
from agent_chatroom.supervisor.models import (
    AgentProcess,
    AgentProcessState,
    ProcessRecordView,
    ReconcileSummary,
    SpawnResult,
    StopOutcome,
    StopResult,
)
from agent_chatroom.supervisor.process import is_pid_alive, terminate_process
from agent_chatroom.supervisor.records import ProcessRecordStore

logger = logging.getLogger(__name__)

RecordKey = tuple[str, str]


@dataclass(slots=True)
class _LiveProcess:
    chatroom_id: str
    role: str
    tool: str
    pid: int
    started_at: datetime
    state: AgentProcessState
    model: str | None = None
    handle: ProcessHandle | None = None

    def exit_code(self) -> int | None:
        if self.handle is None:
            return None
        return self.handle.poll()

    def has_exited(self) -> bool:
        if self.handle is not None:
            return self.handle.poll() is not None
        return not is_pid_alive(self.pid)

    def release(self) -> None:
        if self.handle is not None:
            self.handle.release()

    def snapshot(self) -> AgentProcess:
        return AgentProcess(
            chatroom_id=self.chatroom_id,
            role=self.role,
            tool=self.tool,
            pid=self.pid,
            state=self.state,
            started_at=self.started_at,
            model=self.model,
            exit_code=self.exit_code(),
            owned=self.handle is not None,
            alive=not self.has_exited(),
        )


class AgentSupervisor:
    """Spawn, stop, abort and watch agent processes keyed by ``(chatroom_id, role)``.

    The supervisor is the only writer of process records. It knows nothing
    about task statuses: callers decide what a crash or an abort means for
    the task the agent was working on.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        registry: DriverRegistry,
        records: ProcessRecordStore,
        supervisor_id: str,
        log_dir: Path | None = None,
        stop_grace_seconds: float = 1.0,
        kill_wait_seconds: float = 2.0,
    ) -> None:
        self.registry = registry
        self.records = records
        self.supervisor_id = supervisor_id
        self.log_dir = log_dir
        self.stop_grace_seconds = stop_grace_seconds
        self.kill_wait_seconds = kill_wait_seconds
        self._processes: dict[RecordKey, _LiveProcess] = {}
        self._locks: dict[RecordKey, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def spawn(  # noqa: PLR0913
        self,
        *,
        chatroom_id: str,
        role: str,
        tool: str,
        role_prompt: str,
        initial_message: str,
        working_dir: Path,
        model: str | None = None,
    ) -> SpawnResult:
        """Start an agent for a role, or return the one already running for it."""

        key = (chatroom_id, role)
        with self._record_lock(key):
            live = self._processes.get(key)
            if live is not None:
                if not live.has_exited():
                    return SpawnResult(process=live.snapshot(), reused=True)
                self._handle_exit(key, live)

            adopted = self._adopt_if_running(key)
            if adopted is not None:
                return SpawnResult(process=adopted.snapshot(), reused=True)

            driver = self.registry.get(tool)
            options = AgentStartOptions(
                chatroom_id=chatroom_id,
                role=role,
                role_prompt=role_prompt,
                initial_message=initial_message,
                working_dir=working_dir,
                model=model,
                log_path=self._log_path(chatroom_id, role),
            )
            handle = driver.start(options)
            live = _LiveProcess(
                chatroom_id=chatroom_id,
                role=role,
                tool=tool,
                pid=handle.pid,
                started_at=handle.started_at,
                state=AgentProcessState.STARTING,
                model=model,
                handle=handle,
            )
            try:
                self.records.upsert(
                    chatroom_id=chatroom_id,
                    role=role,
                    pid=handle.pid,
                    tool=tool,
                    supervisor_id=self.supervisor_id,
                    model=model,
                    working_dir=str(working_dir),
                )
            except SQLAlchemyError:
                logger.error(
                    "Could not persist process record for %s/%s; stopping pid %d",
                    chatroom_id,
                    role,
                    handle.pid,
                )
                self._terminate(live)
                live.release()
                raise
            live.state = AgentProcessState.RUNNING
            self._processes[key] = live
            return SpawnResult(process=live.snapshot(), reused=False)

    def stop(self, *, chatroom_id: str, role: str) -> StopResult:
        """Graceful-then-forced stop; a no-op for anything not running."""

        key = (chatroom_id, role)
        with self._record_lock(key):
            return self._stop_locked(key)

    def abort(self, *, chatroom_id: str, role: str) -> StopResult:
        """Interrupt the agent's current work on tools that support it.

        Uses the same termination sequence as ``stop``. The task the agent
        was working on is left exactly as it is.
        """

        key = (chatroom_id, role)
        with self._record_lock(key):
            live = self._processes.get(key)
            record = self.records.get(chatroom_id=chatroom_id, role=role)
            tool = live.tool if live is not None else record.tool if record is not None else None
            if tool is None:
                return StopResult(
                    chatroom_id=chatroom_id,
                    role=role,
                    outcome=StopOutcome.NOT_RUNNING,
                )
            if not self.registry.capabilities(tool).abort:
                raise UnsupportedCapabilityError(tool=tool, capability="abort")
            logger.info("Aborting %s agent for %s/%s", tool, chatroom_id, role)
            return self._stop_locked(key)

    def status(self, *, chatroom_id: str | None = None) -> list[AgentProcess]:
        """Live processes plus persisted records, including other supervisors' agents."""

        snapshots: dict[RecordKey, AgentProcess] = {}
        for record in self.records.list_records(chatroom_id=chatroom_id):
            snapshots[(record.chatroom_id, record.role)] = AgentProcess(
                chatroom_id=record.chatroom_id,
                role=record.role,
                tool=record.tool,
                pid=record.pid,
                state=record.state,
                started_at=record.started_at,
                model=record.model,
                exit_code=record.exit_code,
                alive=record.state == AgentProcessState.RUNNING and is_pid_alive(record.pid),
            )
        for key, live in list(self._processes.items()):
            if chatroom_id is None or key[0] == chatroom_id:
                snapshots[key] = live.snapshot()
        return [snapshots[key] for key in sorted(snapshots)]

    def poll_exits(self) -> list[AgentProcess]:
        """Detect agents that exited without being asked to; no respawn happens here."""

        exited: list[AgentProcess] = []
        for key in list(self._processes):
            with self._record_lock(key):
                live = self._processes.get(key)
                if live is None or not live.has_exited():
                    continue
                exited.append(self._handle_exit(key, live))
        return exited

    def reconcile(self) -> ReconcileSummary:
        """Adopt live PIDs from persisted records and drop records of dead ones."""

        summary = ReconcileSummary()
        for record in self.records.list_records():
            key = (record.chatroom_id, record.role)
            with self._record_lock(key):
                if key in self._processes:
                    continue
                if record.state == AgentProcessState.CRASHED:
                    summary.crashed.append(record)
                    continue
                if is_pid_alive(record.pid):
                    if self._adopt(record) is not None:
                        summary.adopted.append(record)
                    else:
                        summary.skipped.append(record)
                    continue
                if self.records.delete(
                    chatroom_id=record.chatroom_id,
                    role=record.role,
                    pid=record.pid,
                ):
                    summary.stale_removed.append(record)
                    logger.info(
                        "Removed stale record %s/%s (pid %d no longer running)",
                        record.chatroom_id,
                        record.role,
                        record.pid,
                    )
        return summary

    def stop_all(self) -> list[StopResult]:
        results: list[StopResult] = []
        for chatroom_id, role in list(self._processes):
            try:
                results.append(self.stop(chatroom_id=chatroom_id, role=role))
            except ProcessTerminationError as error:
                logger.error("Failed to stop %s/%s: %s", chatroom_id, role, error)
        return results

    def _stop_locked(self, key: RecordKey) -> StopResult:
        chatroom_id, role = key
        live = self._processes.get(key)
        if live is None:
            record = self.records.get(chatroom_id=chatroom_id, role=role)
            if record is None:
                return StopResult(
                    chatroom_id=chatroom_id,
                    role=role,
                    outcome=StopOutcome.NOT_RUNNING,
                )
            if record.state == AgentProcessState.CRASHED or not is_pid_alive(record.pid):
                removed = self.records.delete(chatroom_id=chatroom_id, role=role, pid=record.pid)
                return StopResult(
                    chatroom_id=chatroom_id,
                    role=role,
                    outcome=StopOutcome.ALREADY_STOPPED,
                    pid=record.pid,
                    exit_code=record.exit_code,
                    record_removed=removed,
                )
            live = _LiveProcess(
                chatroom_id=chatroom_id,
                role=role,
                tool=record.tool,
                pid=record.pid,
                started_at=record.started_at,
                state=AgentProcessState.RUNNING,
                model=record.model,
            )

        live.state = AgentProcessState.STOPPING
        try:
            outcome = self._terminate(live)
        except ProcessTerminationError:
            self._processes.pop(key, None)
            live.state = AgentProcessState.CRASHED
            self.records.mark_crashed(
                chatroom_id=chatroom_id,
                role=role,
                pid=live.pid,
                exit_code=None,
            )
            live.release()
            raise

        live.state = AgentProcessState.STOPPED
        exit_code = live.exit_code()
        self._processes.pop(key, None)
        live.release()
        removed = self.records.delete(chatroom_id=chatroom_id, role=role, pid=live.pid)
        logger.info(
            "Stopped %s agent for %s/%s (pid=%d, outcome=%s)",
            live.tool,
            chatroom_id,
            role,
            live.pid,
            outcome.value,
        )
        return StopResult(
            chatroom_id=chatroom_id,
            role=role,
            outcome=outcome,
            pid=live.pid,
            exit_code=exit_code,
            record_removed=removed,
        )

    def _terminate(self, live: _LiveProcess) -> StopOutcome:
        return terminate_process(
            live.pid,
            grace_seconds=self.stop_grace_seconds,
            kill_wait_seconds=self.kill_wait_seconds,
            popen=live.handle.popen if live.handle is not None else None,
        )

    def _handle_exit(self, key: RecordKey, live: _LiveProcess) -> AgentProcess:
        exit_code = live.exit_code()
        self._processes.pop(key, None)
        live.release()
        chatroom_id, role = key
        if exit_code == 0:
            live.state = AgentProcessState.STOPPED
            self.records.delete(chatroom_id=chatroom_id, role=role, pid=live.pid)
            logger.info(
                "%s agent for %s/%s exited cleanly (pid=%d)",
                live.tool,
                chatroom_id,
                role,
                live.pid,
            )
        else:
            live.state = AgentProcessState.CRASHED
            self.records.mark_crashed(
                chatroom_id=chatroom_id,
                role=role,
                pid=live.pid,
                exit_code=exit_code,
            )
            logger.warning(
                "%s agent for %s/%s crashed (pid=%d, exit_code=%s)",
                live.tool,
                chatroom_id,
                role,
                live.pid,
                exit_code,
            )
        snapshot = live.snapshot()
        snapshot.exit_code = exit_code
        snapshot.alive = False
        return snapshot

    def _adopt_if_running(self, key: RecordKey) -> _LiveProcess | None:
        record = self.records.get(chatroom_id=key[0], role=key[1])
        if record is None or record.state != AgentProcessState.RUNNING:
            return None
        if not is_pid_alive(record.pid):
            return None
        return self._adopt(record)

    def _adopt(self, record: ProcessRecordView) -> _LiveProcess | None:
        adopted = self.records.adopt(
            chatroom_id=record.chatroom_id,
            role=record.role,
            pid=record.pid,
            expected_supervisor_id=record.supervisor_id,
            supervisor_id=self.supervisor_id,
        )
        if not adopted:
            return None
        live = _LiveProcess(
            chatroom_id=record.chatroom_id,
            role=record.role,
            tool=record.tool,
            pid=record.pid,
            started_at=record.started_at,
            state=AgentProcessState.RUNNING,
            model=record.model,
        )
        self._processes[(record.chatroom_id, record.role)] = live
        logger.info(
            "Adopted %s agent for %s/%s (pid=%d, previous owner=%s)",
            record.tool,
            record.chatroom_id,
            record.role,
            record.pid,
            record.supervisor_id or "-",
        )
        return live

    def _log_path(self, chatroom_id: str, role: str) -> Path | None:
        if self.log_dir is None:
            return None
        return self.log_dir / chatroom_id / f"{role}.log"

    @contextmanager
    def _record_lock(self, key: RecordKey) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            yield
