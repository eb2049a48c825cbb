"""Models for supervised agent processes and their persisted records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class AgentProcessState(str, Enum):
    """Per-process lifecycle as seen by the supervisor."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    CRASHED = "crashed"


class StopOutcome(str, Enum):
    """How a stop request ended."""

    TERMINATED = "terminated"
    KILLED = "killed"
    ALREADY_STOPPED = "already_stopped"
    NOT_RUNNING = "not_running"


@dataclass(slots=True)
class ProcessRecordView:
    """Persisted ``(chatroom_id, role)`` record that survives supervisor restarts."""

    chatroom_id: str
    role: str
    pid: int
    tool: str
    state: AgentProcessState
    supervisor_id: str | None
    model: str | None
    working_dir: str | None
    exit_code: int | None
    started_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class AgentProcess:
    """Point-in-time view of one agent process."""

    chatroom_id: str
    role: str
    tool: str
    pid: int | None
    state: AgentProcessState
    started_at: datetime | None = None
    model: str | None = None
    exit_code: int | None = None
    owned: bool = False
    alive: bool = False


@dataclass(slots=True)
class SpawnResult:
    process: AgentProcess
    reused: bool = False


@dataclass(slots=True)
class StopResult:
    chatroom_id: str
    role: str
    outcome: StopOutcome
    pid: int | None = None
    exit_code: int | None = None
    record_removed: bool = False


@dataclass(slots=True)
class ReconcileSummary:
    """What a freshly started supervisor found in the persisted records."""

    adopted: list[ProcessRecordView] = field(default_factory=list)
    stale_removed: list[ProcessRecordView] = field(default_factory=list)
    crashed: list[ProcessRecordView] = field(default_factory=list)
    skipped: list[ProcessRecordView] = field(default_factory=list)
