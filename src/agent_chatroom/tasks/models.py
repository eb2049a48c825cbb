"""Domain models for chatroom tasks."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskOrigin(str, Enum):
    """Where a task came from; fixed at creation and selects the transition graph."""

    CHAT = "chat"
    BACKLOG = "backlog"


class TaskStatus(str, Enum):
    """Closed set of task lifecycle states across both origins."""

    BACKLOG = "backlog"
    QUEUED = "queued"
    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"
    IN_PROGRESS = "in_progress"
    BACKLOG_ACKNOWLEDGED = "backlog_acknowledged"
    PENDING_USER_REVIEW = "pending_user_review"
    COMPLETED = "completed"
    CLOSED = "closed"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    chatroom_id: str
    origin: TaskOrigin
    content: str = ""
    assigned_role: str | None = None
    task_id: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI, daemon and service logic."""

    task_id: str
    chatroom_id: str
    origin: TaskOrigin
    status: TaskStatus
    assigned_role: str | None
    claimed_by: str | None
    content: str
    queue_position: int
    created_at: datetime
    updated_at: datetime
    acknowledged_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    actor_role: str | None
    details: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class TaskDetails:
    """Task plus its full event history."""

    task: TaskView
    events: list[TaskEventView] = field(default_factory=list)


@dataclass(slots=True)
class TransitionPlan:
    """Validated transition, ready to be applied with compare-and-swap."""

    trigger: str
    status_from: TaskStatus
    status_to: TaskStatus
    assigned_role: str | None
    stamp_fields: tuple[str, ...] = ()


@dataclass(slots=True)
class TransitionResult:
    """Outcome of an applied transition.

    ``actionable_role`` is set when the new status is one an agent of that
    role should pick up; the supervisor reacts to it, the state machine never
    spawns anything itself.
    """

    task: TaskView
    trigger: str
    status_from: TaskStatus
    actionable_role: str | None = None
