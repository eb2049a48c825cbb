"""Pure task lifecycle rules: which status changes are legal, for which role.

Nothing here touches storage. The repository applies a ``TransitionPlan``
with a compare-and-swap on the current status, so a plan computed from a
stale read simply loses the race instead of corrupting the task.
"""

from __future__ import annotations

from types import MappingProxyType

from agent_chatroom.errors import IllegalTransitionError
from agent_chatroom.tasks.models import TaskOrigin, TaskStatus, TransitionPlan

USER_ROLE = "user"

# (origin, from) -> {to: trigger}
TRANSITIONS: MappingProxyType[tuple[TaskOrigin, TaskStatus], dict[TaskStatus, str]] = (
    MappingProxyType(
        {
            (TaskOrigin.CHAT, TaskStatus.QUEUED): {TaskStatus.PENDING: "promote"},
            (TaskOrigin.CHAT, TaskStatus.PENDING): {TaskStatus.ACKNOWLEDGED: "claim"},
            (TaskOrigin.CHAT, TaskStatus.ACKNOWLEDGED): {TaskStatus.IN_PROGRESS: "start"},
            (TaskOrigin.CHAT, TaskStatus.IN_PROGRESS): {TaskStatus.COMPLETED: "complete"},
            (TaskOrigin.BACKLOG, TaskStatus.BACKLOG): {
                TaskStatus.BACKLOG_ACKNOWLEDGED: "attach",
            },
            (TaskOrigin.BACKLOG, TaskStatus.BACKLOG_ACKNOWLEDGED): {
                TaskStatus.IN_PROGRESS: "claim",
            },
            (TaskOrigin.BACKLOG, TaskStatus.IN_PROGRESS): {
                TaskStatus.PENDING_USER_REVIEW: "complete",
            },
            (TaskOrigin.BACKLOG, TaskStatus.PENDING_USER_REVIEW): {
                TaskStatus.COMPLETED: "confirm",
                TaskStatus.CLOSED: "close",
            },
        },
    )
)

INITIAL_STATUS = MappingProxyType(
    {
        TaskOrigin.CHAT: TaskStatus.QUEUED,
        TaskOrigin.BACKLOG: TaskStatus.BACKLOG,
    },
)

ORIGIN_STATUSES = MappingProxyType(
    {
        TaskOrigin.CHAT: frozenset(
            {
                TaskStatus.QUEUED,
                TaskStatus.PENDING,
                TaskStatus.ACKNOWLEDGED,
                TaskStatus.IN_PROGRESS,
                TaskStatus.COMPLETED,
            },
        ),
        TaskOrigin.BACKLOG: frozenset(
            {
                TaskStatus.BACKLOG,
                TaskStatus.BACKLOG_ACKNOWLEDGED,
                TaskStatus.IN_PROGRESS,
                TaskStatus.PENDING_USER_REVIEW,
                TaskStatus.COMPLETED,
                TaskStatus.CLOSED,
            },
        ),
    },
)

CLAIMABLE_STATUS = MappingProxyType(
    {
        TaskOrigin.CHAT: TaskStatus.PENDING,
        TaskOrigin.BACKLOG: TaskStatus.BACKLOG_ACKNOWLEDGED,
    },
)

TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CLOSED})
ACTIONABLE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.BACKLOG_ACKNOWLEDGED})
ACTIVE_CHAT_STATUSES = frozenset(
    {TaskStatus.PENDING, TaskStatus.ACKNOWLEDGED, TaskStatus.IN_PROGRESS},
)

_ASSIGNED_ROLE_TRIGGERS = frozenset({"claim", "start", "complete"})
_USER_TRIGGERS = frozenset({"confirm", "close"})

_STAMPS: dict[TaskStatus, tuple[str, ...]] = {
    TaskStatus.ACKNOWLEDGED: ("acknowledged_at",),
    TaskStatus.BACKLOG_ACKNOWLEDGED: ("acknowledged_at",),
    TaskStatus.IN_PROGRESS: ("started_at",),
    TaskStatus.COMPLETED: ("completed_at",),
    TaskStatus.CLOSED: ("completed_at",),
}


def initial_status(origin: TaskOrigin) -> TaskStatus:
    return INITIAL_STATUS[origin]


def is_terminal(status: TaskStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_actionable(status: TaskStatus) -> bool:
    """Whether an agent of the assigned role should pick the task up in this status."""

    return status in ACTIONABLE_STATUSES


def allowed_targets(origin: TaskOrigin, status: TaskStatus) -> tuple[TaskStatus, ...]:
    return tuple(TRANSITIONS.get((origin, status), {}))


def plan_transition(  # noqa: PLR0913
    *,
    task_id: str | None,
    origin: TaskOrigin,
    current: TaskStatus,
    target: TaskStatus,
    assigned_role: str | None,
    actor_role: str | None = None,
    assign_role: str | None = None,
) -> TransitionPlan:
    """Validate one requested status change and describe how to apply it.

    ``actor_role`` is the role asking for the change; ``None`` means an
    operator or system caller that is not bound by role ownership.
    ``assign_role`` names the role to hand the task to when it becomes
    actionable. Raises ``IllegalTransitionError`` without side effects.
    """

    if current not in ORIGIN_STATUSES[origin]:
        raise IllegalTransitionError(
            f"Status {current.value!r} is not valid for {origin.value} tasks.",
            task_id=task_id,
            current=current.value,
            requested=target.value,
        )
    if is_terminal(current):
        raise IllegalTransitionError(
            f"Task is {current.value}; terminal tasks accept no further transitions.",
            task_id=task_id,
            current=current.value,
            requested=target.value,
        )

    edges = TRANSITIONS.get((origin, current), {})
    trigger = edges.get(target)
    allowed = tuple(status.value for status in edges)
    if trigger is None:
        raise IllegalTransitionError(
            f"Cannot move {origin.value} task from {current.value} to {target.value}; "
            f"allowed: {', '.join(allowed) or '-'}.",
            task_id=task_id,
            current=current.value,
            requested=target.value,
            allowed=allowed,
        )

    if trigger in _USER_TRIGGERS and actor_role is not None and actor_role != USER_ROLE:
        raise IllegalTransitionError(
            f"Only the {USER_ROLE} role can {trigger} a task awaiting review, "
            f"not {actor_role!r}.",
            task_id=task_id,
            current=current.value,
            requested=target.value,
            allowed=allowed,
        )
    if (
        trigger in _ASSIGNED_ROLE_TRIGGERS
        and actor_role is not None
        and assigned_role is not None
        and actor_role != assigned_role
    ):
        raise IllegalTransitionError(
            f"Task is assigned to {assigned_role!r}; {actor_role!r} cannot {trigger} it.",
            task_id=task_id,
            current=current.value,
            requested=target.value,
            allowed=allowed,
        )

    next_role = assigned_role
    if is_actionable(target):
        next_role = assign_role or assigned_role
        if next_role is None:
            raise IllegalTransitionError(
                f"Moving to {target.value} requires a role to assign the task to.",
                task_id=task_id,
                current=current.value,
                requested=target.value,
                allowed=allowed,
            )

    return TransitionPlan(
        trigger=trigger,
        status_from=current,
        status_to=target,
        assigned_role=next_role,
        stamp_fields=_STAMPS.get(target, ()),
    )
