"""Task lifecycle operations: validate with the state machine, apply with compare-and-swap."""

from __future__ import annotations

import logging

from agent_chatroom.errors import ClaimConflictError, IllegalTransitionError, TaskNotFoundError
from agent_chatroom.tasks.models import (
    TaskCreate,
    TaskStatus,
    TaskView,
    TransitionResult,
)
from agent_chatroom.tasks.repository import TaskRepository
from agent_chatroom.tasks.state_machine import (
    CLAIMABLE_STATUS,
    TRANSITIONS,
    is_actionable,
    plan_transition,
)

logger = logging.getLogger(__name__)


class TaskService:
    """Single entry point for every task status change."""

    def __init__(self, repository: TaskRepository) -> None:
        self.repository = repository

    def create_task(self, payload: TaskCreate) -> TaskView:
        task = self.repository.create_task(payload)
        logger.info(
            "Created %s task %s in chatroom %s (%s)",
            task.origin.value,
            task.task_id,
            task.chatroom_id,
            task.status.value,
        )
        return task

    def transition(
        self,
        task_id: str,
        target: TaskStatus,
        *,
        actor_role: str | None = None,
        assign_role: str | None = None,
        claimed_by: str | None = None,
    ) -> TransitionResult:
        """Move a task to ``target``.

        Raises ``IllegalTransitionError`` when ``target`` is not the next
        status in the task's origin graph and ``ClaimConflictError`` when a
        concurrent writer moved the task between our read and our write.
        """

        return self._apply(
            self._require_task(task_id),
            target,
            actor_role=actor_role,
            assign_role=assign_role,
            claimed_by=claimed_by,
        )

    def claim(self, task_id: str, *, role: str, claimed_by: str | None = None) -> TransitionResult:
        """Exactly-once claim of an actionable task by its assigned role."""

        task = self._require_task(task_id)
        claimable = CLAIMABLE_STATUS[task.origin]
        if task.status != claimable:
            if task.claimed_by is not None:
                # Someone else's claim already landed before our read.
                raise ClaimConflictError(
                    task_id=task_id,
                    expected=claimable.value,
                    actual=task.status.value,
                )
            raise IllegalTransitionError(
                f"Task {task_id} is {task.status.value}; only {claimable.value} "
                f"{task.origin.value} tasks can be claimed.",
                task_id=task_id,
                current=task.status.value,
                requested="claim",
            )
        target = next(
            status
            for status, trigger in TRANSITIONS[(task.origin, claimable)].items()
            if trigger == "claim"
        )
        # The CAS below is checked against this read; a rival claim landing
        # after it loses us the swap instead of failing validation.
        return self._apply(
            task,
            target,
            actor_role=role,
            claimed_by=claimed_by or role,
        )

    def promote_next(self, chatroom_id: str, *, role: str) -> TransitionResult | None:
        """Promote the oldest queued chat task to pending when nothing else is active.

        Returns ``None`` when the chatroom already has an active chat task or
        nothing is queued. A concurrent promoter winning the race also yields
        ``None`` rather than an error.
        """

        if self.repository.has_active_chat_task(chatroom_id=chatroom_id):
            return None
        candidate = self.repository.oldest_queued(chatroom_id=chatroom_id)
        if candidate is None:
            return None
        try:
            return self._apply(candidate, TaskStatus.PENDING, assign_role=role)
        except ClaimConflictError:
            logger.info("Task %s was promoted concurrently", candidate.task_id)
            return None

    def _apply(
        self,
        task: TaskView,
        target: TaskStatus,
        *,
        actor_role: str | None = None,
        assign_role: str | None = None,
        claimed_by: str | None = None,
    ) -> TransitionResult:
        task_id = task.task_id
        plan = plan_transition(
            task_id=task_id,
            origin=task.origin,
            current=task.status,
            target=target,
            assigned_role=task.assigned_role,
            actor_role=actor_role,
            assign_role=assign_role,
        )
        updated = self.repository.compare_and_swap_status(
            task_id=task_id,
            plan=plan,
            actor_role=actor_role,
            claimed_by=claimed_by,
        )
        if updated is None:
            current = self.repository.read_task(task_id)
            raise ClaimConflictError(
                task_id=task_id,
                expected=plan.status_from.value,
                actual=current.status.value if current is not None else None,
            )

        logger.info(
            "Task %s %s: %s -> %s (role=%s)",
            task_id,
            plan.trigger,
            plan.status_from.value,
            plan.status_to.value,
            updated.assigned_role or "-",
        )
        return TransitionResult(
            task=updated,
            trigger=plan.trigger,
            status_from=plan.status_from,
            actionable_role=updated.assigned_role if is_actionable(updated.status) else None,
        )

    def _require_task(self, task_id: str) -> TaskView:
        task = self.repository.read_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task
