"""Persistent task store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from pathlib import Path
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from agent_chatroom.storage.alembic_runner import upgrade_head
from agent_chatroom.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_chatroom.storage.sqlmodel_models import ChatroomTask, ChatroomTaskEvent
from agent_chatroom.tasks.models import (
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskOrigin,
    TaskStatus,
    TaskView,
    TransitionPlan,
)
from agent_chatroom.tasks.state_machine import (
    ACTIONABLE_STATUSES,
    ACTIVE_CHAT_STATUSES,
    initial_status,
)


class TaskRepository:
    """Task persistence facade; every status change is a compare-and-swap."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Create a task in its origin's initial status at the back of the chatroom queue."""

        now = to_db_datetime(utc_now())
        task_id = payload.task_id or str(uuid4())
        status = initial_status(payload.origin)
        with Session(self.engine) as session:
            last_position = session.exec(
                select(func.max(col(ChatroomTask.queue_position))).where(
                    ChatroomTask.chatroom_id == payload.chatroom_id,
                ),
            ).one()
            row = ChatroomTask(
                task_id=task_id,
                chatroom_id=payload.chatroom_id,
                origin=payload.origin.value,
                status=status.value,
                assigned_role=payload.assigned_role,
                content=payload.content,
                queue_position=(last_position or 0) + 1,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                chatroom_id=payload.chatroom_id,
                event_type="created",
                status_from=None,
                status_to=status,
                actor_role=None,
                details={"origin": payload.origin.value, "assigned_role": payload.assigned_role},
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def read_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(ChatroomTask, task_id)
            return _to_task_view(row) if row is not None else None

    def compare_and_swap_status(
        self,
        *,
        task_id: str,
        plan: TransitionPlan,
        actor_role: str | None = None,
        claimed_by: str | None = None,
    ) -> TaskView | None:
        """Apply ``plan`` only if the task is still in ``plan.status_from``.

        Returns the updated task, or ``None`` when another writer changed the
        status first. The UPDATE is the first statement of the transaction so
        SQLite takes the write lock before any read snapshot exists.
        """

        now = to_db_datetime(utc_now())
        values: dict[str, object] = {
            "status": plan.status_to.value,
            "assigned_role": plan.assigned_role,
            "updated_at": now,
        }
        for stamp_field in plan.stamp_fields:
            values[stamp_field] = now
        if claimed_by is not None:
            values["claimed_by"] = claimed_by

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ChatroomTask)
                .where(
                    col(ChatroomTask.task_id) == task_id,
                    col(ChatroomTask.status) == plan.status_from.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            row = session.exec(select(ChatroomTask).where(ChatroomTask.task_id == task_id)).one()
            details: dict[str, object] = {}
            if plan.assigned_role is not None:
                details["assigned_role"] = plan.assigned_role
            if claimed_by is not None:
                details["claimed_by"] = claimed_by
            self._add_event(
                session=session,
                task_id=task_id,
                chatroom_id=row.chatroom_id,
                event_type=plan.trigger,
                status_from=plan.status_from,
                status_to=plan.status_to,
                actor_role=actor_role,
                details=details,
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def list_tasks(
        self,
        *,
        chatroom_id: str | None = None,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        with Session(self.engine) as session:
            query = select(ChatroomTask)
            if chatroom_id is not None:
                query = query.where(ChatroomTask.chatroom_id == chatroom_id)
            if status is not None:
                query = query.where(ChatroomTask.status == status.value)
            rows = session.exec(
                query.order_by(
                    col(ChatroomTask.chatroom_id).asc(),
                    col(ChatroomTask.queue_position).asc(),
                ).limit(limit),
            ).all()
            return [_to_task_view(row) for row in rows]

    def list_actionable(self, *, chatroom_id: str | None = None) -> list[TaskView]:
        """Tasks an agent should be working on, oldest first per chatroom."""

        with Session(self.engine) as session:
            query = select(ChatroomTask).where(
                col(ChatroomTask.status).in_([status.value for status in ACTIONABLE_STATUSES]),
            )
            if chatroom_id is not None:
                query = query.where(ChatroomTask.chatroom_id == chatroom_id)
            rows = session.exec(
                query.order_by(
                    col(ChatroomTask.chatroom_id).asc(),
                    col(ChatroomTask.queue_position).asc(),
                    col(ChatroomTask.created_at).asc(),
                ),
            ).all()
            return [_to_task_view(row) for row in rows]

    def has_active_chat_task(self, *, chatroom_id: str) -> bool:
        with Session(self.engine) as session:
            row = session.exec(
                select(ChatroomTask.task_id)
                .where(
                    ChatroomTask.chatroom_id == chatroom_id,
                    ChatroomTask.origin == TaskOrigin.CHAT.value,
                    col(ChatroomTask.status).in_(
                        [status.value for status in ACTIVE_CHAT_STATUSES],
                    ),
                )
                .limit(1),
            ).first()
            return row is not None

    def oldest_queued(self, *, chatroom_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ChatroomTask)
                .where(
                    ChatroomTask.chatroom_id == chatroom_id,
                    ChatroomTask.status == TaskStatus.QUEUED.value,
                )
                .order_by(
                    col(ChatroomTask.queue_position).asc(),
                    col(ChatroomTask.created_at).asc(),
                )
                .limit(1),
            ).first()
            return _to_task_view(row) if row is not None else None

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        with Session(self.engine) as session:
            row = session.get(ChatroomTask, task_id)
            if row is None:
                return None
            events = session.exec(
                select(ChatroomTaskEvent)
                .where(ChatroomTaskEvent.task_id == task_id)
                .order_by(col(ChatroomTaskEvent.id).asc()),
            ).all()
            return TaskDetails(
                task=_to_task_view(row),
                events=[_to_event_view(event) for event in events],
            )

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        chatroom_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        actor_role: str | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            ChatroomTaskEvent(
                task_id=task_id,
                chatroom_id=chatroom_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                actor_role=actor_role,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _to_task_view(row: ChatroomTask) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        chatroom_id=row.chatroom_id,
        origin=TaskOrigin(row.origin),
        status=TaskStatus(row.status),
        assigned_role=row.assigned_role,
        claimed_by=row.claimed_by,
        content=row.content,
        queue_position=row.queue_position,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        acknowledged_at=optional_utc(row.acknowledged_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
    )


def _to_event_view(row: ChatroomTaskEvent) -> TaskEventView:
    return TaskEventView(
        event_id=row.id or 0,
        task_id=row.task_id,
        event_type=row.event_type,
        status_from=TaskStatus(row.status_from) if row.status_from is not None else None,
        status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
        actor_role=row.actor_role,
        details=json.loads(row.details_json) if row.details_json else {},
        created_at=to_utc_aware_datetime(row.created_at),
    )
