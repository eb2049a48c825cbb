"""SQLModel ORM tables for the chatroom task store and agent process records."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class ChatroomTask(SQLModel, table=True):
    __tablename__ = "chatroom_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_chatroom_tasks_queue", "chatroom_id", "status", "queue_position"),
    )

    task_id: str = Field(primary_key=True)
    chatroom_id: str = Field(index=True)
    origin: str
    status: str = Field(index=True)
    assigned_role: str | None = Field(default=None, index=True)
    claimed_by: str | None = None
    content: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    queue_position: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    acknowledged_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )


class ChatroomTaskEvent(SQLModel, table=True):
    __tablename__ = "chatroom_task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_chatroom_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("chatroom_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    chatroom_id: str
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    actor_role: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentProcessRecord(SQLModel, table=True):
    __tablename__ = "agent_processes"  # type: ignore[bad-override]

    chatroom_id: str = Field(primary_key=True)
    role: str = Field(primary_key=True)
    pid: int
    tool: str
    state: str = Field(index=True)
    supervisor_id: str | None = None
    model: str | None = None
    working_dir: str | None = None
    exit_code: int | None = None
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
