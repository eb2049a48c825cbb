"""Create chatroom task, task event and agent process tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "chatroom_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("chatroom_id", sa.String(), nullable=False),
        sa.Column("origin", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("assigned_role", sa.String(), nullable=True),
        sa.Column("claimed_by", sa.String(), nullable=True),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column("queue_position", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index(
        "idx_chatroom_tasks_queue",
        "chatroom_tasks",
        ["chatroom_id", "status", "queue_position"],
    )
    op.create_index("ix_chatroom_tasks_chatroom_id", "chatroom_tasks", ["chatroom_id"])
    op.create_index("ix_chatroom_tasks_status", "chatroom_tasks", ["status"])
    op.create_index("ix_chatroom_tasks_assigned_role", "chatroom_tasks", ["assigned_role"])

    op.create_table(
        "chatroom_task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("chatroom_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("actor_role", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["chatroom_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_chatroom_task_events_task_time",
        "chatroom_task_events",
        ["task_id", "created_at"],
    )
    op.create_index("ix_chatroom_task_events_task_id", "chatroom_task_events", ["task_id"])
    op.create_index("ix_chatroom_task_events_event_type", "chatroom_task_events", ["event_type"])

    op.create_table(
        "agent_processes",
        sa.Column("chatroom_id", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("pid", sa.Integer(), nullable=False),
        sa.Column("tool", sa.String(), nullable=False),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("supervisor_id", sa.String(), nullable=True),
        sa.Column("model", sa.String(), nullable=True),
        sa.Column("working_dir", sa.String(), nullable=True),
        sa.Column("exit_code", sa.Integer(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("chatroom_id", "role"),
    )
    op.create_index("ix_agent_processes_state", "agent_processes", ["state"])


def downgrade() -> None:
    op.drop_index("ix_agent_processes_state", table_name="agent_processes")
    op.drop_table("agent_processes")
    op.drop_index("ix_chatroom_task_events_event_type", table_name="chatroom_task_events")
    op.drop_index("ix_chatroom_task_events_task_id", table_name="chatroom_task_events")
    op.drop_index("idx_chatroom_task_events_task_time", table_name="chatroom_task_events")
    op.drop_table("chatroom_task_events")
    op.drop_index("ix_chatroom_tasks_assigned_role", table_name="chatroom_tasks")
    op.drop_index("ix_chatroom_tasks_status", table_name="chatroom_tasks")
    op.drop_index("ix_chatroom_tasks_chatroom_id", table_name="chatroom_tasks")
    op.drop_index("idx_chatroom_tasks_queue", table_name="chatroom_tasks")
    op.drop_table("chatroom_tasks")
