"""Durable ``(chatroom_id, role) -> {pid, tool, startedAt}`` records for crash recovery."""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, col, select

from agent_chatroom.storage.alembic_runner import upgrade_head
from agent_chatroom.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_chatroom.storage.sqlmodel_models import AgentProcessRecord
from agent_chatroom.supervisor.models import AgentProcessState, ProcessRecordView


class ProcessRecordStore:
    """Each mutation is a single SQL statement, so it is atomic across supervisors."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def upsert(  # noqa: PLR0913
        self,
        *,
        chatroom_id: str,
        role: str,
        pid: int,
        tool: str,
        supervisor_id: str,
        model: str | None = None,
        working_dir: str | None = None,
    ) -> ProcessRecordView:
        """Insert or replace the record for a key with a freshly spawned process."""

        now = to_db_datetime(utc_now())
        values = {
            "pid": pid,
            "tool": tool,
            "state": AgentProcessState.RUNNING.value,
            "supervisor_id": supervisor_id,
            "model": model,
            "working_dir": working_dir,
            "exit_code": None,
            "started_at": now,
            "updated_at": now,
        }
        statement = sqlite_insert(AgentProcessRecord).values(
            chatroom_id=chatroom_id,
            role=role,
            **values,
        )
        statement = statement.on_conflict_do_update(
            index_elements=["chatroom_id", "role"],
            set_=values,
        )
        with Session(self.engine) as session:
            session.exec(statement)
            session.commit()
        record = self.get(chatroom_id=chatroom_id, role=role)
        if record is None:  # pragma: no cover - deleted between our write and read
            raise RuntimeError(f"Process record vanished after upsert: {chatroom_id}/{role}")
        return record

    def delete(self, *, chatroom_id: str, role: str, pid: int | None = None) -> bool:
        """Remove a record; with ``pid`` only if it still belongs to that process."""

        with Session(self.engine) as session:
            statement = sa_delete(AgentProcessRecord).where(
                col(AgentProcessRecord.chatroom_id) == chatroom_id,
                col(AgentProcessRecord.role) == role,
            )
            if pid is not None:
                statement = statement.where(col(AgentProcessRecord.pid) == pid)
            result = session.exec(statement)
            session.commit()
            return result.rowcount == 1

    def mark_crashed(
        self,
        *,
        chatroom_id: str,
        role: str,
        pid: int,
        exit_code: int | None,
    ) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AgentProcessRecord)
                .where(
                    col(AgentProcessRecord.chatroom_id) == chatroom_id,
                    col(AgentProcessRecord.role) == role,
                    col(AgentProcessRecord.pid) == pid,
                )
                .values(
                    state=AgentProcessState.CRASHED.value,
                    exit_code=exit_code,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def adopt(
        self,
        *,
        chatroom_id: str,
        role: str,
        pid: int,
        expected_supervisor_id: str | None,
        supervisor_id: str,
    ) -> bool:
        """Take ownership of a live record left by a previous supervisor instance.

        Compare-and-swap on ``supervisor_id`` so two supervisors starting at
        the same time cannot both adopt one process.
        """

        with Session(self.engine) as session:
            owner_column = col(AgentProcessRecord.supervisor_id)
            owner_matches = (
                owner_column.is_(None)
                if expected_supervisor_id is None
                else owner_column == expected_supervisor_id
            )
            result = session.exec(
                sa_update(AgentProcessRecord)
                .where(
                    col(AgentProcessRecord.chatroom_id) == chatroom_id,
                    col(AgentProcessRecord.role) == role,
                    col(AgentProcessRecord.pid) == pid,
                    col(AgentProcessRecord.state) == AgentProcessState.RUNNING.value,
                    owner_matches,
                )
                .values(
                    supervisor_id=supervisor_id,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def get(self, *, chatroom_id: str, role: str) -> ProcessRecordView | None:
        with Session(self.engine) as session:
            row = session.get(AgentProcessRecord, (chatroom_id, role))
            return _to_record_view(row) if row is not None else None

    def list_records(
        self,
        *,
        state: AgentProcessState | None = None,
        chatroom_id: str | None = None,
    ) -> list[ProcessRecordView]:
        with Session(self.engine) as session:
            query = select(AgentProcessRecord)
            if state is not None:
                query = query.where(AgentProcessRecord.state == state.value)
            if chatroom_id is not None:
                query = query.where(AgentProcessRecord.chatroom_id == chatroom_id)
            rows = session.exec(
                query.order_by(
                    col(AgentProcessRecord.chatroom_id).asc(),
                    col(AgentProcessRecord.role).asc(),
                ),
            ).all()
            return [_to_record_view(row) for row in rows]


def _to_record_view(row: AgentProcessRecord) -> ProcessRecordView:
    return ProcessRecordView(
        chatroom_id=row.chatroom_id,
        role=row.role,
        pid=row.pid,
        tool=row.tool,
        state=AgentProcessState(row.state),
        supervisor_id=row.supervisor_id,
        model=row.model,
        working_dir=row.working_dir,
        exit_code=row.exit_code,
        started_at=to_utc_aware_datetime(row.started_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
