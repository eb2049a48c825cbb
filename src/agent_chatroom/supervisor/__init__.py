"""Agent process supervision: spawn, stop, crash detection and restart reconciliation."""

from agent_chatroom.supervisor.models import (
    AgentProcess,
    AgentProcessState,
    ReconcileSummary,
    SpawnResult,
    StopOutcome,
    StopResult,
)
from agent_chatroom.supervisor.records import ProcessRecordStore
from agent_chatroom.supervisor.supervisor import AgentSupervisor

__all__ = [
    "AgentProcess",
    "AgentProcessState",
    "AgentSupervisor",
    "ProcessRecordStore",
    "ReconcileSummary",
    "SpawnResult",
    "StopOutcome",
    "StopResult",
]
