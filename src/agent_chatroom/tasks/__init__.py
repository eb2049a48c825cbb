"""Task lifecycle: origin-specific transition graphs over a compare-and-swap store."""

from agent_chatroom.tasks.models import (
    TaskCreate,
    TaskOrigin,
    TaskStatus,
    TaskView,
    TransitionResult,
)
from agent_chatroom.tasks.repository import TaskRepository
from agent_chatroom.tasks.service import TaskService

__all__ = [
    "TaskCreate",
    "TaskOrigin",
    "TaskRepository",
    "TaskService",
    "TaskStatus",
    "TaskView",
    "TransitionResult",
]
