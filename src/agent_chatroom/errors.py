"""Error taxonomy for task transitions, agent drivers and process supervision."""

from __future__ import annotations


class ChatroomError(RuntimeError):
    """Base class for domain errors surfaced to callers and the CLI."""

    retryable: bool = False


class TaskNotFoundError(ChatroomError):
    """Referenced task does not exist in the task store."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class IllegalTransitionError(ChatroomError):
    """Requested status is not reachable from the current one; the task is unchanged."""

    def __init__(
        self,
        message: str,
        *,
        task_id: str | None,
        current: str,
        requested: str,
        allowed: tuple[str, ...] = (),
    ) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.current = current
        self.requested = requested
        self.allowed = allowed


class ClaimConflictError(ChatroomError):
    """Compare-and-swap lost against a concurrent writer."""

    retryable = True

    def __init__(self, *, task_id: str, expected: str, actual: str | None) -> None:
        super().__init__(
            f"Task {task_id} is no longer {expected!r} (now {actual or 'missing'!r}).",
        )
        self.task_id = task_id
        self.expected = expected
        self.actual = actual


class UnknownToolError(ChatroomError):
    """Tool identifier has no registered driver."""

    def __init__(self, tool: str, *, known: tuple[str, ...] = ()) -> None:
        hint = f" Known tools: {', '.join(known)}." if known else ""
        super().__init__(f"Unknown agent tool: {tool!r}.{hint}")
        self.tool = tool
        self.known = known


class UnsupportedCapabilityError(ChatroomError):
    """Driver does not declare the capability an operation requires."""

    def __init__(self, *, tool: str, capability: str) -> None:
        super().__init__(f"Agent tool {tool!r} does not support {capability}.")
        self.tool = tool
        self.capability = capability


class SpawnError(ChatroomError):
    """Agent process could not be launched."""

    def __init__(self, message: str, *, tool: str, transient: bool) -> None:
        super().__init__(message)
        self.tool = tool
        self.transient = transient


class ProcessTerminationError(ChatroomError):
    """Neither the graceful nor the forced signal stopped the process."""

    def __init__(
        self,
        *,
        pid: int,
        waited_seconds: float = 0.0,
        reason: str | None = None,
    ) -> None:
        if reason is not None:
            message = f"Could not signal process {pid}: {reason}."
        else:
            message = f"Process {pid} is still alive {waited_seconds:.1f}s after SIGKILL."
        super().__init__(message)
        self.pid = pid
        self.waited_seconds = waited_seconds
        self.reason = reason
