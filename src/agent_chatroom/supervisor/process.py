"""OS-level process primitives: liveness probe, bounded wait, two-phase termination."""

from __future__ import annotations

import logging
import os
import select
import signal
import subprocess
import time
from pathlib import Path

from agent_chatroom.errors import ProcessTerminationError
from agent_chatroom.supervisor.models import StopOutcome

logger = logging.getLogger(__name__)

_FALLBACK_POLL_SECONDS = 0.05


def is_pid_alive(pid: int | None) -> bool:
    """Signal-0 probe; zombies count as dead."""

    if pid is None or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else.
        return True
    return not _is_zombie(pid)


def wait_for_exit(
    pid: int,
    timeout: float,
    *,
    popen: subprocess.Popen[str] | None = None,
) -> bool:
    """Block until ``pid`` exits or ``timeout`` elapses; True when it exited.

    Owned children are reaped through ``Popen.wait``. Foreign PIDs (adopted
    agents, the daemon itself) are waited on through a pidfd where the
    kernel offers one, so the exit and the timer race inside ``select``.
    """

    if popen is not None:
        try:
            popen.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return False
        return True

    pidfd_open = getattr(os, "pidfd_open", None)
    if pidfd_open is not None:
        try:
            fd = pidfd_open(pid)
        except ProcessLookupError:
            return True
        except OSError as error:
            logger.debug("pidfd_open(%d) unavailable, polling instead: %s", pid, error)
        else:
            try:
                readable, _, _ = select.select([fd], [], [], max(0.0, timeout))
            finally:
                os.close(fd)
            return bool(readable) or not is_pid_alive(pid)

    deadline = time.monotonic() + timeout
    while is_pid_alive(pid):
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        time.sleep(min(_FALLBACK_POLL_SECONDS, remaining))
    return True


def terminate_process(
    pid: int,
    *,
    grace_seconds: float,
    kill_wait_seconds: float,
    popen: subprocess.Popen[str] | None = None,
    process_group: bool = True,
) -> StopOutcome:
    """SIGTERM, wait up to ``grace_seconds``, then SIGKILL and wait again.

    Raises ``ProcessTerminationError`` when the process outlives SIGKILL by
    ``kill_wait_seconds`` or when we may not signal it at all.
    """

    if popen is not None and popen.poll() is not None:
        return StopOutcome.ALREADY_STOPPED
    if not _send_signal(pid, signal.SIGTERM, process_group=process_group):
        return StopOutcome.ALREADY_STOPPED
    if wait_for_exit(pid, grace_seconds, popen=popen):
        return StopOutcome.TERMINATED

    logger.warning(
        "Process %d ignored SIGTERM for %.1fs; sending SIGKILL",
        pid,
        grace_seconds,
    )
    if not _send_signal(pid, signal.SIGKILL, process_group=process_group):
        return StopOutcome.TERMINATED
    if wait_for_exit(pid, kill_wait_seconds, popen=popen):
        return StopOutcome.KILLED
    raise ProcessTerminationError(pid=pid, waited_seconds=grace_seconds + kill_wait_seconds)


def _send_signal(pid: int, signum: signal.Signals, *, process_group: bool) -> bool:
    """Deliver ``signum``; False when the process is already gone.

    Raises ``ProcessTerminationError`` when we are not allowed to signal it.
    """

    try:
        if process_group:
            pgid = os.getpgid(pid)
            # Never signal our own group: that would take the supervisor down too.
            if pgid != os.getpgrp():
                os.killpg(pgid, signum)
                return True
        os.kill(pid, signum)
    except ProcessLookupError:
        return False
    except PermissionError as error:
        detail = error.strerror or "permission denied"
        raise ProcessTerminationError(
            pid=pid,
            reason=f"{signal.Signals(signum).name} refused: {detail}",
        ) from error
    return True


def _is_zombie(pid: int) -> bool:
    stat_path = Path(f"/proc/{pid}/stat")
    try:
        raw = stat_path.read_text(encoding="utf-8")
    except OSError:
        return False
    # Field 3, after the parenthesised command name which may contain spaces.
    _, _, tail = raw.rpartition(")")
    fields = tail.split()
    return bool(fields) and fields[0] == "Z"
