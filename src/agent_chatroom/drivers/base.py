"""Shared driver interface for external agent CLI tools."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from pathlib import Path
from typing import IO, ClassVar

from agent_chatroom.errors import SpawnError, UnsupportedCapabilityError
from agent_chatroom.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AgentCapabilities:
    """Static feature flags a driver declares; callers check them before acting."""

    session_persistence: bool = False
    abort: bool = False
    model_selection: bool = False
    compaction: bool = False
    event_streaming: bool = False
    message_injection: bool = False
    dynamic_model_discovery: bool = False

    def supports(self, capability: str) -> bool:
        if capability not in CAPABILITY_NAMES:
            raise ValueError(f"Unknown capability: {capability!r}")
        return bool(getattr(self, capability))

    def enabled(self) -> tuple[str, ...]:
        return tuple(name for name, value in asdict(self).items() if value)


CAPABILITY_NAMES = tuple(item.name for item in fields(AgentCapabilities))


@dataclass(slots=True)
class AgentStartOptions:
    """Everything a driver needs to launch one agent for one role."""

    chatroom_id: str
    role: str
    role_prompt: str
    initial_message: str
    working_dir: Path
    model: str | None = None
    log_path: Path | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ProcessHandle:
    """A launched agent process plus the resources tied to its lifetime."""

    pid: int
    tool: str
    popen: subprocess.Popen[str]
    started_at: datetime
    log_path: Path | None = None
    cleanup_paths: list[Path] = field(default_factory=list)
    _log_handle: IO[str] | None = None

    def poll(self) -> int | None:
        return self.popen.poll()

    def release(self) -> None:
        """Drop temp files and close the log handle once the process is gone."""

        for path in self.cleanup_paths:
            path.unlink(missing_ok=True)
        self.cleanup_paths.clear()
        if self._log_handle is not None:
            self._log_handle.close()
            self._log_handle = None


def build_combined_prompt(role_prompt: str, initial_message: str) -> str:
    return f"{role_prompt}\n\n{initial_message}"


class ProcessDriver:
    """Base for drivers that run an agent tool as a local child process.

    Subclasses declare ``tool``, ``command`` and ``capabilities`` and build the
    argument list. Children always start in a new session so the supervisor
    can signal the whole process group.
    """

    tool: ClassVar[str]
    display_name: ClassVar[str]
    command: ClassVar[str]
    capabilities: ClassVar[AgentCapabilities] = AgentCapabilities()
    static_models: ClassVar[tuple[str, ...]] = ()
    prompt_via_stdin: ClassVar[bool] = True

    def build_args(self, options: AgentStartOptions, *, prompt_file: Path | None) -> list[str]:
        raise NotImplementedError

    def prepare_prompt_file(self, prompt: str) -> Path | None:
        """Materialize the prompt on disk for tools that read it from a file."""

        return None

    def require(self, capability: str) -> None:
        if not self.capabilities.supports(capability):
            raise UnsupportedCapabilityError(tool=self.tool, capability=capability)

    def is_installed(self) -> bool:
        return shutil.which(self.command) is not None

    def list_models(self) -> list[str]:
        """Models this tool accepts for ``--model``; never calls out without discovery."""

        if self.capabilities.dynamic_model_discovery:
            return self.discover_models()
        return list(self.static_models)

    def discover_models(self) -> list[str]:
        raise NotImplementedError

    def start(self, options: AgentStartOptions) -> ProcessHandle:
        """Launch the agent; returns as soon as the OS has started the process image."""

        if options.model is not None:
            self.require("model_selection")
        if not options.working_dir.is_dir():
            raise SpawnError(
                f"Working directory does not exist: {options.working_dir}",
                tool=self.tool,
                transient=False,
            )

        prompt = build_combined_prompt(options.role_prompt, options.initial_message)
        prompt_file = self.prepare_prompt_file(prompt)
        cleanup_paths = [prompt_file] if prompt_file is not None else []
        run_args = self.build_args(options, prompt_file=prompt_file)

        env = os.environ.copy()
        env.update(options.env)
        env["AGENT_CHATROOM_CHATROOM_ID"] = options.chatroom_id
        env["AGENT_CHATROOM_ROLE"] = options.role
        env["AGENT_CHATROOM_TOOL"] = self.tool

        log_handle: IO[str] | None = None
        if options.log_path is not None:
            options.log_path.parent.mkdir(parents=True, exist_ok=True)
            log_handle = options.log_path.open("a", encoding="utf-8")

        try:
            popen = subprocess.Popen(  # noqa: S603
                run_args,
                cwd=options.working_dir,
                env=env,
                stdin=subprocess.PIPE if self.prompt_via_stdin else subprocess.DEVNULL,
                stdout=log_handle if log_handle is not None else subprocess.DEVNULL,
                stderr=subprocess.STDOUT if log_handle is not None else subprocess.DEVNULL,
                text=True,
                start_new_session=True,
            )
        except FileNotFoundError as error:
            _discard(cleanup_paths, log_handle)
            raise SpawnError(
                f"Agent tool {self.tool!r} command not found: {run_args[0]}",
                tool=self.tool,
                transient=False,
            ) from error
        except OSError as error:
            _discard(cleanup_paths, log_handle)
            raise SpawnError(
                f"Agent tool {self.tool!r} failed to start: {error}",
                tool=self.tool,
                transient=True,
            ) from error

        if self.prompt_via_stdin and popen.stdin is not None:
            threading.Thread(
                target=_feed_stdin,
                args=(popen.stdin, prompt, popen.pid),
                name=f"stdin-{popen.pid}",
                daemon=True,
            ).start()

        logger.info(
            "Started %s agent for %s/%s (pid=%d, model=%s)",
            self.tool,
            options.chatroom_id,
            options.role,
            popen.pid,
            options.model or "default",
        )
        return ProcessHandle(
            pid=popen.pid,
            tool=self.tool,
            popen=popen,
            started_at=utc_now(),
            log_path=options.log_path,
            cleanup_paths=cleanup_paths,
            _log_handle=log_handle,
        )


def _feed_stdin(stream: IO[str], prompt: str, pid: int) -> None:
    try:
        stream.write(prompt)
        stream.close()
    except (BrokenPipeError, ValueError):
        logger.warning("Agent process %d closed stdin before reading the prompt", pid)


def _discard(paths: list[Path], log_handle: IO[str] | None) -> None:
    for path in paths:
        path.unlink(missing_ok=True)
    if log_handle is not None:
        log_handle.close()
