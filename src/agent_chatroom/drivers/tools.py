"""Concrete drivers for the supported agent CLI tools."""

from __future__ import annotations

import logging
import os
import subprocess
import tempfile
from pathlib import Path
from uuid import uuid4

from agent_chatroom.drivers.base import AgentCapabilities, AgentStartOptions, ProcessDriver

logger = logging.getLogger(__name__)

OPENCODE_MODELS = (
    "github-copilot/claude-sonnet-4.5",
    "github-copilot/claude-opus-4.6",
    "github-copilot/claude-opus-4.5",
    "github-copilot/gpt-5.2",
    "github-copilot/gpt-5.2-codex",
    "github-copilot/gpt-5.1-codex-max",
    "github-copilot/gemini-3-flash-preview",
    "github-copilot/claude-haiku-4.5",
    "opencode/big-pickle",
)


class OpenCodeDriver(ProcessDriver):
    """Headless ``opencode run`` with the prompt on stdin."""

    tool = "opencode"
    display_name = "OpenCode"
    command = "opencode"
    capabilities = AgentCapabilities(
        abort=True,
        model_selection=True,
        dynamic_model_discovery=True,
    )
    static_models = OPENCODE_MODELS
    discovery_timeout_seconds = 10.0

    def build_args(self, options: AgentStartOptions, *, prompt_file: Path | None) -> list[str]:
        args = [self.command, "run"]
        if options.model:
            args.extend(["--model", options.model])
        return args

    def discover_models(self) -> list[str]:
        try:
            completed = subprocess.run(  # noqa: S603
                [self.command, "models"],
                capture_output=True,
                text=True,
                timeout=self.discovery_timeout_seconds,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as error:
            logger.warning("opencode model discovery failed, using static list: %s", error)
            return list(self.static_models)
        if completed.returncode != 0:
            logger.warning(
                "opencode models exited with %d, using static list",
                completed.returncode,
            )
            return list(self.static_models)
        models = [line.strip() for line in completed.stdout.splitlines() if "/" in line]
        return models or list(self.static_models)


class ClaudeDriver(ProcessDriver):
    """Claude Code in ``--print`` mode with the prompt on stdin."""

    tool = "claude"
    display_name = "Claude Code"
    command = "claude"
    capabilities = AgentCapabilities(model_selection=True)

    def build_args(self, options: AgentStartOptions, *, prompt_file: Path | None) -> list[str]:
        args = [self.command]
        if options.model:
            args.extend(["--model", options.model])
        args.append("--print")
        return args


class CursorDriver(ProcessDriver):
    """Cursor ``agent chat`` reading the prompt from a private temp file."""

    tool = "cursor"
    display_name = "Cursor Agent"
    command = "agent"
    prompt_via_stdin = False

    def prepare_prompt_file(self, prompt: str) -> Path | None:
        path = Path(tempfile.gettempdir()) / f"chatroom-prompt-{uuid4()}.txt"
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(prompt)
        return path

    def build_args(self, options: AgentStartOptions, *, prompt_file: Path | None) -> list[str]:
        if prompt_file is None:
            raise ValueError("Cursor agent requires a prompt file.")
        return [self.command, "chat", "--file", str(prompt_file)]
