from __future__ import annotations

import stat
import subprocess
import tempfile
from pathlib import Path

import allure
import pytest

from agent_chatroom.drivers.base import (
    CAPABILITY_NAMES,
    AgentCapabilities,
    AgentStartOptions,
    build_combined_prompt,
)
from agent_chatroom.drivers.registry import DriverRegistry, build_default_registry
from agent_chatroom.drivers.tools import (
    OPENCODE_MODELS,
    ClaudeDriver,
    CursorDriver,
    OpenCodeDriver,
)
from agent_chatroom.errors import SpawnError, UnknownToolError, UnsupportedCapabilityError

pytestmark = [
    allure.epic("Agent Tools"),
    allure.feature("Drivers & Registry"),
]


def _options(tmp_path: Path, **overrides) -> AgentStartOptions:
    values = {
        "chatroom_id": "room",
        "role": "builder",
        "role_prompt": "You are the builder.",
        "initial_message": "Fix the bug.",
        "working_dir": tmp_path,
    }
    values.update(overrides)
    return AgentStartOptions(**values)


class _MissingCommandDriver(ClaudeDriver):
    tool = "missing"
    command = "agent-chatroom-missing-tool-for-tests"


class _MissingCursorDriver(CursorDriver):
    tool = "missing-cursor"
    command = "agent-chatroom-missing-cursor-for-tests"


def test_capabilities_are_static_and_queryable() -> None:
    assert OpenCodeDriver.capabilities.supports("abort")
    assert OpenCodeDriver.capabilities.supports("dynamic_model_discovery")
    assert not ClaudeDriver.capabilities.supports("abort")
    assert ClaudeDriver.capabilities.enabled() == ("model_selection",)
    assert CursorDriver.capabilities.enabled() == ()
    assert len(CAPABILITY_NAMES) == 7

    with pytest.raises(ValueError, match="Unknown capability"):
        AgentCapabilities().supports("teleport")


def test_combined_prompt_joins_role_prompt_and_message() -> None:
    assert build_combined_prompt("role", "message") == "role\n\nmessage"


def test_opencode_and_claude_args(tmp_path: Path) -> None:
    assert OpenCodeDriver().build_args(_options(tmp_path), prompt_file=None) == [
        "opencode",
        "run",
    ]
    assert OpenCodeDriver().build_args(
        _options(tmp_path, model="opencode/big-pickle"),
        prompt_file=None,
    ) == ["opencode", "run", "--model", "opencode/big-pickle"]
    assert ClaudeDriver().build_args(_options(tmp_path, model="sonnet"), prompt_file=None) == [
        "claude",
        "--model",
        "sonnet",
        "--print",
    ]


def test_static_model_list_makes_no_external_call(monkeypatch: pytest.MonkeyPatch) -> None:
    def _fail(*_args, **_kwargs):
        raise AssertionError("subprocess must not be called")

    monkeypatch.setattr(subprocess, "run", _fail)
    monkeypatch.setattr(subprocess, "Popen", _fail)

    assert ClaudeDriver().list_models() == []
    assert CursorDriver().list_models() == []


def test_opencode_discovery_falls_back_to_static_models(monkeypatch: pytest.MonkeyPatch) -> None:
    def _missing(*_args, **_kwargs):
        raise FileNotFoundError("opencode")

    monkeypatch.setattr(subprocess, "run", _missing)

    assert OpenCodeDriver().list_models() == list(OPENCODE_MODELS)


def test_opencode_discovery_parses_provider_model_lines(monkeypatch: pytest.MonkeyPatch) -> None:
    def _run(args, **_kwargs):
        return subprocess.CompletedProcess(
            args,
            0,
            stdout="Available models:\nanthropic/claude-sonnet\nopenai/gpt-5\n",
            stderr="",
        )

    monkeypatch.setattr(subprocess, "run", _run)

    assert OpenCodeDriver().list_models() == ["anthropic/claude-sonnet", "openai/gpt-5"]


def test_model_on_tool_without_model_selection_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(UnsupportedCapabilityError, match="model_selection"):
        CursorDriver().start(_options(tmp_path, model="gpt-5"))


def test_missing_command_is_a_permanent_spawn_error(tmp_path: Path) -> None:
    with pytest.raises(SpawnError) as error:
        _MissingCommandDriver().start(_options(tmp_path))

    assert error.value.transient is False
    assert error.value.tool == "missing"


def test_missing_working_dir_is_a_permanent_spawn_error(tmp_path: Path) -> None:
    with pytest.raises(SpawnError, match="Working directory") as error:
        ClaudeDriver().start(_options(tmp_path, working_dir=tmp_path / "nope"))

    assert error.value.transient is False


def test_cursor_prompt_file_is_private_and_passed_by_path() -> None:
    driver = CursorDriver()
    path = driver.prepare_prompt_file("secret prompt")
    try:
        assert path is not None
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        assert path.read_text(encoding="utf-8") == "secret prompt"
        assert path.name.startswith("chatroom-prompt-")
        assert driver.build_args(_options(Path(".")), prompt_file=path) == [
            "agent",
            "chat",
            "--file",
            str(path),
        ]
    finally:
        if path is not None:
            path.unlink(missing_ok=True)


def test_cursor_prompt_file_is_removed_when_spawn_fails(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    prompt_dir = tmp_path / "prompts"
    prompt_dir.mkdir()
    monkeypatch.setattr(tempfile, "gettempdir", lambda: str(prompt_dir))

    with pytest.raises(SpawnError):
        _MissingCursorDriver().start(_options(tmp_path))

    assert list(prompt_dir.iterdir()) == []


def test_registry_lookup_and_unknown_tool() -> None:
    registry = build_default_registry()

    assert registry.tools() == ("opencode", "claude", "cursor")
    assert isinstance(registry.get("cursor"), CursorDriver)
    assert registry.capabilities("opencode").abort

    with pytest.raises(UnknownToolError, match="Known tools: opencode, claude, cursor"):
        registry.get("vim")


def test_registries_are_independent_and_reject_duplicates() -> None:
    first = build_default_registry()
    second = DriverRegistry([ClaudeDriver()])

    assert first.get("claude") is not second.get("claude")
    assert second.tools() == ("claude",)

    with pytest.raises(ValueError, match="Duplicate driver"):
        DriverRegistry([ClaudeDriver(), ClaudeDriver()])


def test_detect_available_uses_path_lookup(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "agent_chatroom.drivers.base.shutil.which",
        lambda command: "/usr/bin/claude" if command == "claude" else None,
    )

    assert build_default_registry().detect_available() == ["claude"]
