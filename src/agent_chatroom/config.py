"""Runtime configuration for the chatroom task store, drivers and daemon."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_TEAM_ROLES = ("planner", "builder", "reviewer")


@dataclass(slots=True)
class DaemonSettings:
    """Supervisor daemon settings."""

    machine_id: str = "local"
    poll_interval_seconds: float = 2.0
    stop_grace_seconds: float = 1.0
    kill_wait_seconds: float = 2.0
    stop_agents_on_exit: bool = False


@dataclass(slots=True)
class AgentSettings:
    """Which tool and model each role runs with."""

    default_tool: str = "opencode"
    role_tools: dict[str, str] = field(default_factory=dict)
    role_models: dict[str, str] = field(default_factory=dict)
    team_roles: tuple[str, ...] = DEFAULT_TEAM_ROLES
    working_dir: Path = Path(".")

    def tool_for(self, role: str) -> str:
        return self.role_tools.get(role, self.default_tool)

    def model_for(self, role: str) -> str | None:
        return self.role_models.get(role)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_chatroom.db")
    state_dir: Path = Path("~/.agent-chatroom").expanduser()
    sqlite_busy_timeout_ms: int = 5_000
    daemon: DaemonSettings = field(default_factory=DaemonSettings)
    agents: AgentSettings = field(default_factory=AgentSettings)

    @property
    def pid_file(self) -> Path:
        return self.state_dir / "daemon.pid"

    @property
    def log_dir(self) -> Path:
        return self.state_dir / "logs"

    @classmethod
    def from_env(
        cls,
        db_path: Path | None = None,
        state_dir: Path | None = None,
    ) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("AGENT_CHATROOM_DB_PATH", ".agent_chatroom.db")),
            state_dir=state_dir
            or Path(os.getenv("AGENT_CHATROOM_STATE_DIR", "~/.agent-chatroom")).expanduser(),
            sqlite_busy_timeout_ms=int(os.getenv("AGENT_CHATROOM_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            daemon=DaemonSettings(
                machine_id=os.getenv("AGENT_CHATROOM_MACHINE_ID", "").strip()
                or socket.gethostname(),
                poll_interval_seconds=float(
                    os.getenv("AGENT_CHATROOM_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                stop_grace_seconds=float(os.getenv("AGENT_CHATROOM_STOP_GRACE_SECONDS", "1.0")),
                kill_wait_seconds=float(os.getenv("AGENT_CHATROOM_KILL_WAIT_SECONDS", "2.0")),
                stop_agents_on_exit=_env_bool("AGENT_CHATROOM_STOP_AGENTS_ON_EXIT", default=False),
            ),
            agents=AgentSettings(
                default_tool=os.getenv("AGENT_CHATROOM_DEFAULT_TOOL", "opencode").strip().lower(),
                role_tools={
                    role: tool.lower()
                    for role, tool in _env_mapping("AGENT_CHATROOM_ROLE_TOOLS").items()
                },
                role_models=_env_mapping("AGENT_CHATROOM_ROLE_MODELS"),
                team_roles=_env_csv("AGENT_CHATROOM_TEAM_ROLES") or DEFAULT_TEAM_ROLES,
                working_dir=Path(os.getenv("AGENT_CHATROOM_WORKING_DIR", ".")),
            ),
        )

    def validate(self, *, known_tools: tuple[str, ...] = ()) -> None:
        """Raise configuration error for values the daemon cannot run with."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("AGENT_CHATROOM_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.daemon.poll_interval_seconds <= 0:
            raise ValueError("AGENT_CHATROOM_POLL_INTERVAL_SECONDS must be > 0.")
        if self.daemon.stop_grace_seconds < 0:
            raise ValueError("AGENT_CHATROOM_STOP_GRACE_SECONDS must be >= 0.")
        if self.daemon.kill_wait_seconds <= 0:
            raise ValueError("AGENT_CHATROOM_KILL_WAIT_SECONDS must be > 0.")
        if not self.agents.team_roles:
            raise ValueError("AGENT_CHATROOM_TEAM_ROLES must name at least one role.")
        if not known_tools:
            return
        configured = {self.agents.default_tool, *self.agents.role_tools.values()}
        unknown = sorted(tool for tool in configured if tool not in known_tools)
        if unknown:
            raise ValueError(
                f"Unknown agent tool(s) configured: {', '.join(unknown)}. "
                f"Expected one of: {', '.join(known_tools)}.",
            )


def _env_csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_mapping(name: str) -> dict[str, str]:
    mapping: dict[str, str] = {}
    for token in _env_csv(name):
        if "=" not in token:
            raise ValueError(
                f"Invalid {name} entry: {token!r}. Expected format '<role>=<value>'.",
            )
        key, value = token.split("=", 1)
        key = key.strip()
        value = value.strip()
        if not key or not value:
            raise ValueError(f"Invalid {name} entry: {token!r}. Role and value are required.")
        mapping[key] = value
    return mapping


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
