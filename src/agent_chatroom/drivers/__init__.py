"""Agent tool drivers."""

from agent_chatroom.drivers.base import (
    AgentCapabilities,
    AgentStartOptions,
    ProcessDriver,
    ProcessHandle,
)
from agent_chatroom.drivers.registry import DriverRegistry, build_default_registry
from agent_chatroom.drivers.tools import ClaudeDriver, CursorDriver, OpenCodeDriver

__all__ = [
    "AgentCapabilities",
    "AgentStartOptions",
    "ClaudeDriver",
    "CursorDriver",
    "DriverRegistry",
    "OpenCodeDriver",
    "ProcessDriver",
    "ProcessHandle",
    "build_default_registry",
]
