"""Lookup from tool identifier to driver instance."""

from __future__ import annotations

from collections.abc import Iterable
from types import MappingProxyType

from agent_chatroom.drivers.base import AgentCapabilities, ProcessDriver
from agent_chatroom.drivers.tools import ClaudeDriver, CursorDriver, OpenCodeDriver
from agent_chatroom.errors import UnknownToolError


class DriverRegistry:
    """Fixed tool -> driver mapping, built once per host process.

    There is no global instance: the runtime context owns one, and tests
    build their own with whatever drivers they need.
    """

    def __init__(self, drivers: Iterable[ProcessDriver]) -> None:
        mapping: dict[str, ProcessDriver] = {}
        for driver in drivers:
            if driver.tool in mapping:
                raise ValueError(f"Duplicate driver for tool {driver.tool!r}")
            mapping[driver.tool] = driver
        self._drivers = MappingProxyType(mapping)

    def get(self, tool: str) -> ProcessDriver:
        try:
            return self._drivers[tool]
        except KeyError as error:
            raise UnknownToolError(tool, known=self.tools()) from error

    def all(self) -> list[ProcessDriver]:
        return list(self._drivers.values())

    def tools(self) -> tuple[str, ...]:
        return tuple(self._drivers)

    def capabilities(self, tool: str) -> AgentCapabilities:
        return self.get(tool).capabilities

    def detect_available(self) -> list[str]:
        """Tools whose executable is on PATH."""

        return [driver.tool for driver in self._drivers.values() if driver.is_installed()]


def build_default_registry() -> DriverRegistry:
    return DriverRegistry([OpenCodeDriver(), ClaudeDriver(), CursorDriver()])
