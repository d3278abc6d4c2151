"""Exception types raised by the instance manager."""

from __future__ import annotations


class InfrastructureError(Exception):
    """Usage or environment mistake around test infrastructure."""


class InvalidIdentifierError(InfrastructureError, ValueError):
    pass


class InstanceOutOfRangeError(InfrastructureError, ValueError):
    pass


class NoInstanceAvailableError(InfrastructureError):
    pass


class ToolNotFoundError(InfrastructureError):
    def __init__(self, tool: str) -> None:
        super().__init__(f"Required tool '{tool}' is not installed or not on PATH")
        self.tool = tool
