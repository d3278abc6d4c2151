"""Exception types raised by the scenario runner."""

from __future__ import annotations


class AgentQAError(Exception):
    """Base class for all scenario runner errors."""


class ConfigError(AgentQAError):
    """Invalid run configuration, raised before any scenario starts."""


class AdapterError(AgentQAError):
    """An agent or database collaborator rejected a call."""


class StepTimeoutError(AdapterError, TimeoutError):
    """A chat call or polling wait exceeded its time budget."""
