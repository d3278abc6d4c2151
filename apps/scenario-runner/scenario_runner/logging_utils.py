"""Structured logging helpers shared by the agentqa CLIs."""

from __future__ import annotations

from io import StringIO
from typing import Any
import logging
import sys

import structlog
from rich.console import Console
from rich.text import Text

from .output_config import LogFormat

# Keys rendered right after the event name, in this order.
_LEADING_KEYS = ("scenario_id", "instance_id", "step", "status")
_HIDDEN_KEYS = {"color_message", "stack", "exception"}


class RichConsoleRenderer:
    """structlog renderer that colours level, event and key/value pairs with rich."""

    level_styles = {
        "debug": "dim cyan",
        "info": "cyan",
        "warning": "yellow",
        "error": "bold red",
        "critical": "bold white on red",
    }

    def __init__(self, width: int = 200) -> None:
        self.width = width

    def __call__(self, logger: Any, name: str, event_dict: dict[str, Any]) -> str:
        timestamp = event_dict.pop("timestamp", "")
        level = event_dict.pop("level", "info")
        event = str(event_dict.pop("event", ""))

        text = Text()
        text.append(timestamp, style="dim white")
        text.append(" ")
        text.append(f"[{level:<8}]", style=self.level_styles.get(level, "white"))
        text.append(" ")
        text.append(event, style="bold white")
        if event_dict:
            text.append(" " * max(1, 28 - len(event)))

        leading = [key for key in _LEADING_KEYS if key in event_dict]
        rest = sorted(key for key in event_dict if key not in leading and key not in _HIDDEN_KEYS)
        keys = leading + rest
        for position, key in enumerate(keys):
            text.append(f"{key}=", style="dim white")
            text.append(str(event_dict[key]), style="bold bright_cyan" if key in leading else "bright_cyan")
            if position < len(keys) - 1:
                text.append(" ")

        buffer = StringIO()
        Console(file=buffer, force_terminal=True, width=self.width, legacy_windows=False).print(text, end="")
        return buffer.getvalue()


class StderrHandler(logging.StreamHandler):
    """Writes to whatever ``sys.stderr`` is when a record is emitted, not when logging was configured."""

    def __init__(self) -> None:
        logging.Handler.__init__(self)

    @property
    def stream(self) -> Any:
        return sys.stderr


def configure_logging(log_level: str, log_format: LogFormat = "console") -> structlog.stdlib.BoundLogger:
    """Configure structlog for the agentqa CLIs and return the root ``agentqa`` logger."""

    normalized_level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=normalized_level,
        handlers=[StderrHandler()],
        format="%(message)s",
        force=True,
    )

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
        structlog.processors.format_exc_info,
    ]
    if log_format == "console":
        processors.append(RichConsoleRenderer())
    elif log_format == "plain":
        processors.append(structlog.dev.ConsoleRenderer(colors=False))
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(normalized_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger("agentqa")
