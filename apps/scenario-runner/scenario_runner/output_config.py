"""Console output and log format selection shared by the agentqa CLIs."""

import os
from enum import Enum
from typing import Iterator, Literal


class OutputFormat(str, Enum):
    """How run progress is shown on the console."""
    AUTO = "auto"
    RICH = "rich"
    PLAIN = "plain"
    JSON = "json"


LogFormat = Literal["json", "console", "plain"]

ENV_VAR_NAME = "CONSOLE_OUTPUT_FORMAT"

_OUTPUT_VALUES = {member.value for member in OutputFormat}
_LOG_FORMATS: dict[str, LogFormat] = {
    "json": "json",
    "plain": "plain",
    "console": "console",
    "auto": "console",
    "rich": "console",
}


def _requested(cli_override: str | None) -> Iterator[str]:
    """Candidate values in priority order: CLI option, then the environment."""
    for candidate in (cli_override, os.environ.get(ENV_VAR_NAME)):
        if candidate:
            yield candidate.lower()


def get_output_format(cli_override: str | None = None) -> OutputFormat:
    """
    Resolve the console output format. Unknown values fall through to the next source.

    Args:
        cli_override: Value of the ``--output-format`` option, if given

    Returns:
        OutputFormat, ``AUTO`` when nothing valid was requested
    """
    for value in _requested(cli_override):
        if value in _OUTPUT_VALUES:
            return OutputFormat(value)
    return OutputFormat.AUTO


def get_log_format(cli_override: str | None = None) -> LogFormat:
    """Resolve the structlog renderer; auto and rich both map to the console renderer."""
    for value in _requested(cli_override):
        if value in _LOG_FORMATS:
            return _LOG_FORMATS[value]
    return "console"
