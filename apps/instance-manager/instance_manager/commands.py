"""Argument-vector subprocess execution and process termination."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Sequence
import os
import shutil
import signal
import subprocess
import time

import structlog

from .errors import ToolNotFoundError

LOGGER = structlog.get_logger("agentqa.commands")

DEFAULT_TIMEOUT = 30.0
KILL_GRACE_SECONDS = 0.5


@dataclass
class CommandResult:
    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def pid_alive(pid: int) -> bool:
    """Signal-0 liveness probe. A permission error means the process exists."""

    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class CommandRunner:
    """Runs external tools. Commands are always argument lists, never shell strings."""

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.timeout = timeout
        self._sleep = sleep

    def available(self, tool: str) -> bool:
        return shutil.which(tool) is not None

    def run(self, args: Sequence[str]) -> CommandResult:
        argv = [str(part) for part in args]
        LOGGER.debug("command_run", argv=argv)
        try:
            completed = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ToolNotFoundError(argv[0]) from exc
        except subprocess.TimeoutExpired as exc:
            return CommandResult(args=argv, returncode=124, stderr=f"timed out after {exc.timeout}s")
        return CommandResult(
            args=argv,
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )

    def terminate(self, pid: int) -> bool:
        """SIGTERM, then SIGKILL if still alive after a short grace period.

        Returns False when the process was already gone.
        """

        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            return False
        self._sleep(KILL_GRACE_SECONDS)
        if pid_alive(pid):
            try:
                os.kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
        return True
