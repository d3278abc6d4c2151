"""Discovery of OS-level resources that follow the instance naming convention.

Everything here works from what the OS reports (docker, tmux, compose, the
process table and the state directory) and never consults the registry, so
leftovers from a crashed run are still found.
"""

from __future__ import annotations

from enum import Enum
from typing import Callable, Optional
import json
import os
import re

import structlog
from pydantic import BaseModel, Field

from .commands import CommandRunner
from .config import (
    LEGACY_COMPOSE_PREFIX,
    LEGACY_PREFIX,
    InfrastructureConfig,
    instance_pattern,
)
from .errors import ToolNotFoundError

LOGGER = structlog.get_logger("agentqa.discovery")

_TMUX_LINE = re.compile(r"^([^:]+):\s+(\d+)\s+windows?\s*(?:\(created\s+(.+?)\))?")
_STATE_DIR_PATTERN = re.compile(r"^instance-(\d+)$")


class ResourceType(str, Enum):
    CONTAINER = "container"
    SESSION = "tmux_session"
    COMPOSE_PROJECT = "compose_project"
    PROCESS = "process"
    STATE_PATH = "state_path"


class DiscoveredResource(BaseModel):
    type: ResourceType
    name: str
    identifier: str
    status: Optional[str] = None
    instance_id: Optional[int] = None


class DiscoveryResult(BaseModel):
    sessions: list[DiscoveredResource] = Field(default_factory=list)
    processes: list[DiscoveredResource] = Field(default_factory=list)
    compose_projects: list[DiscoveredResource] = Field(default_factory=list)
    containers: list[DiscoveredResource] = Field(default_factory=list)
    state_paths: list[DiscoveredResource] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.all())

    def all(self) -> list[DiscoveredResource]:
        return self.sessions + self.processes + self.compose_projects + self.containers + self.state_paths


class ResourceDiscovery:
    """Enumerates resources owned by test instances, current or legacy names."""

    def __init__(
        self,
        config: Optional[InfrastructureConfig] = None,
        runner: Optional[CommandRunner] = None,
        *,
        skip_missing_tools: bool = True,
        own_pid: Callable[[], int] = os.getpid,
    ) -> None:
        self.config = config or InfrastructureConfig()
        self.runner = runner or CommandRunner()
        self.skip_missing_tools = skip_missing_tools
        self._own_pid = own_pid
        self._instance_pattern = instance_pattern(self.config)
        self._name_prefixes = (f"{self.config.prefix}-", f"{LEGACY_PREFIX}-")
        self._compose_prefixes = (f"{self.config.prefix}-", LEGACY_COMPOSE_PREFIX)

    def discover(self, instance_id: Optional[int] = None) -> DiscoveryResult:
        result = DiscoveryResult(
            sessions=self.discover_sessions(),
            processes=self.discover_processes(),
            compose_projects=self.discover_compose_projects(),
            containers=self.discover_containers(),
            state_paths=self.discover_state_paths(),
        )
        if instance_id is not None:
            result = DiscoveryResult(
                **{
                    key: [item for item in getattr(result, key) if item.instance_id == instance_id]
                    for key in DiscoveryResult.model_fields
                }
            )
        LOGGER.debug("discovery_finished", instance_id=instance_id, total=result.total)
        return result

    def discover_containers(self) -> list[DiscoveredResource]:
        output = self._list(
            [
                "docker", "ps", "-a",
                "--filter", f"name={self.config.prefix}-",
                "--format", "{{.Names}}\t{{.ID}}\t{{.State}}",
            ]
        )
        found = []
        for line in output.splitlines():
            parts = line.strip().split("\t")
            if len(parts) < 2 or not parts[0].startswith(self._name_prefixes):
                continue
            found.append(
                DiscoveredResource(
                    type=ResourceType.CONTAINER,
                    name=parts[0],
                    identifier=parts[1],
                    status=parts[2] if len(parts) > 2 else None,
                    instance_id=self._instance_of(parts[0]),
                )
            )
        return found

    def discover_sessions(self) -> list[DiscoveredResource]:
        found = []
        for line in self._list(["tmux", "ls"]).splitlines():
            match = _TMUX_LINE.match(line.strip())
            if not match or not match.group(1).startswith(self._name_prefixes):
                continue
            name = match.group(1)
            found.append(
                DiscoveredResource(
                    type=ResourceType.SESSION,
                    name=name,
                    identifier=name,
                    status=f"{match.group(2)} windows",
                    instance_id=self._instance_of(name),
                )
            )
        return found

    def discover_compose_projects(self) -> list[DiscoveredResource]:
        output = self._list(["docker", "compose", "ls", "-a", "--format", "json"]).strip()
        if not output:
            return []
        try:
            projects = json.loads(output)
        except json.JSONDecodeError:
            LOGGER.warning("compose_list_unparseable", output=output[:200])
            return []
        found = []
        for project in projects if isinstance(projects, list) else []:
            name = str(project.get("Name", ""))
            if not name.startswith(self._compose_prefixes):
                continue
            found.append(
                DiscoveredResource(
                    type=ResourceType.COMPOSE_PROJECT,
                    name=name,
                    identifier=str(project.get("ConfigFiles", "")),
                    status=project.get("Status"),
                    instance_id=self._instance_of(name),
                )
            )
        return found

    def discover_processes(self) -> list[DiscoveredResource]:
        own_pid = self._own_pid()
        found = []
        for line in self._list(["pgrep", "-af", f"frpc.*{self.config.prefix}"]).splitlines():
            pid_text, _, command = line.strip().partition(" ")
            if not pid_text.isdigit() or int(pid_text) == own_pid:
                continue
            found.append(
                DiscoveredResource(
                    type=ResourceType.PROCESS,
                    name=command,
                    identifier=pid_text,
                    instance_id=self._instance_of(command),
                )
            )
        return found

    def discover_state_paths(self) -> list[DiscoveredResource]:
        state_dir = self.config.state_dir
        if not state_dir.is_dir():
            return []
        found = []
        for path in sorted(state_dir.iterdir()):
            match = _STATE_DIR_PATTERN.match(path.name)
            if not match:
                continue
            found.append(
                DiscoveredResource(
                    type=ResourceType.STATE_PATH,
                    name=path.name,
                    identifier=str(path),
                    instance_id=int(match.group(1)),
                )
            )
        return found

    def _instance_of(self, name: str) -> Optional[int]:
        match = self._instance_pattern.search(name)
        return int(match.group(1)) if match else None

    def _list(self, argv: list[str]) -> str:
        """Run a listing command; a non-zero exit means nothing to list."""

        try:
            result = self.runner.run(argv)
        except ToolNotFoundError as exc:
            if not self.skip_missing_tools:
                raise
            LOGGER.warning("discovery_tool_missing", tool=exc.tool)
            return ""
        if not result.ok:
            LOGGER.debug("discovery_command_empty", argv=argv, returncode=result.returncode)
            return ""
        return result.stdout
