"""Teardown of discovered instance resources."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional
import shutil

import structlog
from pydantic import BaseModel, Field

from .commands import CommandResult, CommandRunner
from .config import InfrastructureConfig, check_instance_id, validate_identifier
from .discovery import DiscoveredResource, DiscoveryResult, ResourceDiscovery
from .errors import InfrastructureError
from .registry import InstanceRegistry

LOGGER = structlog.get_logger("agentqa.cleanup")


class CleanupResult(BaseModel):
    dry_run: bool = False
    instance_id: Optional[int] = None
    sessions_killed: int = 0
    processes_killed: int = 0
    compose_projects_removed: int = 0
    containers_removed: int = 0
    state_paths_removed: int = 0
    registry_entries_removed: int = 0
    errors: list[str] = Field(default_factory=list)

    @property
    def total_removed(self) -> int:
        return (
            self.sessions_killed
            + self.processes_killed
            + self.compose_projects_removed
            + self.containers_removed
            + self.state_paths_removed
            + self.registry_entries_removed
        )


class ResourceCleaner:
    """Removes resources found by discovery, in port-holder-first order.

    Sessions and tunnel processes go first (they hold ports), then compose
    projects, containers, state directories and finally registry entries.
    One resource failing is recorded in ``errors`` and never stops the rest.
    """

    def __init__(
        self,
        config: Optional[InfrastructureConfig] = None,
        *,
        registry: Optional[InstanceRegistry] = None,
        discovery: Optional[ResourceDiscovery] = None,
        runner: Optional[CommandRunner] = None,
        remove_tree: Callable[[Path], None] = shutil.rmtree,
    ) -> None:
        self.config = config or InfrastructureConfig()
        self.runner = runner or CommandRunner()
        self.registry = registry or InstanceRegistry(self.config)
        self.discovery = discovery or ResourceDiscovery(self.config, self.runner)
        self._remove_tree = remove_tree

    def cleanup_all(self, *, dry_run: bool = False) -> CleanupResult:
        found = self.discovery.discover()
        result = self._cleanup(found, CleanupResult(dry_run=dry_run))
        if dry_run:
            result.registry_entries_removed = len(self.registry.list_instances())
        else:
            result.registry_entries_removed = self.registry.clear()
        self._log(result)
        return result

    def cleanup_instance(self, instance_id: int, *, dry_run: bool = False) -> CleanupResult:
        check_instance_id(instance_id, self.config)
        found = self.discovery.discover(instance_id)
        result = self._cleanup(found, CleanupResult(dry_run=dry_run, instance_id=instance_id))
        if dry_run:
            result.registry_entries_removed = int(self.registry.get(instance_id) is not None)
        else:
            result.registry_entries_removed = int(self.registry.release(instance_id))
        self._log(result)
        return result

    def _cleanup(self, found: DiscoveryResult, result: CleanupResult) -> CleanupResult:
        steps: list[tuple[list[DiscoveredResource], str, Callable[[DiscoveredResource], None]]] = [
            (found.sessions, "sessions_killed", self._kill_session),
            (found.processes, "processes_killed", self._kill_process),
            (found.compose_projects, "compose_projects_removed", self._remove_compose_project),
            (found.containers, "containers_removed", self._remove_container),
            (sorted(found.state_paths, key=lambda item: len(item.identifier), reverse=True),
             "state_paths_removed", self._remove_state_path),
        ]
        for resources, counter, action in steps:
            for resource in resources:
                if not result.dry_run:
                    try:
                        action(resource)
                    except (InfrastructureError, OSError) as exc:
                        result.errors.append(f"{resource.type.value} {resource.name}: {exc}")
                        LOGGER.warning("cleanup_resource_failed", resource=resource.name, error=str(exc))
                        continue
                setattr(result, counter, getattr(result, counter) + 1)
        return result

    def _kill_session(self, resource: DiscoveredResource) -> None:
        name = validate_identifier(resource.name, "session name")
        self._check(self.runner.run(["tmux", "kill-session", "-t", name]), f"kill tmux session {name}")

    def _kill_process(self, resource: DiscoveredResource) -> None:
        self.runner.terminate(int(resource.identifier))

    def _remove_compose_project(self, resource: DiscoveredResource) -> None:
        name = validate_identifier(resource.name, "compose project")
        self._check(
            self.runner.run(["docker", "compose", "-p", name, "down", "--remove-orphans"]),
            f"stop compose project {name}",
        )

    def _remove_container(self, resource: DiscoveredResource) -> None:
        name = validate_identifier(resource.name, "container name")
        if resource.status == "running":
            self._check(self.runner.run(["docker", "stop", name]), f"stop container {name}")
        self._check(self.runner.run(["docker", "rm", "-f", name]), f"remove container {name}")

    def _remove_state_path(self, resource: DiscoveredResource) -> None:
        path = Path(resource.identifier)
        if path.is_dir():
            self._remove_tree(path)
        elif path.exists():
            path.unlink()

    @staticmethod
    def _check(outcome: CommandResult, action: str) -> None:
        if not outcome.ok:
            raise InfrastructureError(f"Failed to {action}: {outcome.stderr.strip() or outcome.returncode}")

    @staticmethod
    def _log(result: CleanupResult) -> None:
        LOGGER.info(
            "cleanup_finished",
            instance_id=result.instance_id,
            dry_run=result.dry_run,
            removed=result.total_removed,
            errors=len(result.errors),
        )
