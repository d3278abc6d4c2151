from __future__ import annotations

from pathlib import Path
from typing import Sequence
import json

import pytest

from instance_manager.commands import CommandResult, CommandRunner
from instance_manager.config import InfrastructureConfig
from instance_manager.discovery import ResourceDiscovery, ResourceType
from instance_manager.errors import ToolNotFoundError


class FakeRunner(CommandRunner):
    """Answers listing commands from canned stdout keyed by the first two argv items."""

    def __init__(self, outputs: dict[tuple[str, ...], str], missing: Sequence[str] = ()) -> None:
        super().__init__()
        self.outputs = outputs
        self.missing = set(missing)
        self.calls: list[list[str]] = []

    def run(self, args: Sequence[str]) -> CommandResult:
        argv = list(args)
        self.calls.append(argv)
        if argv[0] in self.missing:
            raise ToolNotFoundError(argv[0])
        for prefix, stdout in self.outputs.items():
            if tuple(argv[: len(prefix)]) == prefix:
                return CommandResult(args=argv, returncode=0, stdout=stdout)
        return CommandResult(args=argv, returncode=1, stderr="no server running")


DOCKER_PS = "\n".join(
    [
        "agentqa-0-db\tabc123\trunning",
        "agentqa-1-vectorstore\tdef456\texited",
        "pocketcoach-agentqa-2-api\tfff000\trunning",
        "someone-else\t999999\trunning",
    ]
)
TMUX_LS = "\n".join(
    [
        "agentqa-0-api: 1 windows (created Mon Jan  1 10:00:00 2024)",
        "agentqa-3-tunnel: 2 windows (created Mon Jan  1 10:05:00 2024)",
        "personal: 3 windows (created Mon Jan  1 09:00:00 2024)",
    ]
)
COMPOSE_LS = json.dumps(
    [
        {"Name": "agentqa-1-vectorstore", "Status": "running(3)", "ConfigFiles": "/tmp/compose.yml"},
        {"Name": "pocketcoach-milvus-agentqa-4", "Status": "exited(3)", "ConfigFiles": "/tmp/old.yml"},
        {"Name": "unrelated", "Status": "running(1)", "ConfigFiles": "/tmp/x.yml"},
    ]
)
PGREP = "\n".join(["4321 frpc -c /tmp/agentqa-0-tunnel.toml", "1000 frpc -c /tmp/agentqa-2-tunnel.toml"])


def _runner() -> FakeRunner:
    return FakeRunner(
        {
            ("docker", "ps"): DOCKER_PS,
            ("tmux", "ls"): TMUX_LS,
            ("docker", "compose", "ls"): COMPOSE_LS,
            ("pgrep",): PGREP,
        }
    )


def _discovery(tmp_path: Path, runner: CommandRunner, **kwargs: object) -> ResourceDiscovery:
    return ResourceDiscovery(InfrastructureConfig(state_dir=tmp_path), runner, own_pid=lambda: 1000, **kwargs)


def test_discover_finds_current_and_legacy_resources(tmp_path: Path) -> None:
    (tmp_path / "instance-0").mkdir()
    (tmp_path / "instance-3").mkdir()
    (tmp_path / "instances.json").write_text("{}", encoding="utf-8")
    (tmp_path / "notes").mkdir()

    found = _discovery(tmp_path, _runner()).discover()

    assert [item.name for item in found.containers] == [
        "agentqa-0-db",
        "agentqa-1-vectorstore",
        "pocketcoach-agentqa-2-api",
    ]
    assert [item.instance_id for item in found.containers] == [0, 1, 2]
    assert found.containers[1].status == "exited"
    assert [item.name for item in found.sessions] == ["agentqa-0-api", "agentqa-3-tunnel"]
    assert [item.name for item in found.compose_projects] == ["agentqa-1-vectorstore", "pocketcoach-milvus-agentqa-4"]
    assert [(item.identifier, item.instance_id) for item in found.processes] == [("4321", 0)]
    assert [item.name for item in found.state_paths] == ["instance-0", "instance-3"]
    assert found.total == 3 + 2 + 2 + 1 + 2


def test_discover_filters_by_instance(tmp_path: Path) -> None:
    (tmp_path / "instance-0").mkdir()

    found = _discovery(tmp_path, _runner()).discover(0)

    assert {item.type for item in found.all()} == {
        ResourceType.CONTAINER,
        ResourceType.SESSION,
        ResourceType.PROCESS,
        ResourceType.STATE_PATH,
    }
    assert all(item.instance_id == 0 for item in found.all())


def test_failing_listing_commands_mean_nothing_found(tmp_path: Path) -> None:
    found = _discovery(tmp_path / "absent", FakeRunner({})).discover()

    assert found.total == 0


def test_missing_tools_are_skipped_by_default(tmp_path: Path) -> None:
    runner = FakeRunner({("pgrep",): PGREP}, missing=["docker", "tmux"])

    found = _discovery(tmp_path, runner).discover()

    assert found.total == 1


def test_missing_tools_raise_when_not_skipping(tmp_path: Path) -> None:
    runner = FakeRunner({}, missing=["tmux"])

    with pytest.raises(ToolNotFoundError) as excinfo:
        _discovery(tmp_path, runner, skip_missing_tools=False).discover()
    assert excinfo.value.tool == "tmux"


def test_unparseable_compose_output_is_ignored(tmp_path: Path) -> None:
    runner = FakeRunner({("docker", "compose", "ls"): "not json"})

    assert _discovery(tmp_path, runner).discover_compose_projects() == []
