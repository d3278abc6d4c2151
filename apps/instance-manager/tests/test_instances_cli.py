from __future__ import annotations

from pathlib import Path
import json
import os

from typer.testing import CliRunner

from instance_manager.config import InfrastructureConfig
from instance_manager.main import app
from instance_manager.registry import InstanceRegistry

runner = CliRunner()
DEAD_PID = 999_999_999


def _seed(state_dir: Path, *owners: int) -> None:
    registry = InstanceRegistry(InfrastructureConfig(state_dir=state_dir))
    for owner in owners:
        registry.acquire(owner_pid=owner)


def test_list_and_available_report_registry_state(tmp_path: Path) -> None:
    _seed(tmp_path, os.getpid(), DEAD_PID)

    listed = runner.invoke(app, ["list", "--state-dir", str(tmp_path), "--output-format", "json"])
    available = runner.invoke(app, ["available", "--state-dir", str(tmp_path), "--output-format", "json"])

    assert listed.exit_code == 0, listed.output
    rows = json.loads(listed.stdout)
    assert [(row["id"], row["stale"]) for row in rows] == [(0, False), (1, True)]
    assert rows[1]["ports"]["api"] == 4003
    assert available.exit_code == 0, available.output
    assert json.loads(available.stdout) == {"available": 4, "max_instances": 5}


def test_plain_list_without_instances(tmp_path: Path) -> None:
    result = runner.invoke(app, ["list", "--state-dir", str(tmp_path), "--output-format", "plain"])

    assert result.exit_code == 0
    assert "No registered instances" in result.stdout


def test_clean_stale_drops_dead_owners(tmp_path: Path) -> None:
    _seed(tmp_path, os.getpid(), DEAD_PID)

    result = runner.invoke(app, ["clean-stale", "--state-dir", str(tmp_path), "--output-format", "json"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout) == {"removed": [1]}
    remaining = InstanceRegistry(InfrastructureConfig(state_dir=tmp_path)).list_instances()
    assert [record.id for record in remaining] == [0]


def test_teardown_rejects_out_of_range_instance(tmp_path: Path) -> None:
    result = runner.invoke(app, ["teardown", "--instance", "42", "--state-dir", str(tmp_path)])

    assert result.exit_code == 2


def test_corrupt_registry_exits_with_error(tmp_path: Path) -> None:
    (tmp_path / "instances.json").write_text("[broken", encoding="utf-8")

    result = runner.invoke(app, ["available", "--state-dir", str(tmp_path), "--output-format", "plain"])

    assert result.exit_code == 2
