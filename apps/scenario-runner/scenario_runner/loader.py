"""Scenario loading utilities."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

import yaml
from pydantic import ValidationError

from .errors import ConfigError
from .models import Scenario

SCENARIO_SUFFIXES = {".yaml", ".yml"}


def load_scenarios(path: Path) -> list[Scenario]:
    """Load and validate scenarios from a YAML file or a directory of them."""

    if path.is_dir():
        files = sorted(item for item in path.iterdir() if item.suffix.lower() in SCENARIO_SUFFIXES)
        return _unique([scenario for item in files for scenario in _load_file(item)])
    if not path.exists():
        raise ConfigError(f"Scenario file not found: {path}")
    return _unique(_load_file(path))


def load_all(paths: Iterable[Path]) -> list[Scenario]:
    return _unique([scenario for path in paths for scenario in load_scenarios(path)])


def filter_scenarios(
    scenarios: list[Scenario],
    *,
    ids: Iterable[str] = (),
    tags: Iterable[str] = (),
) -> list[Scenario]:
    wanted_ids = set(ids)
    wanted_tags = set(tags)
    selected = scenarios
    if wanted_ids:
        selected = [scenario for scenario in selected if scenario.id in wanted_ids]
    if wanted_tags:
        selected = [scenario for scenario in selected if wanted_tags.intersection(scenario.tags)]
    return selected


def _load_file(path: Path) -> list[Scenario]:
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ConfigError(f"Scenario file {path} must contain a mapping")
    entries = data["scenarios"] if "scenarios" in data else [data]
    if not isinstance(entries, list):
        raise ConfigError(f"'scenarios' in {path} must be a list")
    try:
        return [Scenario.model_validate(entry) for entry in entries]
    except ValidationError as exc:
        raise ConfigError(f"Invalid scenario in {path}: {exc}") from exc


def _unique(scenarios: list[Scenario]) -> list[Scenario]:
    seen: set[str] = set()
    for scenario in scenarios:
        if scenario.id in seen:
            raise ConfigError(f"Duplicate scenario id: {scenario.id}")
        seen.add(scenario.id)
    return scenarios
