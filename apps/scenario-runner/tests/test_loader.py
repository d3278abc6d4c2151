from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from scenario_runner.assertions import match_field
from scenario_runner.config import RunnerSettings
from scenario_runner.context import ExecutionContext
from scenario_runner.errors import ConfigError
from scenario_runner.hooks import HookLoader, LifecycleHooks
from scenario_runner.loader import filter_scenarios, load_all, load_scenarios
from scenario_runner.models import ChatStep, SetupStep, VerifyStep, WaitStep


def _write(path: Path, data: object) -> Path:
    path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    return path


def test_load_scenario_file_with_every_step_kind(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "tasks.yaml",
        {
            "scenarios": [
                {
                    "id": "create-task",
                    "tags": ["smoke"],
                    "steps": [
                        {"setup": {"entity": "lists", "data": {"name": "Home"}, "as": "home"}},
                        {"chat": "add milk to $home.name", "tools": {"create_task": {"min": 1, "max": 2}}},
                        {"wait": {"seconds": 0.1}},
                        {"verify": {"tasks": [{"title": "milk", "fields": {"done": False}}]}},
                    ],
                },
                {"id": "second", "steps": []},
            ]
        },
    )

    scenarios = load_scenarios(path)

    assert [scenario.id for scenario in scenarios] == ["create-task", "second"]
    steps = scenarios[0].steps
    assert [type(step) for step in steps] == [SetupStep, ChatStep, WaitStep, VerifyStep]
    assert steps[0].setup.alias == "home"


def test_load_directory_and_filters(tmp_path: Path) -> None:
    _write(tmp_path / "a.yaml", {"id": "alpha", "tags": ["smoke"], "steps": []})
    _write(tmp_path / "b.yml", {"id": "beta", "tags": ["slow"], "steps": []})
    (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")

    scenarios = load_scenarios(tmp_path)

    assert [scenario.id for scenario in scenarios] == ["alpha", "beta"]
    assert [scenario.id for scenario in filter_scenarios(scenarios, tags=["slow"])] == ["beta"]
    assert [scenario.id for scenario in filter_scenarios(scenarios, ids=["alpha"])] == ["alpha"]


def test_duplicate_ids_are_rejected(tmp_path: Path) -> None:
    first = _write(tmp_path / "one.yaml", {"id": "same", "steps": []})
    second = _write(tmp_path / "two.yaml", {"id": "same", "steps": []})

    with pytest.raises(ConfigError, match="Duplicate scenario id"):
        load_all([first, second])


def test_invalid_scenarios_raise_config_error(tmp_path: Path) -> None:
    unknown_step = _write(tmp_path / "bad.yaml", {"id": "bad", "steps": [{"teleport": "x"}]})
    no_lookup = _write(tmp_path / "verify.yaml", {"id": "v", "steps": [{"verify": {"tasks": [{"fields": {}}]}}]})

    for path in (unknown_step, no_lookup, tmp_path / "missing.yaml"):
        with pytest.raises(ConfigError):
            load_scenarios(path)


def test_context_resolves_references() -> None:
    context = ExecutionContext(user_id="u-1")
    context.register_alias("task", "tasks", {"id": 7, "title": "Buy milk"})

    assert context.resolve("$task") == 7
    assert context.resolve("$task.title") == "Buy milk"
    assert context.resolve({"owner": "$userId", "ids": ["$task.id", "$unknown"]}) == {
        "owner": "u-1",
        "ids": [7, "$unknown"],
    }
    assert context.resolve("task $task.id for $user_id") == "task 7 for u-1"


@pytest.mark.parametrize(
    ("actual", "matcher", "expected"),
    [
        ("Buy milk", {"contains": "milk"}, True),
        (None, {"exists": False}, True),
        ("3", {"gte": 3, "lt": 5}, True),
        ("abc", {"matches": "^a"}, True),
        ("high", {"any_of": ["low", "medium"]}, False),
        ("true", True, True),
        ("2.0", 2, True),
        (1, 2, False),
    ],
)
def test_match_field(actual: object, matcher: object, expected: bool) -> None:
    assert match_field(actual, matcher)[0] is expected


def test_runner_settings_from_env() -> None:
    settings = RunnerSettings.from_env(
        {"AGENTQA_AGENT_URL": "http://agent:9000", "AGENTQA_CONCURRENCY": "8", "AGENTQA_RETRIES": "2"},
        concurrency=None,
        user_id="override",
    )

    assert settings.agent_url == "http://agent:9000"
    assert settings.concurrency == 8
    assert settings.retries == 2
    assert settings.user_id == "override"
    with pytest.raises(ConfigError):
        RunnerSettings.from_env({"AGENTQA_TIMEOUT": "soon"})


def test_hook_loader_accepts_factory_and_objects(tmp_path: Path) -> None:
    (tmp_path / "qa_hooks_sample.py").write_text(
        "from scenario_runner.hooks import LifecycleHooks\n"
        "calls = []\n"
        "def before_each(info, context):\n"
        "    calls.append(info.id)\n"
        "def build():\n"
        "    return LifecycleHooks(before_each=before_each)\n"
        "class Hooks:\n"
        "    before_each = staticmethod(before_each)\n",
        encoding="utf-8",
    )
    loader = HookLoader(search_root=tmp_path)

    from_factory = loader.load_hooks("qa_hooks_sample:build")
    from_class = loader.load_hooks("qa_hooks_sample:Hooks")
    from_other = loader.load_hooks("qa_hooks_sample:calls")

    assert isinstance(from_factory, LifecycleHooks)
    assert from_factory.before_each is not None
    assert from_class.before_each is not None
    assert from_other == LifecycleHooks()
    with pytest.raises(ConfigError):
        loader.resolve("qa_hooks_sample:missing")
    with pytest.raises(ConfigError):
        loader.resolve("no-colon")
