from __future__ import annotations

from pathlib import Path
from typing import Optional

import pytest

from scenario_runner.adapters import AgentAdapter, InMemoryDatabase
from scenario_runner.errors import ConfigError
from scenario_runner.models import (
    AgentResponse,
    AssertionResult,
    CostBreakdown,
    Scenario,
    StepReport,
    TokenUsage,
    ToolCall,
)
from scenario_runner.multi_run import KeywordHallucinationDetector, MultiRunAggregator, compute_stats
from scenario_runner.pricing import ModelPrice, PriceTable
from scenario_runner.runner import ScenarioRunner


class FlakyAgent(AgentAdapter):
    """Skips the delete tool on the given occurrences of the delete request."""

    def __init__(self, broken_runs: set[int]) -> None:
        self.broken_runs = broken_runs
        self.delete_requests = 0

    def chat(
        self,
        message: str,
        *,
        user_id: str,
        conversation_id: Optional[str] = None,
        max_tool_calls: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> AgentResponse:
        usage = TokenUsage(input_tokens=10, output_tokens=5, total_tokens=15)
        if message != "delete it":
            return AgentResponse(text="Here are your tasks", tool_calls=[ToolCall(name="list_tasks")], usage=usage)
        self.delete_requests += 1
        if self.delete_requests in self.broken_runs:
            return AgentResponse(text="I deleted the task for you.", usage=usage)
        return AgentResponse(text="I deleted the task.", tool_calls=[ToolCall(name="delete_task")], usage=usage)


def _scenario() -> Scenario:
    return Scenario.model_validate(
        {
            "id": "delete-flow",
            "steps": [
                {"label": "list", "chat": "show tasks", "tools": {"list_tasks": 1}},
                {"label": "delete", "chat": "delete it", "tools": {"delete_task": 1}},
            ],
        }
    )


def _aggregator(agent: AgentAdapter) -> MultiRunAggregator:
    return MultiRunAggregator(ScenarioRunner(agent=agent, database=InMemoryDatabase()))


def test_flaky_step_statistics_across_runs() -> None:
    aggregated = _aggregator(FlakyAgent(broken_runs={3})).run([_scenario()], runs=5)

    assert aggregated.runs_completed == 5
    assert aggregated.pass_count == 4
    assert aggregated.fail_count == 1
    assert aggregated.pass_rate == 80.0
    assert aggregated.is_flaky
    assert not aggregated.success

    list_step, delete_step = aggregated.steps
    assert (list_step.pass_count, list_step.pass_rate, list_step.is_flaky) == (5, 100.0, False)
    assert (delete_step.pass_count, delete_step.fail_count) == (4, 1)
    assert delete_step.pass_rate == 80.0
    assert delete_step.is_flaky
    assert delete_step.errors[0].message == "delete_task: expected 1 call(s), got 0"
    assert delete_step.errors[0].count == 1
    assert aggregated.total_tokens.mean == 30


def test_hallucination_is_recorded_for_claimed_action_without_tool() -> None:
    aggregated = _aggregator(FlakyAgent(broken_runs={2, 4})).run([_scenario()], runs=4)

    assert len(aggregated.hallucinations) == 1
    summary = aggregated.hallucinations[0]
    assert summary.step_index == 2
    assert summary.occurrences == 2
    assert summary.rate == 50.0
    assert [sample.run for sample in summary.samples] == [2, 4]
    assert summary.samples[0].keywords == ["deleted"]
    assert summary.samples[0].missing_tools == ["delete_task"]
    assert aggregated.steps[1].hallucination_rate == 50.0


def test_all_runs_passing_is_success() -> None:
    aggregated = _aggregator(FlakyAgent(broken_runs=set())).run([_scenario()], runs=3)

    assert aggregated.success
    assert not aggregated.is_flaky
    assert aggregated.hallucinations == []


def test_stop_after_failed_run_when_not_continuing() -> None:
    aggregated = _aggregator(FlakyAgent(broken_runs={2})).run([_scenario()], runs=5, continue_on_failure=False)

    assert aggregated.runs_requested == 5
    assert aggregated.runs_completed == 2
    assert not aggregated.success


def test_scenario_runs_field_is_the_default_count() -> None:
    scenario = _scenario().model_copy(update={"runs": 3})

    aggregated = _aggregator(FlakyAgent(broken_runs=set())).run([scenario])

    assert aggregated.runs_completed == 3


def test_multi_run_requires_exactly_one_scenario() -> None:
    aggregator = _aggregator(FlakyAgent(broken_runs=set()))

    with pytest.raises(ConfigError):
        aggregator.run([_scenario(), _scenario()], runs=2)
    with pytest.raises(ConfigError):
        aggregator.run([], runs=2)
    with pytest.raises(ConfigError):
        aggregator.run([_scenario()], runs=0)


def test_compute_stats_uses_population_std_dev() -> None:
    stats = compute_stats([1, 2, 3, 4])

    assert (stats.count, stats.mean, stats.median, stats.min, stats.max) == (4, 2.5, 2.5, 1, 4)
    assert stats.std_dev == 1.118
    assert compute_stats([]).count == 0


def test_detector_ignores_replies_without_action_words() -> None:
    step = StepReport(
        index=1,
        type="chat",
        status="failed",
        response_text="Sorry, I could not find that task.",
        assertions=[AssertionResult(kind="tool", name="delete_task", passed=False, actual=0)],
    )

    assert KeywordHallucinationDetector().detect(step, run=1) is None
    assert KeywordHallucinationDetector(["find"]).detect(step, run=1) is not None


class BilledAgent(AgentAdapter):
    """Replays one usage payload per run; ``None`` means the agent reported no usage."""

    def __init__(self, usages: list[Optional[TokenUsage]]) -> None:
        self.usages = list(usages)

    def chat(
        self,
        message: str,
        *,
        user_id: str,
        conversation_id: Optional[str] = None,
        max_tool_calls: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> AgentResponse:
        return AgentResponse(text="ok", usage=self.usages.pop(0))


def _single_chat() -> Scenario:
    return Scenario.model_validate({"id": "billed", "steps": [{"chat": "hello"}]})


def test_cost_statistics_skip_runs_without_usage_or_cost() -> None:
    agent = BilledAgent(
        [
            TokenUsage(
                input_tokens=100,
                output_tokens=20,
                total_tokens=120,
                cost=CostBreakdown(input_cost=0.0015, output_cost=0.0005, total_cost=0.002),
            ),
            None,
            TokenUsage(input_tokens=50, output_tokens=10, total_tokens=60),
            TokenUsage(
                input_tokens=300,
                output_tokens=60,
                total_tokens=360,
                cost=CostBreakdown(input_cost=0.003, output_cost=0.001, total_cost=0.004),
            ),
        ]
    )

    aggregated = _aggregator(agent).run([_single_chat()], runs=4)

    assert aggregated.cost is not None
    assert aggregated.cost.total_cost.count == 2
    assert aggregated.cost.total_cost.mean == 0.003
    assert (aggregated.cost.input_cost.min, aggregated.cost.input_cost.max) == (0.0015, 0.003)
    assert aggregated.total_tokens.count == 3
    assert aggregated.total_tokens.mean == 180


def test_cost_is_absent_when_no_run_reports_spend() -> None:
    agent = BilledAgent([None, TokenUsage(input_tokens=5, output_tokens=5, total_tokens=10)])

    aggregated = _aggregator(agent).run([_single_chat()], runs=2)

    assert aggregated.cost is None
    assert aggregated.total_tokens.count == 1


def test_price_table_estimates_cost_for_unpriced_usage() -> None:
    prices = PriceTable(models={"small-model": ModelPrice(input=3.0, output=15.0)})
    usage = TokenUsage(input_tokens=1000, output_tokens=200, total_tokens=1200, model="small-model")
    runner = ScenarioRunner(agent=BilledAgent([usage, usage]), database=InMemoryDatabase(), prices=prices)

    aggregated = MultiRunAggregator(runner).run([_single_chat()], runs=2)

    assert aggregated.cost is not None
    assert aggregated.cost.input_cost.mean == 0.003
    assert aggregated.cost.total_cost.mean == 0.006
    assert aggregated.reports[0].steps[0].usage.cost.output_cost == pytest.approx(0.003)
    assert prices.estimate(usage.model_copy(update={"model": "unknown"})) is None


def test_detector_can_require_an_uncalled_tool() -> None:
    over_called = StepReport(
        index=1,
        type="chat",
        status="failed",
        response_text="I deleted it.",
        assertions=[AssertionResult(kind="tool", name="delete_task", passed=False, expected=1, actual=2)],
    )

    found = KeywordHallucinationDetector().detect(over_called, run=1)
    assert found is not None
    assert found.missing_tools == []
    assert found.failed_tools == ["delete_task"]
    assert KeywordHallucinationDetector(require_missing_call=True).detect(over_called, run=1) is None


def test_price_table_from_file(tmp_path: Path) -> None:
    prices = tmp_path / "prices.yaml"
    prices.write_text("default: {input: 1.0, output: 2.0}\nmodels:\n  big: {input: 10.0}\n", encoding="utf-8")
    broken = tmp_path / "broken.yaml"
    broken.write_text("models: [not, a, mapping]\n", encoding="utf-8")

    table = PriceTable.from_file(prices)

    assert table.price_for("big") == ModelPrice(input=10.0)
    assert table.price_for("other") == ModelPrice(input=1.0, output=2.0)
    with pytest.raises(ConfigError):
        PriceTable.from_file(broken)
