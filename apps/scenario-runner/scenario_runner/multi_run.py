"""Repeated execution of one scenario with flakiness statistics."""

from __future__ import annotations

from collections import Counter
from typing import Callable, Iterable, Optional, Protocol, Sequence
import re
import statistics

import structlog

from .context import DEFAULT_USER_ID
from .errors import ConfigError
from .models import (
    AggregatedScenarioReport,
    CostBreakdown,
    CostStatistics,
    ErrorOccurrence,
    HallucinationOccurrence,
    MetricStats,
    Scenario,
    ScenarioReport,
    StepHallucinations,
    StepReport,
    StepStatistics,
)
from .runner import ScenarioRunner

LOGGER = structlog.get_logger("agentqa.multi_run")

DEFAULT_ACTION_KEYWORDS: tuple[str, ...] = (
    "deleted",
    "removed",
    "created",
    "added",
    "updated",
    "modified",
    "completed",
    "marked",
    "set",
    "changed",
    "moved",
    "scheduled",
    "done",
)
EXCERPT_LENGTH = 200
COST_DIGITS = 6


def compute_stats(values: Iterable[float], digits: int = 3) -> MetricStats:
    data = list(values)
    if not data:
        return MetricStats()
    return MetricStats(
        count=len(data),
        mean=round(statistics.fmean(data), digits),
        median=round(statistics.median(data), digits),
        min=round(min(data), digits),
        max=round(max(data), digits),
        std_dev=round(statistics.pstdev(data), digits) if len(data) > 1 else 0.0,
    )


class HallucinationDetector(Protocol):
    def detect(self, step: StepReport, *, run: int) -> Optional[HallucinationOccurrence]: ...


class KeywordHallucinationDetector:
    """Flags chat replies that claim an action the tool evidence does not back up.

    Any failed tool-count assertion counts as missing evidence. With ``require_missing_call=True``
    only expected tools that were never called do, so over-calls are no longer flagged.
    """

    def __init__(
        self,
        keywords: Sequence[str] = DEFAULT_ACTION_KEYWORDS,
        *,
        require_missing_call: bool = False,
    ) -> None:
        self.keywords = tuple(keywords)
        self.require_missing_call = require_missing_call
        self._patterns = [(word, re.compile(rf"\b{re.escape(word)}\b", re.IGNORECASE)) for word in self.keywords]

    def detect(self, step: StepReport, *, run: int) -> Optional[HallucinationOccurrence]:
        if step.type != "chat" or not step.response_text:
            return None
        failed_tools = [
            item
            for item in step.assertions
            if item.kind == "tool" and not item.passed and (not self.require_missing_call or item.actual == 0)
        ]
        if not failed_tools:
            return None
        matched = [word for word, pattern in self._patterns if pattern.search(step.response_text)]
        if not matched:
            return None
        return HallucinationOccurrence(
            run=run,
            step_index=step.index,
            keywords=matched,
            missing_tools=[item.name for item in failed_tools if item.actual == 0],
            failed_tools=[item.name for item in failed_tools],
            response_excerpt=step.response_text[:EXCERPT_LENGTH],
        )


RunCallback = Callable[[int, ScenarioReport], None]


class MultiRunAggregator:
    """Runs one scenario N times in sequence and aggregates the reports."""

    def __init__(
        self,
        runner: ScenarioRunner,
        *,
        detector: Optional[HallucinationDetector] = None,
        target_step: Optional[str] = None,
    ) -> None:
        self.runner = runner
        self.detector = detector or KeywordHallucinationDetector()
        self.target_step = target_step

    def run(
        self,
        scenarios: Sequence[Scenario],
        *,
        runs: Optional[int] = None,
        continue_on_failure: bool = True,
        user_id: str = DEFAULT_USER_ID,
        on_run_complete: Optional[RunCallback] = None,
    ) -> AggregatedScenarioReport:
        if len(scenarios) != 1:
            raise ConfigError(f"Multi-run requires exactly one scenario, got {len(scenarios)}")
        scenario = scenarios[0]
        total_runs = runs if runs is not None else (scenario.runs or 1)
        if total_runs < 1:
            raise ConfigError(f"Run count must be at least 1, got {total_runs}")

        logger = LOGGER.bind(scenario_id=scenario.id, runs=total_runs)
        logger.info("multi_run_started")
        reports: list[ScenarioReport] = []
        for run in range(1, total_runs + 1):
            report = self.runner.run(scenario, user_id=user_id, target_step=self.target_step)
            reports.append(report)
            logger.info("multi_run_iteration_finished", run=run, status=report.status)
            if on_run_complete is not None:
                on_run_complete(run, report)
            if not report.passed and not continue_on_failure:
                logger.warning("multi_run_stopped_early", run=run)
                break

        aggregated = self.aggregate(scenario, reports, runs_requested=total_runs)
        logger.info("multi_run_finished", pass_rate=aggregated.pass_rate, flaky=aggregated.is_flaky)
        return aggregated

    def aggregate(
        self,
        scenario: Scenario,
        reports: Sequence[ScenarioReport],
        *,
        runs_requested: Optional[int] = None,
    ) -> AggregatedScenarioReport:
        completed = len(reports)
        pass_count = sum(1 for report in reports if report.passed)

        occurrences: list[HallucinationOccurrence] = []
        for run, report in enumerate(reports, start=1):
            for step in report.steps:
                found = self.detector.detect(step, run=run)
                if found is not None:
                    occurrences.append(found)

        step_stats = [
            _step_statistics([report.steps[index] for report in reports if index < len(report.steps)], occurrences)
            for index in range(len(scenario.steps) if reports else 0)
        ]
        with_usage = [report for report in reports if _has_usage(report)]
        errors = Counter(report.error for report in reports if report.error)
        for report in reports:
            errors.update(step.error for step in report.steps if step.error)

        return AggregatedScenarioReport(
            scenario_id=scenario.id,
            name=scenario.name,
            runs_requested=runs_requested or completed,
            runs_completed=completed,
            success=completed > 0 and pass_count == (runs_requested or completed),
            pass_count=pass_count,
            fail_count=completed - pass_count,
            pass_rate=_rate(pass_count, completed),
            is_flaky=0 < pass_count < completed,
            duration=compute_stats(report.duration_ms for report in reports),
            input_tokens=compute_stats(report.usage.input_tokens for report in with_usage),
            output_tokens=compute_stats(report.usage.output_tokens for report in with_usage),
            total_tokens=compute_stats(report.usage.total_tokens for report in with_usage),
            cost=_cost_statistics(reports),
            steps=step_stats,
            errors=[ErrorOccurrence(message=message, count=count) for message, count in errors.most_common()],
            hallucinations=_hallucination_summary(step_stats, occurrences, completed),
            reports=list(reports),
        )


def _has_usage(report: ScenarioReport) -> bool:
    return any(step.usage is not None for step in report.steps)


def _cost_statistics(reports: Sequence[ScenarioReport]) -> Optional[CostStatistics]:
    """Spread of per-run cost; runs without a positive total cost are left out."""

    costs: list[CostBreakdown] = [
        report.usage.cost for report in reports if report.usage.cost is not None and report.usage.cost.total_cost > 0
    ]
    if not costs:
        return None
    return CostStatistics(
        input_cost=compute_stats((cost.input_cost for cost in costs), COST_DIGITS),
        output_cost=compute_stats((cost.output_cost for cost in costs), COST_DIGITS),
        cache_write_cost=compute_stats((cost.cache_write_cost for cost in costs), COST_DIGITS),
        cache_read_cost=compute_stats((cost.cache_read_cost for cost in costs), COST_DIGITS),
        total_cost=compute_stats((cost.total_cost for cost in costs), COST_DIGITS),
    )


def _rate(count: int, total: int) -> float:
    return round(count / total * 100, 2) if total else 0.0


def _step_statistics(
    outcomes: list[StepReport],
    occurrences: list[HallucinationOccurrence],
) -> StepStatistics:
    first = outcomes[0]
    total = len(outcomes)
    pass_count = sum(1 for step in outcomes if step.status == "passed")
    fail_count = sum(1 for step in outcomes if step.status in ("failed", "error"))
    skipped_count = sum(1 for step in outcomes if step.status == "skipped")
    errors = Counter(step.error for step in outcomes if step.error)
    hallucinations = sum(1 for item in occurrences if item.step_index == first.index)
    return StepStatistics(
        index=first.index,
        label=first.label,
        type=first.type,
        runs=total,
        pass_count=pass_count,
        fail_count=fail_count,
        skipped_count=skipped_count,
        pass_rate=_rate(pass_count, total),
        is_flaky=0 < pass_count < total,
        duration=compute_stats(step.duration_ms for step in outcomes if step.status != "skipped"),
        errors=[ErrorOccurrence(message=message, count=count) for message, count in errors.most_common()],
        hallucination_count=hallucinations,
        hallucination_rate=_rate(hallucinations, total),
    )


def _hallucination_summary(
    step_stats: list[StepStatistics],
    occurrences: list[HallucinationOccurrence],
    runs: int,
) -> list[StepHallucinations]:
    summaries = [
        StepHallucinations(
            step_index=stats.index,
            label=stats.label,
            occurrences=stats.hallucination_count,
            rate=_rate(stats.hallucination_count, runs),
            samples=[item for item in occurrences if item.step_index == stats.index],
        )
        for stats in step_stats
        if stats.hallucination_count
    ]
    return sorted(summaries, key=lambda item: item.rate, reverse=True)
