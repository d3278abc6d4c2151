"""Bounded-concurrency execution of many scenarios."""

from __future__ import annotations

from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence
import time
import traceback

import structlog

from .context import DEFAULT_USER_ID
from .errors import ConfigError
from .isolation import UserIsolationManager
from .models import RunSummary, Scenario, ScenarioReport, StepReport, TokenUsage
from .runner import ScenarioRunner

LOGGER = structlog.get_logger("agentqa.parallel")

DEFAULT_CONCURRENCY = 4

StartCallback = Callable[[Scenario, str], None]
CompleteCallback = Callable[[Scenario, ScenarioReport], None]


@dataclass
class ParallelRunResult:
    success: bool
    reports: list[ScenarioReport]
    bailed: bool
    isolation: UserIsolationManager
    not_started: list[str] = field(default_factory=list)
    peak_concurrency: int = 0
    duration_ms: float = 0.0

    def summary(self, run_id: str) -> RunSummary:
        usage = TokenUsage()
        for report in self.reports:
            usage = usage.add(report.usage)
        return RunSummary(
            run_id=run_id,
            success=self.success,
            bailed=self.bailed,
            total=len(self.reports),
            passed=sum(1 for report in self.reports if report.status == "passed"),
            failed=sum(1 for report in self.reports if report.status == "failed"),
            errored=sum(1 for report in self.reports if report.status == "error"),
            skipped=sum(1 for report in self.reports if report.status == "skipped"),
            not_started=self.not_started,
            duration_ms=self.duration_ms,
            usage=usage,
            reports=self.reports,
        )


class ParallelOrchestrator:
    """Runs scenarios on a worker pool, keeping at most ``concurrency`` in flight.

    A freed slot is refilled immediately from the pending queue. With ``bail``
    set, no new scenario starts once any finished scenario failed, but running
    ones are allowed to complete.
    """

    def __init__(self, runner: ScenarioRunner, *, target_step: Optional[str] = None) -> None:
        self.runner = runner
        self.target_step = target_step

    def run(
        self,
        scenarios: Sequence[Scenario],
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        isolate_users: bool = False,
        default_user_id: str = DEFAULT_USER_ID,
        bail: bool = False,
        on_start: Optional[StartCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
    ) -> ParallelRunResult:
        if concurrency < 1:
            raise ConfigError(f"Concurrency must be at least 1, got {concurrency}")

        isolation = UserIsolationManager(enabled=isolate_users, default_user_id=default_user_id)
        pending: deque[tuple[int, Scenario]] = deque(enumerate(scenarios))
        in_flight: dict[Future[ScenarioReport], tuple[int, Scenario, str]] = {}
        results: dict[int, ScenarioReport] = {}
        bailed = False
        peak = 0
        timer = time.perf_counter()
        LOGGER.info("parallel_run_started", scenarios=len(scenarios), concurrency=concurrency, bail=bail)

        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="scenario") as pool:
            while pending or in_flight:
                while pending and not bailed and len(in_flight) < concurrency:
                    index, scenario = pending.popleft()
                    user_id = isolation.get_user_id(scenario.id)
                    if on_start is not None:
                        on_start(scenario, user_id)
                    future = pool.submit(self.runner.run, scenario, user_id=user_id, target_step=self.target_step)
                    in_flight[future] = (index, scenario, user_id)
                    peak = max(peak, len(in_flight))
                if not in_flight:
                    break

                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    index, scenario, user_id = in_flight.pop(future)
                    report = _report_from_future(future, scenario, user_id)
                    results[index] = report
                    if on_complete is not None:
                        on_complete(scenario, report)
                    if bail and not bailed and report.status in ("failed", "error"):
                        bailed = True
                        LOGGER.warning("parallel_run_bailing", scenario_id=scenario.id, pending=len(pending))

        reports = [results[index] for index in sorted(results)]
        not_started = [scenario.id for _, scenario in pending]
        success = not bailed and all(report.status in ("passed", "skipped") for report in reports)
        duration_ms = round((time.perf_counter() - timer) * 1000, 3)
        LOGGER.info(
            "parallel_run_finished",
            success=success,
            completed=len(reports),
            not_started=len(not_started),
            duration_ms=duration_ms,
        )
        return ParallelRunResult(
            success=success,
            reports=reports,
            bailed=bailed,
            isolation=isolation,
            not_started=not_started,
            peak_concurrency=peak,
            duration_ms=duration_ms,
        )


def _report_from_future(future: Future[ScenarioReport], scenario: Scenario, user_id: str) -> ScenarioReport:
    try:
        return future.result()
    except Exception as exc:
        LOGGER.error("scenario_crashed", scenario_id=scenario.id, error=str(exc))
        now = datetime.now(timezone.utc)
        return ScenarioReport(
            scenario_id=scenario.id,
            name=scenario.name,
            status="error",
            user_id=user_id,
            started_at=now,
            finished_at=now,
            duration_ms=0.0,
            steps=[
                StepReport(index=index, label=step.label, type=step.kind, status="skipped")
                for index, step in enumerate(scenario.steps, start=1)
            ],
            error="".join(traceback.format_exception_only(type(exc), exc)).strip(),
        )
