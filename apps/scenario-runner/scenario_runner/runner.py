"""Sequential scenario execution engine."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional
import time

import structlog

from .adapters import AgentAdapter, DatabaseAdapter
from .context import DEFAULT_USER_ID, ExecutionContext
from .errors import ConfigError
from .hooks import DiagnosticsCollector, HookContext, LifecycleHooks, ResultInfo, ScenarioInfo
from .models import Scenario, ScenarioReport, Step, StepReport, derive_status
from .pricing import PriceTable
from .steps import StepExecutor

LOGGER = structlog.get_logger("agentqa.runner")


class ScenarioRunner:
    """Executes the steps of one scenario in order and builds its report.

    A single runner may serve many threads at once: all per-run state lives in
    the ``ExecutionContext`` created inside ``run``.
    """

    def __init__(
        self,
        *,
        agent: AgentAdapter,
        database: DatabaseAdapter,
        hooks: Optional[LifecycleHooks] = None,
        diagnostics: Optional[DiagnosticsCollector] = None,
        stop_on_failure: bool = True,
        chat_timeout: Optional[float] = None,
        prices: Optional[PriceTable] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.hooks = hooks or LifecycleHooks()
        self.diagnostics = diagnostics
        self.stop_on_failure = stop_on_failure
        self._executor = StepExecutor(
            agent=agent,
            database=database,
            chat_timeout=chat_timeout,
            prices=prices,
            sleep=sleep,
            clock=clock,
        )

    def run(
        self,
        scenario: Scenario,
        *,
        user_id: Optional[str] = None,
        target_step: Optional[str] = None,
    ) -> ScenarioReport:
        stop_after = _target_index(scenario, target_step) if target_step is not None else None
        context = ExecutionContext(user_id=user_id or scenario.user_id or DEFAULT_USER_ID)
        logger = LOGGER.bind(scenario_id=scenario.id, user_id=context.user_id)
        info = ScenarioInfo.from_scenario(scenario)
        hook_context = HookContext(user_id=context.user_id)

        scenario_start = datetime.now(timezone.utc)
        timer = time.perf_counter()
        step_reports: list[StepReport] = []
        scenario_error: Optional[str] = None
        logger.info("scenario_started", steps=len(scenario.steps))

        try:
            if self.hooks.before_each is not None:
                self.hooks.before_each(info, hook_context)
            for insert in scenario.setup:
                self._executor.insert(insert, context)
        except Exception as exc:
            scenario_error = f"Scenario setup failed: {exc}"
            logger.error("scenario_setup_failed", error=str(exc))

        halted = scenario_error is not None
        for index, step in enumerate(scenario.steps, start=1):
            if halted:
                step_reports.append(_skipped(step, index))
                continue

            report = self._executor.execute(step, index, context, timeout=scenario.timeout)
            step_reports.append(report)
            logger.info(
                "step_finished",
                step=report.display_name,
                type=report.type,
                status=report.status,
                duration_ms=report.duration_ms,
            )
            if report.status in ("failed", "error"):
                self._collect_diagnostics(scenario, report, context)
                if self.stop_on_failure:
                    halted = True
            if stop_after is not None and index >= stop_after:
                halted = True

        duration_ms = round((time.perf_counter() - timer) * 1000, 3)
        status = derive_status(step_reports, scenario_error)
        self._run_after_each(info, hook_context, status, duration_ms, scenario_error, logger)

        summary = ScenarioReport(
            scenario_id=scenario.id,
            name=scenario.name,
            status=status,
            user_id=context.user_id,
            started_at=scenario_start,
            finished_at=datetime.now(timezone.utc),
            duration_ms=duration_ms,
            steps=step_reports,
            captured=context.captured,
            usage=context.usage,
            error=scenario_error,
        )
        logger.info("scenario_finished", status=status, duration_ms=duration_ms)
        return summary

    def _collect_diagnostics(self, scenario: Scenario, report: StepReport, context: ExecutionContext) -> None:
        if self.diagnostics is None:
            return
        try:
            self.diagnostics.collect(scenario, report, context)
        except Exception as exc:
            LOGGER.warning("diagnostics_failed", scenario_id=scenario.id, error=str(exc))

    def _run_after_each(
        self,
        info: ScenarioInfo,
        hook_context: HookContext,
        status: str,
        duration_ms: float,
        error: Optional[str],
        logger: structlog.stdlib.BoundLogger,
    ) -> None:
        if self.hooks.after_each is None:
            return
        try:
            self.hooks.after_each(info, ResultInfo(status=status, duration_ms=duration_ms, error=error), hook_context)
        except Exception as exc:
            logger.warning("after_each_hook_failed", error=str(exc))


def _target_index(scenario: Scenario, target: str) -> int:
    for index, step in enumerate(scenario.steps, start=1):
        if step.label == target or str(index) == target:
            return index
    raise ConfigError(f"Target step '{target}' not found in scenario {scenario.id}")


def _skipped(step: Step, index: int) -> StepReport:
    return StepReport(index=index, label=step.label, type=step.kind, status="skipped")
