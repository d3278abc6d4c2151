"""Execution of individual scenario steps."""

from __future__ import annotations

from typing import Any, Callable, Optional
import time
import traceback

import structlog

from .adapters import AgentAdapter, DatabaseAdapter
from .assertions import check_fields, check_response, check_tools, check_total_tool_calls
from .context import ExecutionContext
from .errors import ConfigError
from .models import (
    AssertionResult,
    ChatStep,
    FixedDelay,
    SetupInsert,
    SetupStep,
    Step,
    StepReport,
    VerifyStep,
    WaitStep,
)
from .pricing import PriceTable

LOGGER = structlog.get_logger("agentqa.steps")


def poll_until(
    condition: Callable[[], bool],
    *,
    timeout: float,
    interval: float,
    on_attempt: Optional[Callable[[int], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Evaluate ``condition`` every ``interval`` seconds until it holds or ``timeout`` elapses.

    The condition is always evaluated at least once. Exceptions propagate.
    """

    deadline = clock() + timeout
    attempt = 0
    while True:
        attempt += 1
        if on_attempt is not None:
            on_attempt(attempt)
        if condition():
            return True
        remaining = deadline - clock()
        if remaining <= 0:
            return False
        sleep(min(interval, remaining))


class StepExecutor:
    """Runs one step against the agent and database collaborators."""

    def __init__(
        self,
        *,
        agent: AgentAdapter,
        database: DatabaseAdapter,
        chat_timeout: Optional[float] = None,
        prices: Optional[PriceTable] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.agent = agent
        self.database = database
        self.chat_timeout = chat_timeout
        self.prices = prices
        self._sleep = sleep
        self._clock = clock

    def execute(
        self,
        step: Step,
        index: int,
        context: ExecutionContext,
        *,
        timeout: Optional[float] = None,
    ) -> StepReport:
        """Execute ``step`` and return its terminal report. Never raises.

        ``timeout`` is the scenario-level chat timeout; a step's own ``timeout`` wins over it.
        """

        report = StepReport(index=index, label=step.label, type=step.kind, status="passed")
        logger = LOGGER.bind(step=report.display_name, type=step.kind, user_id=context.user_id)
        timer = time.perf_counter()
        try:
            match step:
                case ChatStep():
                    self._run_chat(step, context, report, timeout)
                case VerifyStep():
                    self._run_verify(step, context, report)
                case WaitStep():
                    self._run_wait(step, context, report)
                case SetupStep():
                    self._run_setup(step.setup, context, report)
                case _:
                    raise ConfigError(f"Unsupported step type: {type(step).__name__}")
            if report.failed_assertions:
                report.status = "failed"
                report.error = "; ".join(item.message for item in report.failed_assertions)
        except Exception as exc:
            report.status = "error"
            report.error = str(exc) or type(exc).__name__
            report.traceback = traceback.format_exc()
        report.duration_ms = round((time.perf_counter() - timer) * 1000, 3)
        logger.debug("step_finished", status=report.status, duration_ms=report.duration_ms)
        return report

    def insert(self, insert: SetupInsert, context: ExecutionContext) -> dict[str, Any]:
        """Insert one setup row, injecting the owner column and registering its alias."""

        data = context.resolve(insert.data)
        schema = self.database.get_schema(insert.entity)
        column = schema.ownership_column
        if column and data.get(column) in (None, ""):
            data[column] = context.user_id
        row = self.database.insert(insert.entity, data)
        if insert.alias:
            context.register_alias(insert.alias, insert.entity, row)
        return row

    def _run_chat(
        self,
        step: ChatStep,
        context: ExecutionContext,
        report: StepReport,
        timeout: Optional[float],
    ) -> None:
        message = context.resolve(step.chat)
        conversation_id = self._conversation_for(step, context)

        response = self.agent.chat(
            message,
            user_id=context.user_id,
            conversation_id=conversation_id,
            max_tool_calls=step.max_tool_calls,
            timeout=step.timeout or timeout or self.chat_timeout,
        )

        resolved_id = response.conversation_id or conversation_id
        if resolved_id:
            context.conversation_id = resolved_id
            if step.conversation:
                context.conversations[step.conversation] = resolved_id
        usage = self.prices.apply(response.usage) if self.prices is not None else response.usage
        context.add_usage(usage)

        report.response_text = response.text
        report.tool_calls = list(response.tool_calls)
        report.conversation_id = resolved_id
        report.usage = usage

        expectations = [
            item.model_copy(update={"input": context.resolve(item.input)}) for item in step.tool_assertions()
        ]
        report.assertions.extend(check_tools(expectations, response.tool_calls))
        if step.total_tool_calls is not None:
            report.assertions.append(check_total_tool_calls(step.total_tool_calls, response.tool_calls))
        if step.response is not None:
            report.assertions.extend(check_response(step.response, response.text))

    @staticmethod
    def _conversation_for(step: ChatStep, context: ExecutionContext) -> Optional[str]:
        if step.conversation:
            return context.conversations.get(step.conversation)
        if step.continue_conversation:
            return context.conversation_id or step.conversation_id
        return step.conversation_id

    def _run_verify(self, step: VerifyStep, context: ExecutionContext, report: StepReport) -> None:
        verified = 0
        for entity, checks in step.verify.items():
            for check in checks:
                if check.id is not None:
                    lookup = context.resolve(check.id)
                    row = self.database.find_by_id(entity, lookup)
                else:
                    lookup = context.resolve(check.title)
                    row = self.database.find_by_title(entity, lookup)
                owner = f"{entity}[{lookup}]"

                if check.not_exists:
                    report.assertions.append(
                        AssertionResult(
                            kind="entity",
                            name=owner,
                            passed=row is None,
                            message="" if row is None else f"{owner}: expected no row, found one",
                        )
                    )
                    continue
                if row is None:
                    report.assertions.append(
                        AssertionResult(kind="entity", name=owner, passed=False, message=f"{owner}: not found")
                    )
                    continue

                verified += 1
                report.assertions.extend(check_fields(row, context.resolve(check.fields), owner=owner))
                if check.alias:
                    context.register_alias(check.alias, entity, row)
        report.entities_verified = verified

    def _run_wait(self, step: WaitStep, context: ExecutionContext, report: StepReport) -> None:
        if isinstance(step.wait, FixedDelay):
            self._sleep(step.wait.seconds)
            report.attempts = 0
            return

        condition = step.wait
        entity_id = context.resolve(condition.id)
        expected = context.resolve(condition.fields)
        last: list[AssertionResult] = []

        def satisfied() -> bool:
            nonlocal last
            row = self.database.find_by_id(condition.entity, entity_id)
            if row is None:
                last = [
                    AssertionResult(
                        kind="condition",
                        name=f"{condition.entity}[{entity_id}]",
                        passed=False,
                        message=f"{condition.entity}[{entity_id}]: not found",
                    )
                ]
                return False
            last = check_fields(row, expected, owner=f"{condition.entity}[{entity_id}]")
            return all(item.passed for item in last)

        attempts = 0

        def count(attempt: int) -> None:
            nonlocal attempts
            attempts = attempt

        met = poll_until(
            satisfied,
            timeout=step.timeout_seconds,
            interval=step.interval_seconds,
            on_attempt=count,
            sleep=self._sleep,
            clock=self._clock,
        )
        report.attempts = attempts
        if met:
            return
        reasons = "; ".join(item.message for item in last if not item.passed)
        report.assertions.append(
            AssertionResult(
                kind="condition",
                name=f"wait:{condition.entity}",
                passed=False,
                message=(
                    f"Condition not met after {attempts} attempt(s) "
                    f"(timeout {step.timeout_seconds}s): {reasons}"
                ),
                expected=expected,
            )
        )

    def _run_setup(self, insert: SetupInsert, context: ExecutionContext, report: StepReport) -> None:
        row = self.insert(insert, context)
        report.inserted_id = row.get("id")
        report.captured_alias = insert.alias
