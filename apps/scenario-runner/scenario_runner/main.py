"""CLI entrypoint for agentqa-run."""

from __future__ import annotations

import sys
import uuid
from pathlib import Path
from typing import Optional

import typer

if __package__ in {None, ""}:
    package_root = Path(__file__).resolve().parents[1]
    if str(package_root) not in sys.path:
        sys.path.insert(0, str(package_root))
    __package__ = "scenario_runner"

from .adapters import DatabaseAdapter, InMemoryDatabase, NullDatabase
from .artifacts import RunArtifacts
from .config import RunnerSettings
from .console_reporter import ConsoleReporter
from .errors import ConfigError
from .hooks import HookLoader, LifecycleHooks, LoggingDiagnosticsCollector
from .loader import filter_scenarios, load_all
from .logging_utils import configure_logging
from .models import Scenario
from .multi_run import MultiRunAggregator
from .output_config import OutputFormat, get_log_format, get_output_format
from .parallel import ParallelOrchestrator
from .runner import ScenarioRunner

app = typer.Typer(help="Run agent test scenarios in parallel or repeatedly.")

DEFAULT_OUTPUT_DIR = Path("artifacts/runs")


@app.command()
def run(
    paths: list[Path] = typer.Argument(..., exists=True, help="Scenario YAML files or directories."),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-c", help="Scenarios running at once."),
    isolate_users: bool = typer.Option(
        True,
        "--isolate-users/--shared-user",
        help="Give every scenario its own user id.",
    ),
    bail: bool = typer.Option(False, help="Stop starting scenarios after the first failure."),
    runs: Optional[int] = typer.Option(None, help="Repeat a single scenario N times and aggregate."),
    target_step: Optional[str] = typer.Option(None, help="Stop after this step (label or 1-based index)."),
    stop_on_failure: bool = typer.Option(True, "--stop-on-failure/--no-stop-on-failure"),
    scenario_id: list[str] = typer.Option([], "--id", help="Only run scenarios with these ids."),
    tag: list[str] = typer.Option([], "--tag", "-t", help="Only run scenarios carrying one of these tags."),
    fixtures: Optional[Path] = typer.Option(
        None,
        exists=True,
        readable=True,
        help="YAML file seeding the in-memory database (schemas + rows).",
    ),
    hooks: Optional[str] = typer.Option(None, help="Lifecycle hooks as module:attribute."),
    prices: Optional[Path] = typer.Option(
        None,
        exists=True,
        readable=True,
        help="YAML price table (USD per 1M tokens) used to estimate cost.",
    ),
    user_id: Optional[str] = typer.Option(None, help="Shared user id when isolation is off."),
    output_dir: Path = typer.Option(DEFAULT_OUTPUT_DIR, help="Directory receiving run artifacts."),
    run_id: Optional[str] = typer.Option(None, help="Run identifier (defaults to a random id)."),
    output_format: Optional[str] = typer.Option(None, help="auto, rich, plain or json."),
    log_level: Optional[str] = typer.Option(None, help="Log level (default from AGENTQA_LOG_LEVEL)."),
) -> None:
    """Execute scenarios and write events, summary and JUnit artifacts."""

    try:
        settings = RunnerSettings.from_env(
            concurrency=concurrency,
            user_id=user_id,
            log_level=log_level,
            prices_file=prices,
        )
    except ConfigError as exc:
        raise typer.BadParameter(str(exc)) from exc
    configure_logging(settings.log_level, get_log_format(output_format))
    fmt = get_output_format(output_format)
    reporter = ConsoleReporter(output_format=fmt)

    try:
        scenarios = filter_scenarios(load_all(paths), ids=scenario_id, tags=tag)
        if not scenarios:
            raise ConfigError("No scenarios matched the given paths and filters")
        database: DatabaseAdapter = InMemoryDatabase.from_file(fixtures) if fixtures else NullDatabase()
        lifecycle = HookLoader(search_root=Path.cwd()).load_hooks(hooks) if hooks else LifecycleHooks()
        price_table = settings.build_prices()
    except ConfigError as exc:
        raise typer.BadParameter(str(exc)) from exc

    runner = ScenarioRunner(
        agent=settings.build_agent(),
        database=database,
        hooks=lifecycle,
        diagnostics=LoggingDiagnosticsCollector(),
        stop_on_failure=stop_on_failure,
        chat_timeout=settings.timeout,
        prices=price_table,
    )
    artifacts = RunArtifacts.prepare(output_dir, run_id or uuid.uuid4().hex[:12])

    multi = runs is not None or (len(scenarios) == 1 and (scenarios[0].runs or 1) > 1)
    if multi and len(scenarios) != 1:
        raise typer.BadParameter(f"--runs needs exactly one scenario, got {len(scenarios)}")
    try:
        if multi:
            success = _run_multi(runner, scenarios, runs, target_step, settings, reporter, artifacts)
        else:
            success = _run_parallel(
                runner, scenarios, target_step, isolate_users, bail, settings, reporter, artifacts
            )
    except ConfigError as exc:
        reporter.print_error(str(exc))
        raise typer.Exit(code=2) from exc

    if fmt == OutputFormat.JSON:
        typer.echo(artifacts.summary_file.read_text(encoding="utf-8"))
    else:
        typer.secho(f"Artifacts written -> {artifacts.run_dir}", fg=typer.colors.GREEN if success else typer.colors.RED)
    raise typer.Exit(code=0 if success else 1)


def _run_parallel(
    runner: ScenarioRunner,
    scenarios: list[Scenario],
    target_step: Optional[str],
    isolate_users: bool,
    bail: bool,
    settings: RunnerSettings,
    reporter: ConsoleReporter,
    artifacts: RunArtifacts,
) -> bool:
    reporter.start_run(total=len(scenarios), title=f"{len(scenarios)} scenario(s), concurrency {settings.concurrency}")
    orchestrator = ParallelOrchestrator(runner, target_step=target_step)
    result = orchestrator.run(
        scenarios,
        concurrency=settings.concurrency,
        isolate_users=isolate_users,
        default_user_id=settings.user_id,
        bail=bail,
        on_complete=lambda scenario, report: reporter.report_scenario(report),
    )
    summary = result.summary(artifacts.run_dir.name)
    reporter.finish_run(
        total=summary.total,
        passed=summary.passed,
        failed=summary.failed + summary.errored,
        duration_ms=summary.duration_ms,
        bailed=summary.bailed,
    )
    artifacts.write(summary, result.reports)
    return result.success


def _run_multi(
    runner: ScenarioRunner,
    scenarios: list[Scenario],
    runs: Optional[int],
    target_step: Optional[str],
    settings: RunnerSettings,
    reporter: ConsoleReporter,
    artifacts: RunArtifacts,
) -> bool:
    total = runs if runs is not None else (scenarios[0].runs or 1)
    reporter.start_run(total=total, title=f"{scenarios[0].id} x{total}")
    aggregator = MultiRunAggregator(runner, target_step=target_step)
    aggregated = aggregator.run(
        scenarios,
        runs=runs,
        user_id=settings.user_id,
        on_run_complete=lambda run, report: reporter.report_scenario(report, label=f"{report.scenario_id} #{run}"),
    )
    reporter.finish_run(
        total=aggregated.runs_completed,
        passed=aggregated.pass_count,
        failed=aggregated.fail_count,
        duration_ms=sum(report.duration_ms for report in aggregated.reports),
    )
    reporter.report_aggregate(aggregated)
    artifacts.write(aggregated, aggregated.reports)
    return aggregated.success


def main() -> None:
    """Console_scripts hook."""

    app()


if __name__ == "__main__":  # pragma: no cover
    main()
