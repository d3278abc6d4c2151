"""Console reporter with environment detection for scenario run output."""

from __future__ import annotations

import os
import sys
from typing import Optional

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskID, TextColumn, TimeElapsedColumn
from rich.table import Table
from rich.text import Text

from .models import AggregatedScenarioReport, ScenarioReport
from .output_config import OutputFormat

_STATUS_STYLES = {
    "passed": ("✓ PASS", "green"),
    "failed": ("✗ FAIL", "red"),
    "error": ("! ERROR", "bold red"),
    "skipped": ("- SKIP", "yellow"),
}
_CI_VARIABLES = ("CI", "JENKINS_HOME", "GITLAB_CI", "TRAVIS", "GITHUB_ACTIONS")


class ConsoleReporter:
    """
    Console reporter that adapts to its environment.

    Rich progress output is used on interactive terminals outside CI. Plain
    lines are printed otherwise, and JSON mode stays silent so the caller can
    print a machine-readable summary.
    """

    def __init__(self, output_format: OutputFormat = OutputFormat.AUTO, console: Optional[Console] = None):
        self.output_format = output_format
        self.silent = output_format == OutputFormat.JSON
        self.use_rich = self._detect_rich()
        self.console = console or Console()
        self.progress: Optional[Progress] = None
        self.progress_task: Optional[TaskID] = None
        self.live: Optional[Live] = None
        self.results_table: Optional[Table] = None

    def _detect_rich(self) -> bool:
        if self.output_format == OutputFormat.RICH:
            return True
        if self.output_format != OutputFormat.AUTO:
            return False
        is_ci = any(name in os.environ for name in _CI_VARIABLES)
        return sys.stdout.isatty() and not is_ci

    def start_run(self, total: int, title: str) -> None:
        """Initialize the run display."""
        if self.silent:
            return
        if not self.use_rich:
            print(f"Running {title}")
            print(f"Total: {total}")
            print("-" * 80)
            return

        self.results_table = Table(show_header=True, header_style="bold cyan")
        self.results_table.add_column("Scenario", width=36)
        self.results_table.add_column("User", style="dim", width=38)
        self.results_table.add_column("Status", width=10)
        self.results_table.add_column("Steps", justify="right", width=10)
        self.results_table.add_column("Duration", justify="right", width=12)
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TimeElapsedColumn(),
            console=self.console,
        )
        self.progress_task = self.progress.add_task(f"[cyan]{title}", total=total)
        self.live = Live(Group(self.progress, self.results_table), console=self.console, refresh_per_second=4)
        self.live.start()

    def report_scenario(self, report: ScenarioReport, label: Optional[str] = None) -> None:
        """Report one finished scenario (or one run of a multi-run)."""
        if self.silent:
            return
        name = label or report.scenario_id
        icon, style = _STATUS_STYLES.get(report.status, ("?", "white"))
        passed_steps = report.count("passed")
        steps = f"{passed_steps}/{len(report.steps)}"
        problems = [
            f"{step.display_name}: {step.error}"
            for step in report.steps
            if step.status in ("failed", "error") and step.error
        ]
        if report.error:
            problems.insert(0, report.error)

        if not self.use_rich:
            print(f"{icon} {name} ({steps} steps, {report.duration_ms:.0f}ms)")
            for problem in problems:
                print(f"  Error: {problem}")
            return

        assert self.results_table is not None and self.progress is not None
        self.results_table.add_row(
            name,
            report.user_id,
            Text(icon, style=style),
            steps,
            f"{report.duration_ms:.0f}ms",
        )
        for problem in problems:
            self.results_table.add_row("", Text(f"Error: {problem}", style="red"), "", "", "")
        if self.progress_task is not None:
            self.progress.update(self.progress_task, advance=1)

    def finish_run(self, *, total: int, passed: int, failed: int, duration_ms: float, bailed: bool = False) -> None:
        """Display the final run summary."""
        if self.silent:
            return
        ok = failed == 0 and not bailed
        status = "✓ ALL SCENARIOS PASSED" if ok else "✗ SOME SCENARIOS FAILED"
        if not self.use_rich:
            print("-" * 80)
            print(f"Total: {total} | Passed: {passed} | Failed: {failed} | Duration: {duration_ms:.0f}ms")
            if bailed:
                print("Bailed after first failure")
            print(status)
            return

        if self.live:
            self.live.stop()
        summary_text = Text()
        summary_text.append(f"Total: {total}  ", style="bold")
        summary_text.append(f"Passed: {passed}  ", style="bold green")
        summary_text.append(f"Failed: {failed}  ", style="bold red" if failed else "bold green")
        summary_text.append(f"Duration: {duration_ms:.0f}ms", style="bold cyan")
        if bailed:
            summary_text.append("  (bailed)", style="bold yellow")
        self.console.print()
        self.console.print(
            Panel(
                summary_text,
                title=Text(status, style="bold green" if ok else "bold red"),
                border_style="green" if ok else "red",
            )
        )

    def report_aggregate(self, aggregated: AggregatedScenarioReport) -> None:
        """Print per-step flakiness statistics for a multi-run."""
        if self.silent:
            return
        if not self.use_rich:
            print(f"Pass rate: {aggregated.pass_rate:.1f}% over {aggregated.runs_completed} run(s)")
            for step in aggregated.steps:
                flag = " FLAKY" if step.is_flaky else ""
                print(f"  [{step.index}] {step.label or step.type}: {step.pass_rate:.1f}%{flag}")
            for item in aggregated.hallucinations:
                print(f"  Possible hallucination at step {item.step_index}: {item.rate:.1f}% of runs")
            if aggregated.cost is not None:
                cost = aggregated.cost.total_cost
                print(f"Cost per run: ${cost.mean:.4f} mean, ${cost.max:.4f} max")
            return

        table = Table(show_header=True, header_style="bold cyan", title="Step statistics")
        table.add_column("Step", width=28)
        table.add_column("Pass rate", justify="right")
        table.add_column("Mean", justify="right")
        table.add_column("Std dev", justify="right")
        table.add_column("Flaky")
        table.add_column("Hallucinations", justify="right")
        for step in aggregated.steps:
            table.add_row(
                f"[{step.index}] {step.label or step.type}",
                f"{step.pass_rate:.1f}%",
                f"{step.duration.mean:.0f}ms",
                f"{step.duration.std_dev:.0f}ms",
                Text("yes", style="yellow") if step.is_flaky else Text("no", style="green"),
                f"{step.hallucination_rate:.1f}%",
            )
        self.console.print(table)
        if aggregated.cost is not None:
            cost = aggregated.cost.total_cost
            self.console.print(f"[bold]Cost per run:[/] ${cost.mean:.4f} mean, ${cost.max:.4f} max over {cost.count} run(s)")

    def print_error(self, message: str) -> None:
        """Print an error message."""
        if self.use_rich:
            self.console.print(f"[bold red]Error:[/] {message}")
        else:
            print(f"Error: {message}", file=sys.stderr)
