"""CLI entrypoint for agentqa-instances."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Optional

import typer

if __package__ in {None, ""}:
    current_file = Path(__file__).resolve()
    apps_dir = current_file.parents[2]
    for candidate in [current_file.parents[1], apps_dir / "scenario-runner"]:
        candidate_str = str(candidate)
        if candidate_str not in sys.path and candidate.exists():
            sys.path.insert(0, candidate_str)
    __package__ = "instance_manager"

from scenario_runner.logging_utils import configure_logging
from scenario_runner.output_config import OutputFormat, get_log_format, get_output_format

from .cleanup import CleanupResult, ResourceCleaner
from .config import InfrastructureConfig
from .discovery import ResourceDiscovery
from .errors import InfrastructureError
from .registry import InstanceRegistry

app = typer.Typer(help="Inspect and tear down parallel test infrastructure instances.")

STATE_DIR_OPTION = typer.Option(None, "--state-dir", help="State directory (default ~/.agent-qa).")
FORMAT_OPTION = typer.Option(None, "--output-format", help="auto, rich, plain or json.")


def _setup(state_dir: Optional[Path], output_format: Optional[str]) -> tuple[InfrastructureConfig, bool]:
    configure_logging("WARNING", get_log_format(output_format))
    try:
        config = InfrastructureConfig.from_env(state_dir=state_dir)
    except InfrastructureError as exc:
        raise typer.BadParameter(str(exc)) from exc
    return config, get_output_format(output_format) == OutputFormat.JSON


def _fail(exc: InfrastructureError) -> typer.Exit:
    typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
    return typer.Exit(code=2)


@app.command("list")
def list_instances(
    state_dir: Optional[Path] = STATE_DIR_OPTION,
    output_format: Optional[str] = FORMAT_OPTION,
) -> None:
    """List registered instances and whether they are stale."""

    config, as_json = _setup(state_dir, output_format)
    registry = InstanceRegistry(config)
    try:
        records = registry.list_instances()
    except InfrastructureError as exc:
        raise _fail(exc) from exc
    rows = [
        {**record.model_dump(mode="json"), "stale": registry.is_stale(record)}
        for record in records
    ]
    if as_json:
        typer.echo(json.dumps(rows, indent=2))
        return
    if not rows:
        typer.echo("No registered instances")
        return
    for row in rows:
        ports = row["ports"]
        status = "stale" if row["stale"] else "active"
        typer.echo(
            f"instance {row['id']}: {status} pid={row['owner_pid']} "
            f"db={ports['db']} api={ports['api']} vector_store={ports['vector_store']} tunnel={ports['tunnel']}"
        )


@app.command()
def available(
    state_dir: Optional[Path] = STATE_DIR_OPTION,
    output_format: Optional[str] = FORMAT_OPTION,
) -> None:
    """Print how many instance slots are free."""

    config, as_json = _setup(state_dir, output_format)
    try:
        count = InstanceRegistry(config).get_available_count()
    except InfrastructureError as exc:
        raise _fail(exc) from exc
    if as_json:
        typer.echo(json.dumps({"available": count, "max_instances": config.max_instances}))
    else:
        typer.echo(f"{count}/{config.max_instances} instances available")


@app.command("clean-stale")
def clean_stale(
    state_dir: Optional[Path] = STATE_DIR_OPTION,
    output_format: Optional[str] = FORMAT_OPTION,
) -> None:
    """Remove stale entries from the registry (OS resources are left alone)."""

    config, as_json = _setup(state_dir, output_format)
    try:
        removed = InstanceRegistry(config).clean_stale()
    except InfrastructureError as exc:
        raise _fail(exc) from exc
    if as_json:
        typer.echo(json.dumps({"removed": [record.id for record in removed]}))
    else:
        typer.secho(f"Removed {len(removed)} stale instance(s)", fg=typer.colors.GREEN)


@app.command()
def discover(
    instance: Optional[int] = typer.Option(None, "--instance", "-i", help="Restrict to one instance id."),
    state_dir: Optional[Path] = STATE_DIR_OPTION,
    output_format: Optional[str] = FORMAT_OPTION,
) -> None:
    """List OS resources matching the instance naming convention."""

    config, as_json = _setup(state_dir, output_format)
    try:
        found = ResourceDiscovery(config).discover(instance)
    except InfrastructureError as exc:
        raise _fail(exc) from exc
    if as_json:
        typer.echo(found.model_dump_json(indent=2))
        return
    if not found.total:
        typer.echo("No resources found")
        return
    for resource in found.all():
        suffix = f" [{resource.status}]" if resource.status else ""
        typer.echo(f"{resource.type.value:<16} {resource.name} ({resource.identifier}){suffix}")


@app.command()
def teardown(
    instance: Optional[int] = typer.Option(None, "--instance", "-i", help="Only tear down this instance."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report what would be removed."),
    state_dir: Optional[Path] = STATE_DIR_OPTION,
    output_format: Optional[str] = FORMAT_OPTION,
) -> None:
    """Remove sessions, processes, compose projects, containers and state for instances."""

    config, as_json = _setup(state_dir, output_format)
    cleaner = ResourceCleaner(config)
    try:
        if instance is None:
            result = cleaner.cleanup_all(dry_run=dry_run)
        else:
            result = cleaner.cleanup_instance(instance, dry_run=dry_run)
    except InfrastructureError as exc:
        raise _fail(exc) from exc

    if as_json:
        typer.echo(result.model_dump_json(indent=2))
    else:
        _print_cleanup(result)
    if result.errors:
        raise typer.Exit(code=1)


def _print_cleanup(result: CleanupResult) -> None:
    verb = "Would remove" if result.dry_run else "Removed"
    typer.echo(
        f"{verb}: {result.sessions_killed} session(s), {result.processes_killed} process(es), "
        f"{result.compose_projects_removed} compose project(s), {result.containers_removed} container(s), "
        f"{result.state_paths_removed} state path(s), {result.registry_entries_removed} registry entr(ies)"
    )
    for error in result.errors:
        typer.secho(f"  {error}", fg=typer.colors.RED, err=True)
    if not result.errors:
        typer.secho("Cleanup complete", fg=typer.colors.GREEN)


def main() -> None:
    """Console_scripts hook."""

    app()


if __name__ == "__main__":  # pragma: no cover
    main()
