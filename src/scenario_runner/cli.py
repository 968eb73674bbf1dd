"""
CLI interface using Click.
"""

import asyncio
import importlib
import json
import sys
from pathlib import Path
from typing import Optional

import click
import yaml
from rich.console import Console
from rich.table import Table

from scenario_runner import __version__
from scenario_runner.checkpoint import CheckpointStore
from scenario_runner.config import (
    ConfigurationError,
    RunnerConfig,
    get_default_config_path,
    load_config,
    save_config,
)
from scenario_runner.driver import AutomationDriver, DryRunDriver
from scenario_runner.errors import ScenarioParseError
from scenario_runner.events import RunEvent, RunEventType, aggregate_run_stats
from scenario_runner.logging import get_logger, setup_logging
from scenario_runner.models import RunReport, Scenario, load_scenario
from scenario_runner.runner import OrchestratedRunner

console = Console()
logger = get_logger(__name__)

STATUS_STYLES = {
    "passed": "[green]passed[/green]",
    "failed": "[red]failed[/red]",
    "skipped": "[yellow]skipped[/yellow]",
    "running": "[cyan]running[/cyan]",
    "waiting": "[cyan]waiting[/cyan]",
    "pending": "[dim]pending[/dim]",
}


def _load_config_or_exit(config: Optional[str]) -> RunnerConfig:
    try:
        return load_config(config)
    except ConfigurationError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(2)


def _load_scenario_or_exit(path: str) -> Scenario:
    try:
        return load_scenario(Path(path))
    except ScenarioParseError as e:
        console.print(f"[red]Invalid scenario:[/red] {e}")
        sys.exit(1)


def _load_driver(reference: str) -> AutomationDriver:
    """Instantiate a driver from a 'package.module:ClassName' reference."""
    module_name, _, class_name = reference.partition(":")
    if not class_name:
        raise click.BadParameter("expected 'package.module:ClassName'", param_hint="--driver")
    try:
        driver_cls = getattr(importlib.import_module(module_name), class_name)
    except (ImportError, AttributeError) as e:
        raise click.BadParameter(f"cannot load {reference}: {e}", param_hint="--driver")
    driver = driver_cls()
    if not isinstance(driver, AutomationDriver):
        raise click.BadParameter(f"{reference} is not an AutomationDriver", param_hint="--driver")
    return driver


def _print_event(event: RunEvent) -> None:
    data = event.data
    if event.event_type == RunEventType.MILESTONE_START:
        console.print(f"[bold]>[/bold] {data['milestone_id']}: {data.get('name', '')}")
    elif event.event_type == RunEventType.MILESTONE_COMPLETE:
        status = STATUS_STYLES.get(data.get("status", ""), data.get("status", ""))
        console.print(f"  {data['milestone_id']} {status}")
    elif event.event_type == RunEventType.MILESTONE_RETRY:
        console.print(f"  [yellow]retry {data['retry']}[/yellow] {data['milestone_id']}: {data.get('error')}")
    elif event.event_type == RunEventType.SESSION_CRASH:
        console.print(f"[red]Session crashed:[/red] {data['session_id']}")


def _print_report(report: RunReport) -> None:
    table = Table(title=f"{report.scenario_name} ({report.id})")
    table.add_column("Milestone", style="cyan")
    table.add_column("Status")
    table.add_column("Steps", justify="right")
    table.add_column("Retries", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Error")

    for m in report.milestones:
        passed_steps = sum(1 for s in m.step_results if s.passed)
        table.add_row(
            m.milestone_id,
            STATUS_STYLES.get(m.status.value, m.status.value),
            f"{passed_steps}/{len(m.step_results)}",
            str(m.retry_count),
            f"{m.duration_ms / 1000:.1f}s",
            (m.error or "")[:60],
        )

    console.print(table)
    style = "green" if report.passed else "red"
    console.print(f"\n[bold {style}]Run {report.status.value}[/bold {style}] in {report.duration_ms / 1000:.1f}s")
    if report.error:
        console.print(f"[red]{report.error}[/red]")


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version and exit")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--log-file", type=click.Path(path_type=Path), help="Also write JSON logs to this file")
@click.pass_context
def main(ctx: click.Context, version: bool, verbose: bool, log_file: Optional[Path]) -> None:
    """Scenario Runner - orchestrated UI scenario execution."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose

    setup_logging(level="DEBUG" if verbose else "INFO", log_file=log_file)

    if version:
        console.print(f"scenario-runner v{__version__}")
        sys.exit(0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@main.command()
@click.argument("scenario", type=click.Path(exists=True, dir_okay=False))
@click.option("--config", "-c", type=click.Path(), help="Path to config file")
@click.option("--dry-run", is_flag=True, help="Simulate the application instead of driving it")
@click.option("--driver", "driver_ref", help="Automation driver as 'package.module:ClassName'")
@click.option("--fresh", is_flag=True, help="Ignore any existing checkpoint")
@click.option("--checkpoint", type=click.Path(path_type=Path), help="Explicit checkpoint file")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
def run(
    scenario: str,
    config: Optional[str],
    dry_run: bool,
    driver_ref: Optional[str],
    fresh: bool,
    checkpoint: Optional[Path],
    as_json: bool,
) -> None:
    """Run a scenario."""
    runner_config = _load_config_or_exit(config)
    parsed = _load_scenario_or_exit(scenario)

    if dry_run:
        driver: AutomationDriver = DryRunDriver()
        if not runner_config.session.app_path:
            # Dry runs never start a process, any existing path will do
            runner_config.session.app_path = sys.executable
    elif driver_ref:
        driver = _load_driver(driver_ref)
    else:
        console.print("[red]No automation driver configured.[/red]")
        console.print("Use --driver package.module:ClassName, or --dry-run to simulate.")
        sys.exit(2)

    logger.debug("Using automation driver", driver=type(driver).__name__, scenario_id=parsed.id)

    runner = OrchestratedRunner(
        driver,
        config=runner_config,
        event_handler=None if as_json else _print_event,
        checkpoint_path=checkpoint,
        fresh=fresh,
    )

    try:
        report = asyncio.run(runner.run(parsed))
    except KeyboardInterrupt:
        logger.warning("Run interrupted", scenario_id=parsed.id)
        console.print("\n[yellow]Interrupted. Progress was checkpointed; rerun to resume.[/yellow]")
        sys.exit(130)

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2, default=str))
    else:
        _print_report(report)

    sys.exit(0 if report.passed else 1)


@main.command()
@click.argument("scenarios", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
def validate(scenarios: tuple[str, ...]) -> None:
    """Validate scenario files without running them."""
    failures = 0
    for path in scenarios:
        try:
            parsed = load_scenario(Path(path))
        except ScenarioParseError as e:
            failures += 1
            console.print(f"[red]✗[/red] {path}")
            console.print(f"    {e.message}")
            continue

        orchestration = parsed.effective_orchestration()
        console.print(
            f"[green]✓[/green] {path} "
            f"[dim]({parsed.id}: {len(orchestration.milestones)} milestones, "
            f"{sum(len(m.steps) for m in orchestration.milestones)} steps)[/dim]"
        )

    sys.exit(1 if failures else 0)


@main.command()
@click.option("--clear", "clear_id", help="Delete the checkpoint of this scenario")
@click.option("--config", "-c", type=click.Path(), help="Path to config file")
def checkpoints(clear_id: Optional[str], config: Optional[str]) -> None:
    """List resumable checkpoints."""
    runner_config = _load_config_or_exit(config)
    store = CheckpointStore(runner_config.checkpoints_path)

    if clear_id:
        if store.clear(clear_id):
            console.print(f"[green]Checkpoint cleared:[/green] {clear_id}")
        else:
            console.print(f"[yellow]No checkpoint for scenario:[/yellow] {clear_id}")
        return

    found = store.list_checkpoints()
    if not found:
        console.print("[yellow]No checkpoints found.[/yellow]")
        return

    table = Table(title=f"Checkpoints ({len(found)})")
    table.add_column("Scenario", style="cyan")
    table.add_column("Last run")
    table.add_column("Completed", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Saved at")

    for c in found:
        name = c["scenario_id"] + (" [yellow](partial)[/yellow]" if c["partial"] else "")
        table.add_row(
            name,
            c["run_id"] or "-",
            str(c["completed"]),
            str(c["failed"]),
            (c["last_checkpoint_time"] or "-")[:19],
        )

    console.print(table)
    console.print("\n[dim]Rerun a scenario to resume it, or pass --fresh to start over[/dim]")


@main.command()
@click.argument("run_id", required=False)
@click.option("--config", "-c", type=click.Path(), help="Path to config file")
def stats(run_id: Optional[str], config: Optional[str]) -> None:
    """Show statistics for a run (default: latest)."""
    runner_config = _load_config_or_exit(config)
    artifacts = runner_config.artifacts_path

    run_dirs = [d for d in artifacts.iterdir() if d.is_dir()] if artifacts.exists() else []
    if not run_dirs:
        console.print("[yellow]No runs found.[/yellow]")
        return

    if run_id:
        run_dir = next((d for d in run_dirs if d.name.startswith(run_id)), None)
        if run_dir is None:
            console.print(f"[red]Run not found: {run_id}[/red]")
            return
    else:
        run_dir = max(run_dirs, key=lambda d: d.stat().st_mtime)

    data = aggregate_run_stats(run_dir)
    if not data:
        console.print(f"[yellow]No events found for run: {run_dir.name}[/yellow]")
        return

    console.print(f"\n[bold]Run {run_dir.name}[/bold]")
    console.print(f"  Scenario: {data.get('scenario_id') or '-'}")
    console.print(f"  Status: {STATUS_STYLES.get(data.get('status') or '', data.get('status') or '-')}")
    console.print(f"  Retries: {data['retries']}   Failed events: {data['failures']}\n")

    if data["milestones"]:
        table = Table(title="Milestones")
        table.add_column("Milestone", style="cyan")
        table.add_column("Status")
        for mid, status in data["milestones"].items():
            table.add_row(mid, STATUS_STYLES.get(status, status))
        console.print(table)

    durations = data["durations"]
    if durations:
        dur_table = Table(title="Timing")
        dur_table.add_column("Event", style="cyan")
        dur_table.add_column("Count", justify="right")
        dur_table.add_column("Avg (ms)", justify="right")
        dur_table.add_column("Total (s)", justify="right")
        for key, d in durations.items():
            dur_table.add_row(
                key.replace("_", " ").title(),
                str(d["count"]),
                f"{d['avg_ms']:.0f}",
                f"{d['total_ms'] / 1000:.1f}",
            )
        console.print(dur_table)


@main.command("config")
@click.option("--show", is_flag=True, help="Print the effective configuration")
@click.option("--init", "init", is_flag=True, help="Write a default config file to --config or the default path")
@click.option("--config", "-c", type=click.Path(), help="Path to config file")
def config_cmd(show: bool, init: bool, config: Optional[str]) -> None:
    """Show or initialize runner configuration."""
    if init:
        path = save_config(RunnerConfig(), config)
        console.print(f"[green]Config written:[/green] {path}")
        return

    runner_config = _load_config_or_exit(config)
    if not show:
        console.print(f"Config file: {config or get_default_config_path()}")
    console.print(yaml.safe_dump(runner_config.model_dump(mode="json"), sort_keys=False))


if __name__ == "__main__":
    main()
