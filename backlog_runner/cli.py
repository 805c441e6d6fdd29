"""CLI for the backlog runner.

Provides the command-line interface for running the backlog loop and for
answering approval checkpoints or pausing a session from another terminal.
"""

import asyncio
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from backlog_runner import __version__
from backlog_runner.approval import approve_pending, find_pending, reject_pending
from backlog_runner.config import RunnerConfig
from backlog_runner.errors import ConfigurationError, RunnerError, TrackerError
from backlog_runner.lock import RunLock
from backlog_runner.logging_setup import configure_logging
from backlog_runner.loop import EXIT_ERROR, LoopResult, create_loop
from backlog_runner.notifications import format_duration
from backlog_runner.pause import PauseLock, parse_duration
from backlog_runner.telemetry import create_metrics, setup_telemetry
from backlog_runner.tracker import GitHubTracker

console = Console()

config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: $BACKLOG_RUNNER_CONFIG or .backlog-runner/config.yaml)",
)


def _load_config(config_path: Path | None) -> RunnerConfig:
    """Load configuration or exit 1 with the validation problems."""
    try:
        return RunnerConfig.from_env(config_path)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e.message}")
        sys.exit(EXIT_ERROR)


@click.group()
@click.version_option(version=__version__, prog_name="backlog-runner")
def cli() -> None:
    """Backlog runner - works a GitHub project backlog with a coding agent."""
    pass


@cli.command()
@config_option
@click.option("--dry-run", is_flag=True, help="Explore one task without changing anything")
@click.option("--ignore-deps", is_flag=True, help="Skip dependency checks")
@click.option("--interactive", is_flag=True, help="Require approval at checkpoints")
@click.option("--debug", is_flag=True, help="Debug logging on the console")
def start(
    config_path: Path | None,
    dry_run: bool,
    ignore_deps: bool,
    interactive: bool,
    debug: bool,
) -> None:
    """Work the backlog until it is empty, the budget is spent, or interrupted."""
    config = _load_config(config_path)
    updates: dict = {}
    if dry_run:
        updates["dry_run"] = True
    if interactive:
        updates["interactive"] = config.interactive.model_copy(update={"enabled": True})
    if updates:
        config = config.model_copy(update=updates)

    configure_logging(
        level="DEBUG" if debug else config.logging.level,
        log_dir=config.logging.log_dir,
        max_file_size_mb=config.logging.max_log_size_mb,
        backup_count=config.logging.max_log_files,
    )
    sys.exit(asyncio.run(_start(config, ignore_deps)))


async def _start(config: RunnerConfig, ignore_deps: bool) -> int:
    """Internal async implementation of the start command."""
    tracer, meter = setup_telemetry(config.telemetry)
    create_metrics(meter)

    try:
        tracker = GitHubTracker(config.github)
        with RunLock(config.state_dir):
            loop = create_loop(
                config,
                tracker,
                console=console,
                tracer=tracer,
                ignore_dependencies=ignore_deps,
            )
            mode = " [yellow](dry run)[/yellow]" if config.dry_run else ""
            console.print(
                f"[bold]Starting backlog runner[/bold] for {config.github.repo} "
                f"(project {config.github.project_number}){mode}"
            )
            result = await loop.run()
    except (ConfigurationError, TrackerError) as e:
        console.print(f"[red]Error:[/red] {e.message}")
        return EXIT_ERROR
    except RunnerError as e:
        # Run lock held by another process
        console.print(f"[red]Error:[/red] {e.message}")
        return EXIT_ERROR

    _print_session_summary(result)
    return result.exit_code


def _print_session_summary(result: LoopResult) -> None:
    """Print session summary."""
    summary = result.summary
    color = "green" if result.exit_code == 0 else "yellow"

    console.print(f"\n[bold {color}]Session ended: {result.exit_reason}[/bold {color}]")
    console.print(
        f"  Tasks: {summary.total} "
        f"([green]{summary.succeeded} succeeded[/green], "
        f"[red]{summary.failed} failed[/red], "
        f"[yellow]{summary.skipped} skipped[/yellow])"
    )
    console.print(f"  Duration: {format_duration(summary.total_elapsed_seconds)}")
    console.print(
        f"  Cost: ${summary.total_cost_usd:.2f} "
        f"(avg ${summary.average_cost_usd:.2f} per task)"
    )
    if summary.auto_merges:
        console.print(f"  Auto-merged: {summary.auto_merges}")


@cli.command()
@config_option
@click.option("--task", "task_id", type=int, default=None, help="Only this task's checkpoint")
def approve(config_path: Path | None, task_id: int | None) -> None:
    """Approve the pending checkpoint."""
    config = _load_config(config_path)
    touched = approve_pending(config.state_dir, task_id=task_id)
    if not touched:
        console.print("[yellow]No pending approval found[/yellow]")
        sys.exit(1)
    for path in touched:
        console.print(f"[green]Approved[/green] {path.name}")


@cli.command()
@config_option
@click.option("--message", "-m", default=None, help="Feedback for the agent")
@click.option("--skip", is_flag=True, help="Skip the task (move it back to Ready)")
@click.option("--task", "task_id", type=int, default=None, help="Only this task's checkpoint")
def reject(
    config_path: Path | None, message: str | None, skip: bool, task_id: int | None
) -> None:
    """Reject (or skip) the pending checkpoint."""
    config = _load_config(config_path)
    touched = reject_pending(config.state_dir, feedback=message, skip=skip, task_id=task_id)
    if not touched:
        console.print("[yellow]No pending approval found[/yellow]")
        sys.exit(1)
    verb = "Skipped" if skip else "Rejected"
    for path in touched:
        console.print(f"[red]{verb}[/red] {path.name}")


@cli.command()
@config_option
@click.option("--reason", default=None, help="Why the runner is paused")
@click.option(
    "--for", "duration", default=None, help="Resume automatically after e.g. 30m, 2h, 1h30m"
)
def pause(config_path: Path | None, reason: str | None, duration: str | None) -> None:
    """Pause after the current task finishes."""
    config = _load_config(config_path)
    delta = None
    if duration is not None:
        delta = parse_duration(duration)
        if delta is None:
            console.print(
                f"[red]Invalid duration:[/red] {duration} (use e.g. 30m, 2h, 1h30m)"
            )
            sys.exit(EXIT_ERROR)

    state, created = PauseLock(config.state_dir).pause(reason=reason, duration=delta)
    if not created:
        console.print(f"[yellow]Already paused[/yellow] since {state.paused_at or 'unknown'}")
    else:
        console.print("[yellow]Paused[/yellow] - the current task will finish first")
    if state.reason:
        console.print(f"  Reason: {state.reason}")
    if state.resume_at:
        console.print(f"  Resumes at: {state.resume_at}")


@cli.command()
@config_option
def resume(config_path: Path | None) -> None:
    """Remove the pause lock so the runner continues."""
    config = _load_config(config_path)
    state = PauseLock(config.state_dir).resume()
    if state is None:
        console.print("[yellow]Runner is not paused[/yellow]")
        sys.exit(1)
    console.print("[green]Resumed[/green]")


@cli.command()
@config_option
def validate(config_path: Path | None) -> None:
    """Validate the configuration and show the effective settings."""
    config = _load_config(config_path)

    budget = config.budget
    interactive = config.interactive
    table = Table(title="Effective Configuration")
    table.add_column("Setting")
    table.add_column("Value")

    table.add_row("Repository", config.github.repo or "[red]not set[/red]")
    table.add_row(
        "Project",
        str(config.github.project_number) if config.github.project_number else "[red]not set[/red]",
    )
    table.add_row(
        "Columns",
        " -> ".join(
            [
                config.github.ready_column,
                config.github.in_progress_column,
                config.github.review_column,
                config.github.done_column,
            ]
        ),
    )
    table.add_row("Branches", f"{config.branch.prefix}<id>-<slug> from {config.branch.base}")
    table.add_row("Priority ordering", "on" if config.priority.enabled else "off")
    table.add_row(
        "Dependencies",
        ", ".join(config.dependencies.patterns) if config.dependencies.enabled else "off",
    )
    table.add_row(
        "Task budget",
        f"${budget.per_task_limit:.2f} ({budget.on_task_budget_exceeded})"
        if budget.per_task_limit
        else "unlimited",
    )
    table.add_row(
        "Session budget",
        f"${budget.per_session_limit:.2f} (stop)" if budget.per_session_limit else "unlimited",
    )
    table.add_row("Budget warning", f"{budget.warning_threshold}%")
    if interactive.enabled:
        checkpoints = [
            name
            for name in ("pre_task", "phase1", "phase2")
            if interactive.checkpoint_enabled(name)
        ]
        table.add_row("Approval checkpoints", ", ".join(checkpoints) or "none")
    else:
        table.add_row("Approval checkpoints", "off")
    table.add_row(
        "Max iterations",
        f"{config.iteration.max_iterations} (then {config.iteration.on_max_iterations})",
    )
    table.add_row("Auto-merge", "on" if config.iteration.auto_merge else "off")
    hooks = [
        name
        for name, hook in config.hooks
        if hook is not None and hook.enabled
    ]
    table.add_row("Hooks", ", ".join(hooks) or "none")
    table.add_row("State directory", str(config.state_dir))

    console.print(table)

    pending = find_pending(config.state_dir)
    if pending:
        console.print(f"[yellow]{len(pending)} approval(s) pending[/yellow]")
    if PauseLock(config.state_dir).read() is not None:
        console.print("[yellow]Runner is paused[/yellow]")
    console.print("[green]Configuration is valid[/green]")


def main() -> None:
    """Main entry point for the backlog runner CLI."""
    cli()


if __name__ == "__main__":
    main()
