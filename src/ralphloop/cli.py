"""CLI entrypoint for the ralph loop.

The loop operates on a single project directory. Loop files live in the
project's ``.ralph/`` directory; the task document is ``.ralph/prd.md``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from . import __version__
from .config import Config, ConfigError
from .display import status_table
from .failure_ledger import FailureLedger
from .orchestrator import Orchestrator
from .task_store import TaskStore, TaskStoreError

app = typer.Typer(
    name="ralph",
    help="Autonomous task loop that drives a coding agent through a markdown task list.",
    add_completion=False,
)

console = Console()


def setup_logging(verbose: bool = False, level: str = "INFO") -> None:
    """Configure logging with Rich handler.

    Args:
        verbose: If True, force DEBUG level.
        level: Level name used when not verbose.
    """
    resolved = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=resolved,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
        force=True,
    )
    # Keep git plumbing quiet unless debugging
    logging.getLogger("git").setLevel(logging.DEBUG if verbose else logging.WARNING)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"ralph version {__version__}")
        raise typer.Exit()


def load_config(project: Path) -> Config:
    """Load configuration for a project or exit with status 1."""
    if not project.exists():
        console.print(f"[red]Error:[/red] Project directory does not exist: {project}")
        raise typer.Exit(1)
    try:
        return Config.from_env(project)
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(1)


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Autonomous task loop for coding agents."""
    pass


@app.command()
def run(
    project: Path = typer.Option(
        Path.cwd(),
        "--project",
        "-p",
        help="Project directory containing .ralph/prd.md.",
    ),
    model: Optional[str] = typer.Option(
        None,
        "--model",
        "-m",
        help="Execution model for normal iterations (default: sonnet).",
    ),
    escalation_model: Optional[str] = typer.Option(
        None,
        "--escalation-model",
        help="Model used for the single escalated iteration (default: opus).",
    ),
    max_iterations: Optional[int] = typer.Option(
        None,
        "--max-iterations",
        "-n",
        help="Maximum iterations before stopping (default: 50).",
    ),
    max_stagnant: Optional[int] = typer.Option(
        None,
        "--max-stagnant",
        "-s",
        help="Stagnant iterations before escalation; the circuit breaker trips two later.",
    ),
    timeout: Optional[int] = typer.Option(
        None,
        "--timeout",
        "-t",
        help="Per-iteration time budget in seconds (default: 900, 0 disables).",
    ),
    commit: Optional[bool] = typer.Option(
        None,
        "--commit/--no-commit",
        help="Commit verified work after each iteration.",
    ),
    skip_hooks: bool = typer.Option(
        False,
        "--skip-hooks",
        help="Bypass pre-commit hooks when committing (--no-verify).",
    ),
    two_phase: bool = typer.Option(
        False,
        "--two-phase",
        help="Select the task with one agent call, implement it with a second.",
    ),
    checkpoint_interval: Optional[int] = typer.Option(
        None,
        "--checkpoint-interval",
        help="Insert a regression checkpoint task after every N tasks (0 disables).",
    ),
    agent_command: Optional[str] = typer.Option(
        None,
        "--agent-command",
        help="Agent command template with {model} and a standalone {prompt} placeholder.",
    ),
    no_healthcheck: bool = typer.Option(
        False,
        "--no-healthcheck",
        help="Skip verify commands after a completed task.",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Show what the first iteration would do without invoking the agent.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Enable verbose (DEBUG) logging.",
    ),
) -> None:
    """Run the task loop until all tasks are done, the budget runs out or it stalls.

    Exit codes: 0 all tasks done, 1 iteration budget exhausted or startup
    failure, 2 circuit breaker halt.
    """
    config = load_config(project.resolve())
    loop = config.loop

    if model:
        loop.model = model
    if escalation_model:
        loop.escalation_model = escalation_model
    if max_iterations is not None:
        loop.max_iterations = max_iterations
    if max_stagnant is not None:
        loop.max_stagnant = max_stagnant
    if timeout is not None:
        loop.task_timeout = timeout
    if commit is not None:
        loop.auto_commit = commit
    if skip_hooks:
        loop.skip_hooks = True
    if two_phase:
        loop.two_phase = True
    if checkpoint_interval is not None:
        loop.checkpoint_interval = checkpoint_interval
    if agent_command:
        loop.agent_command = agent_command
    if no_healthcheck:
        loop.healthcheck = False
    if dry_run:
        loop.dry_run = True

    setup_logging(verbose, loop.log_level)

    errors = config.validate()
    if errors:
        console.print("[red]Configuration errors:[/red]")
        for error in errors:
            console.print(f"  - {error}")
        raise typer.Exit(1)

    orchestrator = Orchestrator(config, console=console)
    try:
        result = orchestrator.run()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/yellow] Run again to continue.")
        raise typer.Exit(130)
    except TaskStoreError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if result.log_file:
        console.print(f"[dim]Session log: {result.log_file}[/dim]")
    raise typer.Exit(result.exit_code)


@app.command()
def status(
    project: Path = typer.Option(
        Path.cwd(),
        "--project",
        "-p",
        help="Project directory containing .ralph/prd.md.",
    ),
) -> None:
    """Show task states and failure history."""
    config = load_config(project.resolve())
    store = TaskStore(config.paths.prd)
    if not store.exists():
        console.print(f"[red]Error:[/red] Task document not found: {store.path}")
        raise typer.Exit(1)

    ledger = FailureLedger(config.paths.failed_tasks)
    counts = store.counts()
    console.print(status_table(store, ledger))
    console.print(
        f"\n[green]Done:[/green] {counts.done}  [yellow]Pending:[/yellow] {counts.pending}  "
        f"[red]Blocked:[/red] {counts.blocked}  Total: {counts.total}"
    )

    categories = ledger.category_counts()
    if categories:
        console.print("\n[bold]Failures by category:[/bold]")
        for category, count in sorted(categories.items(), key=lambda item: -item[1]):
            console.print(f"  {category}: {count}")

    offenders = ledger.repeat_offenders()
    if offenders:
        console.print("\n[bold]Repeatedly failing tasks:[/bold]")
        for title, count in offenders.items():
            last = ledger.failed_tasks_summary().get(title)
            reason = f" - {last.reason}" if last else ""
            console.print(f"  [red]{count}x[/red] {title}{reason}")


@app.command()
def validate(
    project: Path = typer.Option(
        Path.cwd(),
        "--project",
        "-p",
        help="Project directory containing .ralph/prd.md.",
    ),
) -> None:
    """Validate the task document and configuration."""
    config = load_config(project.resolve())
    result = TaskStore(config.paths.prd).validate()
    config_errors = config.validate()

    for warning in result.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")
    for error in result.errors + config_errors:
        console.print(f"[red]Error:[/red] {error}")

    if result.errors or config_errors:
        raise typer.Exit(1)
    console.print("[green]Task document is valid.[/green]")


@app.command()
def checkpoints(
    interval: int = typer.Option(
        ...,
        "--interval",
        "-i",
        help="Insert a checkpoint task after every N tasks.",
    ),
    project: Path = typer.Option(
        Path.cwd(),
        "--project",
        "-p",
        help="Project directory containing .ralph/prd.md.",
    ),
) -> None:
    """Insert regression checkpoint tasks into the task document."""
    config = load_config(project.resolve())
    store = TaskStore(config.paths.prd)
    if not store.exists():
        console.print(f"[red]Error:[/red] Task document not found: {store.path}")
        raise typer.Exit(1)
    if interval < 1:
        console.print("[red]Error:[/red] --interval must be at least 1")
        raise typer.Exit(1)

    inserted = store.insert_checkpoints(interval)
    if inserted:
        console.print(f"[green]Inserted {inserted} checkpoint task(s).[/green]")
    else:
        console.print("No checkpoints inserted (too few tasks or checkpoints already present).")


if __name__ == "__main__":
    app()
