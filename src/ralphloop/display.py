"""Console rendering for the loop: dashboard, verdict lines and summary."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .agent_runner import format_duration
from .config import LoopConfig
from .failure_ledger import FailureLedger
from .progress_log import ProgressLog
from .task_store import TaskCounts, TaskState, TaskStore
from .verdict import Verdict

VERDICT_STYLES: dict[Verdict, tuple[str, str]] = {
    Verdict.VERIFIED: ("✓", "green"),
    Verdict.COMPLETED: ("✓", "green"),
    Verdict.PARTIAL: ("◐", "yellow"),
    Verdict.TIMEOUT: ("⏱", "red"),
    Verdict.BLOCKED: ("⊘", "red"),
    Verdict.SUSPICIOUS: ("✗", "yellow"),
    Verdict.INCOMPLETE: ("◐", "yellow"),
    Verdict.NO_PROGRESS: ("✗", "red"),
    Verdict.HEALTHCHECK_FAILED: ("⚠", "yellow"),
}


def truncate(text: str, width: int = 45) -> str:
    return text if len(text) <= width else text[: width - 3] + "..."


def progress_bar(done: int, total: int, width: int = 24) -> Text:
    """Block-character progress bar colored by completion."""
    if total <= 0:
        return Text("[no tasks]", style="dim")
    pct = done * 100 // total
    filled = done * width // total
    color = "green" if pct >= 75 else "cyan" if pct >= 40 else "yellow"
    bar = Text()
    bar.append("[" + "█" * filled + "░" * (width - filled) + "]", style=color)
    bar.append(f" {done}/{total} ({pct}%)")
    return bar


def print_banner(console: Console, config: LoopConfig, prd_path: Path) -> None:
    table = Table.grid(padding=(0, 2))
    table.add_column(style="yellow")
    table.add_column()
    table.add_row("Model:", config.model)
    table.add_row("Escalation model:", config.escalation_model)
    table.add_row("Task document:", str(prd_path))
    table.add_row("Max iterations:", str(config.max_iterations))
    table.add_row("Stagnation limit:", f"{config.max_stagnant} iterations")
    table.add_row("Task timeout:", f"{config.task_timeout}s")
    table.add_row("Auto-commit:", "yes" if config.auto_commit else "no")
    if config.two_phase:
        table.add_row("Two-phase:", "yes")
    console.print(Panel.fit("[bold blue]Ralph Loop - Starting[/bold blue]", border_style="blue"))
    console.print(table)
    console.print()


def print_dashboard(
    console: Console,
    iteration: int,
    max_iterations: int,
    model: str,
    escalated: bool,
    stagnant: int,
    counts: TaskCounts,
    task_name: Optional[str],
) -> None:
    """Per-iteration header panel."""
    header = Text()
    header.append(f"Iteration {iteration}/{max_iterations}", style="bold")
    header.append(f"  |  {model}")
    if escalated:
        header.append(" [ESCALATED]", style="magenta")
    if stagnant:
        header.append(f"  |  stagnant: {stagnant}", style="yellow")

    body = Text("\n").join([header, progress_bar(counts.done, counts.total)])
    if task_name:
        body.append("\nNext: ")
        body.append(truncate(task_name), style="bold")
    console.print(Panel(body, border_style="cyan", expand=False))


def print_verdict(
    console: Console,
    verdict: Verdict,
    task: str,
    duration: float,
    detail: str = "",
) -> None:
    """One-line verdict with an optional dim detail line."""
    icon, color = VERDICT_STYLES.get(verdict, ("?", "dim"))
    line = Text()
    line.append(f"  {icon} {verdict.label}: {task}", style=color)
    line.append(f" [{format_duration(duration)}]")
    console.print(line)
    if detail:
        console.print(Text(f"    {detail}", style="dim"))


def print_circuit_breaker(console: Console, stagnant: int, max_stagnant: int, prd_path: Path) -> None:
    """Remediation guidance shown when the loop halts on stagnation."""
    console.print(Panel(
        f"[bold red]CIRCUIT BREAKER: stagnation detected[/bold red]\n\n"
        f"No task was completed in the last {stagnant} iterations "
        f"(limit {max_stagnant + 1}), even after hints, skipping and model escalation.\n\n"
        f"[yellow]Options:[/yellow]\n"
        f"  1. Review {prd_path}: break the stuck task into smaller subtasks\n"
        f"  2. Add more detail to AGENTS.md\n"
        f"  3. Run again with a different model: --model <model>\n"
        f"  4. Check .ralph/failed-tasks.txt for recurring failure reasons\n"
        f"  5. Run again to retry: ralph run",
        border_style="red",
    ))


def print_summary(
    console: Console,
    store: TaskStore,
    ledger: FailureLedger,
    progress: ProgressLog,
    iterations: int,
    elapsed: float,
) -> None:
    """End-of-run report: counts, durations, failure breakdown, task lists."""
    tasks = store.tasks() if store.exists() else []
    done = [t.title for t in tasks if t.state == TaskState.DONE]
    pending = [t.title for t in tasks if t.state == TaskState.PENDING]
    blocked = [t.title for t in tasks if t.state == TaskState.BLOCKED]
    total = len(tasks)

    if not pending and not blocked:
        color = "green"
    elif not done:
        color = "red"
    else:
        color = "yellow"

    console.print()
    console.print(Panel.fit(f"[bold {color}]Ralph Loop - Summary[/bold {color}]", border_style=color))
    console.print(progress_bar(len(done), total))
    console.print(
        f"  [green]Completed:[/green] {len(done)}    [yellow]Pending:[/yellow] {len(pending)}    "
        f"[red]Blocked:[/red] {len(blocked)}    [dim]Failed attempts:[/dim] {len(ledger)}"
    )

    avg_task = format_duration(elapsed / len(done)) if done else "n/a"
    avg_iter = format_duration(elapsed / iterations) if iterations else "n/a"
    console.print(
        f"  Iterations: {iterations}  |  Duration: {format_duration(elapsed)}  |  "
        f"Avg/task: {avg_task}  |  Avg/iteration: {avg_iter}"
    )
    slowest = progress.slowest_task()
    if slowest:
        console.print(f"  Slowest task: {slowest[0]} ({format_duration(slowest[1])})")

    categories = ledger.category_counts()
    if categories:
        console.print("\n  [red]Failure breakdown:[/red]")
        for category, count in sorted(categories.items(), key=lambda item: -item[1]):
            console.print(f"    {category}: {count}")

    if done:
        console.print("\n  [green]Completed:[/green]")
        for title in done:
            console.print(f"    [green]✓[/green] {title}")
    if pending:
        console.print("\n  [yellow]Remaining:[/yellow]")
        for title in pending:
            console.print(f"    [dim]○[/dim] {title}")
    if blocked:
        console.print("\n  [red]Blocked:[/red]")
        for title in blocked:
            console.print(f"    [red]⊘[/red] {title}")

    console.print(f"\n  [dim]Progress log: {progress.path}[/dim]")


def status_table(store: TaskStore, ledger: FailureLedger) -> Table:
    """Table of every task with its state and failed attempt count."""
    attempts = ledger.attempt_counts()
    table = Table(title="Tasks")
    table.add_column("#", style="dim", width=3)
    table.add_column("Task")
    table.add_column("Effort", style="dim")
    table.add_column("State")
    table.add_column("Failures", justify="right")

    state_styles = {
        TaskState.DONE: "[green]done[/green]",
        TaskState.PENDING: "[yellow]pending[/yellow]",
        TaskState.BLOCKED: "[red]blocked[/red]",
    }
    for index, task in enumerate(store.tasks(), 1):
        failures = attempts.get(task.title, 0)
        table.add_row(
            str(index),
            truncate(task.title, 60),
            task.effort.value,
            state_styles[task.state],
            str(failures) if failures else "",
        )
    return table
