"""Task loop orchestration.

Each iteration reads the task document, picks the recovery stage, invokes
the agent once, collects signals, resolves a verdict and applies the
commit/stash/ledger policy for that verdict. The loop ends when no pending
task is left, when the iteration budget runs out or when the stagnation
circuit breaker trips.
"""

from __future__ import annotations

import hashlib
import logging
import re
import time
from collections import deque
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Callable, Optional

from rich.console import Console

from .agent_runner import AgentConfig, AgentResult, AgentRunner, OutputPeek
from .commit_gate import CommitGate
from .config import Config
from .display import (
    print_banner,
    print_circuit_breaker,
    print_dashboard,
    print_summary,
    print_verdict,
)
from .failure_ledger import FailureLedger
from .healthcheck import HealthcheckResult, run_healthcheck
from .learnings import Learnings
from .loop_logger import LoopLogger
from .progress_log import IterationRecord, ProgressLog
from .prompts import PromptBuilder, PromptContext
from .signals import (
    TASK_BLOCKED_TOKEN,
    TASK_DONE_TOKEN,
    TIMEOUT_EXIT_CODE,
    SignalCollector,
    Signals,
    parse_selected_task,
)
from .stagnation import CircuitBreakerTripped, RecoveryStage, StagnationTracker
from .task_store import CompletionSentinel, TaskCounts, TaskState, TaskStore
from .verdict import Verdict, VerdictResolver
from .workspace import WorkspaceRepo, fingerprint

logger = logging.getLogger(__name__)

SENTINEL_TITLES = {s.value for s in CompletionSentinel}

_DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}")
_ITERATION_RE = re.compile(r"[Ii]teration \d+")
_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[a-zA-Z]")


class ExitCode(IntEnum):
    """Process exit status of a loop invocation."""

    ALL_DONE = 0
    INCOMPLETE = 1
    CIRCUIT_BREAKER = 2


def output_hash(output: str) -> str:
    """Content signature of agent output with dates, iteration numbers and ANSI codes removed."""
    normalized = _DATE_RE.sub("", output)
    normalized = _ITERATION_RE.sub("iteration N", normalized)
    normalized = _ANSI_RE.sub("", normalized)
    return hashlib.sha256(normalized.encode("utf-8", errors="replace")).hexdigest()


@dataclass
class OrchestratorState:
    """Mutable state of one loop invocation, passed explicitly through the loop."""

    stagnation: StagnationTracker
    current_model: str
    iteration: int = 0
    loop_start: float = field(default_factory=time.monotonic)
    output_hashes: deque = field(default_factory=lambda: deque(maxlen=3))
    commits: int = 0
    stashes: int = 0

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.loop_start

    def track_output(self, output: str) -> bool:
        """Remember the output signature; True if it repeats the previous one."""
        digest = output_hash(output)
        repeated = bool(self.output_hashes) and self.output_hashes[-1] == digest
        self.output_hashes.append(digest)
        return repeated


@dataclass
class IterationOutcome:
    """What happened in one iteration."""

    iteration: int
    task: str
    verdict: Verdict
    signals: Signals
    model: str
    duration: float = 0.0
    notes: str = ""
    commit_hash: Optional[str] = None
    stashed: bool = False


@dataclass
class LoopResult:
    """Final result of a loop invocation."""

    exit_code: int
    reason: str
    iterations: int = 0
    outcomes: list[IterationOutcome] = field(default_factory=list)
    counts: TaskCounts = field(default_factory=TaskCounts)
    log_file: Optional[Path] = None

    @property
    def success(self) -> bool:
        return self.exit_code == ExitCode.ALL_DONE


class Orchestrator:
    """Drives the task loop over one project."""

    def __init__(
        self,
        config: Config,
        runner: Optional[AgentRunner] = None,
        console: Optional[Console] = None,
        healthcheck: Optional[Callable[..., HealthcheckResult]] = None,
    ):
        """Initialize the orchestrator.

        Args:
            config: Effective configuration (file, env and CLI layers applied).
            runner: Agent runner; a real subprocess runner by default.
            console: Console for user-facing output.
            healthcheck: Verification hook, run_healthcheck by default.
        """
        self.config = config
        self.loop = config.loop
        self.paths = config.paths
        self.console = console or Console()
        self.runner = runner or AgentRunner()
        self.healthcheck = healthcheck or run_healthcheck

        self.store = TaskStore(self.paths.prd)
        self.ledger = FailureLedger(self.paths.failed_tasks)
        self.progress = ProgressLog(self.paths.progress, self.paths.progress_archive)
        self.learnings = Learnings(self.paths.learnings)
        self.repo = WorkspaceRepo.open(config.project_dir, state_paths=self.paths.state_paths)
        self.gate = CommitGate(self.repo)

        self.collector = SignalCollector()
        self.resolver = VerdictResolver()
        self.prompts = PromptBuilder(TASK_DONE_TOKEN, TASK_BLOCKED_TOKEN)

    def agent_config(self, model: str, timeout: Optional[int] = None) -> AgentConfig:
        return AgentConfig(
            model=model,
            timeout=self.loop.task_timeout if timeout is None else timeout,
            command=self.loop.agent_command,
            cwd=self.config.project_dir,
        )

    def preflight(self) -> list[str]:
        """Check prerequisites before the loop starts.

        Returns:
            Fatal errors. Warnings are logged and do not stop the loop.
        """
        errors = []

        if not self.store.exists():
            errors.append(f"Task document not found: {self.paths.prd}")

        if self.repo is None:
            logger.warning("Not a git repository. Auto-commit will be disabled.")
            self.loop.auto_commit = False
        elif self.repo.has_tracked_changes():
            logger.warning("Working tree has uncommitted changes. Consider committing or stashing first.")

        if not self.loop.dry_run and not self.runner.is_available(self.agent_config(self.loop.model)):
            executable = self.agent_config(self.loop.model).executable
            errors.append(f"Agent executable not found: {executable}")

        if not self.paths.agents_file.exists():
            logger.warning("No AGENTS.md found. The agent will use generic conventions.")

        return errors

    def run(self) -> LoopResult:
        """Run the loop until done, out of budget or halted.

        Returns:
            LoopResult whose exit_code is 0 (all done), 1 (budget exhausted
            or failed preflight) or 2 (circuit breaker).
        """
        errors = self.preflight()
        if errors:
            for error in errors:
                self.console.print(f"[red]Error:[/red] {error}")
            return LoopResult(exit_code=ExitCode.INCOMPLETE, reason="preflight failed")

        self.paths.ensure()
        self.config.write_snapshot()
        self.progress.initialize()
        self.ledger.initialize()
        self.learnings.initialize()

        validation = self.store.validate()
        for warning in validation.warnings:
            logger.warning(warning)

        if self.loop.checkpoint_interval:
            inserted = self.store.insert_checkpoints(self.loop.checkpoint_interval)
            if inserted:
                self.console.print(f"[dim]Inserted {inserted} checkpoint task(s)[/dim]")

        print_banner(self.console, self.loop, self.paths.prd)

        state = OrchestratorState(
            stagnation=StagnationTracker(self.loop.max_stagnant),
            current_model=self.loop.model,
        )
        session = LoopLogger(self.paths.logs_dir, model=self.loop.model)
        outcomes: list[IterationOutcome] = []
        exit_code = ExitCode.INCOMPLETE
        reason = f"iteration budget of {self.loop.max_iterations} exhausted"

        try:
            while state.iteration < self.loop.max_iterations:
                state.iteration += 1
                state.stagnation.discount(self._auto_block(state))

                counts = self.store.counts()
                if counts.pending == 0:
                    exit_code, reason = ExitCode.ALL_DONE, "all tasks done"
                    state.iteration -= 1
                    break

                stage = state.stagnation.update(state.iteration, counts.pending)
                state.stagnation.check()

                if self.loop.dry_run:
                    self._dry_run(state, stage, counts)
                    exit_code, reason = ExitCode.ALL_DONE, "dry run"
                    break

                outcome = self.run_iteration(state, stage, counts, session)
                outcomes.append(outcome)
            else:
                if self.store.counts().pending == 0:
                    exit_code, reason = ExitCode.ALL_DONE, "all tasks done"
        except CircuitBreakerTripped as e:
            exit_code, reason = ExitCode.CIRCUIT_BREAKER, str(e)
            self.progress.append(IterationRecord(
                iteration=state.iteration,
                task="(circuit breaker)",
                status="halted",
                notes=str(e),
            ))
            session.log_error(str(e), {"stagnant": e.stagnant_count})
            print_circuit_breaker(self.console, e.stagnant_count, e.max_stagnant, self.paths.prd)
        finally:
            log_file = session.finalize(int(exit_code), reason)

        counts = self.store.counts()
        if exit_code == ExitCode.ALL_DONE and reason != "dry run":
            if counts.blocked:
                self.console.print(f"\n[bold yellow]No pending tasks left ({counts.blocked} blocked).[/bold yellow]")
            else:
                self.console.print("\n[bold green]All tasks completed![/bold green]")
        elif exit_code == ExitCode.INCOMPLETE:
            self.console.print(
                f"\n[yellow]Maximum iterations ({self.loop.max_iterations}) reached. "
                f"{counts.pending} tasks pending, {counts.blocked} blocked. Run again to continue.[/yellow]"
            )

        if reason != "dry run":
            print_summary(self.console, self.store, self.ledger, self.progress, state.iteration, state.elapsed)

        return LoopResult(
            exit_code=int(exit_code),
            reason=reason,
            iterations=state.iteration,
            outcomes=outcomes,
            counts=counts,
            log_file=log_file,
        )

    def run_iteration(
        self,
        state: OrchestratorState,
        stage: RecoveryStage,
        counts: TaskCounts,
        session: LoopLogger,
    ) -> IterationOutcome:
        """Invoke the agent once and apply the verdict policy."""
        model = self.loop.escalation_model if stage == RecoveryStage.ESCALATE else self.loop.model
        escalated = model != self.loop.model
        state.current_model = model

        next_task = self.store.next_pending()
        print_dashboard(
            self.console,
            state.iteration,
            self.loop.max_iterations,
            model,
            escalated,
            state.stagnation.stagnant_count,
            counts,
            next_task.title if next_task else None,
        )
        session.log_iteration_start(state.iteration, self.loop.max_iterations, model, stage.value, counts.pending)
        if escalated:
            logger.warning(f"Escalating to {model} for this iteration")
            session.log_escalation(model)

        before_text = self.store.read_text()
        fp_before = fingerprint(self.repo)
        context = self._prompt_context(state.iteration, counts, stage)

        started = time.monotonic()
        if self.loop.two_phase:
            result = self._two_phase(context, model, state)
        else:
            result = self._implement(context, model, state)
        duration = time.monotonic() - started

        self._recover_document(before_text)

        pending_after = self.store.counts().pending
        fp_after = fingerprint(self.repo)
        signals = self.collector.observe(
            output=result.output,
            fingerprint_before=fp_before,
            fingerprint_after=fp_after,
            pending_before=counts.pending,
            pending_after=pending_after,
            exit_code=result.exit_code,
        )
        verdict = self.resolver.resolve(signals)
        logger.debug(f"Signals: {signals.describe()} -> {verdict.value}")

        task = self.store.identify_completed(before_text, self.repo)
        if task in SENTINEL_TITLES:
            if context.selected_task:
                task = context.selected_task
            elif next_task and self.resolver.action_for(verdict).records_failure:
                # Charge the failure to the task the agent was expected to pick
                task = next_task.title

        notes = [self.resolver.action_for(verdict).note]
        error_tail = None

        if verdict == Verdict.TIMEOUT:
            notes[0] = f"Exceeded {self.loop.task_timeout}s. Files changed: {'yes' if signals.files_changed else 'no'}"
        elif result.exit_code != 0 and verdict in (Verdict.NO_PROGRESS, Verdict.INCOMPLETE):
            error_tail = result.tail()
            notes.append(f"agent exited with code {result.exit_code}")

        if verdict in (Verdict.VERIFIED, Verdict.COMPLETED) and self.loop.healthcheck:
            check = self.healthcheck(self.config.project_dir, self.loop.healthcheck_timeout)
            if not check.passed:
                verdict = Verdict.HEALTHCHECK_FAILED
                notes = [self.resolver.action_for(verdict).note, "failed: " + ", ".join(check.failed_commands)]
                error_tail = "\n".join(check.output.splitlines()[-20:])

        outcome = IterationOutcome(
            iteration=state.iteration,
            task=task,
            verdict=verdict,
            signals=signals,
            model=model,
            duration=duration,
        )
        self._apply_policy(outcome, state, session, notes)

        if state.track_output(result.output):
            notes.append("Repeated output detected (agent may be stuck in a loop)")
            logger.warning("Agent output identical to the previous iteration")

        outcome.notes = "; ".join(n for n in notes if n)
        self.progress.append(IterationRecord(
            iteration=state.iteration,
            task=task,
            status=verdict.value,
            notes=outcome.notes,
            error_tail=error_tail,
            duration=duration,
        ))
        session.log_verdict(verdict.value, task, _signals_dict(signals), duration, outcome.notes)
        print_verdict(self.console, verdict, task, duration, outcome.notes)
        return outcome

    def _apply_policy(
        self,
        outcome: IterationOutcome,
        state: OrchestratorState,
        session: LoopLogger,
        notes: list[str],
    ) -> None:
        """Commit, stash and record failures as the verdict's action demands."""
        action = self.resolver.action_for(outcome.verdict)

        if action.commit:
            if self.loop.auto_commit:
                result = self.gate.commit(f"ralph: {outcome.task}", skip_hooks=self.loop.skip_hooks)
                if result.committed:
                    outcome.commit_hash = result.commit_hash
                    state.commits += 1
                    session.log_commit(result.commit_hash, result.message)
                    notes.append(f"commit {result.commit_hash}")
                elif not result.success:
                    notes.append("commit rejected, changes left staged")
                    session.log_error(f"Commit failed: {result.error}", {"iteration": outcome.iteration})
                if result.excluded_sensitive:
                    notes.append(f"excluded sensitive: {', '.join(result.excluded_sensitive)}")
            if outcome.verdict in (Verdict.VERIFIED, Verdict.COMPLETED):
                task = self.store.find(outcome.task)
                self.learnings.append(outcome.task, task.files if task else [])

        if action.stash:
            revert = self.gate.revert(outcome.iteration, outcome.verdict.value)
            if revert.stashed:
                outcome.stashed = True
                state.stashes += 1
                session.log_stash(revert.message)
                notes.append("partial work stashed")
            elif not revert.success:
                session.log_error(f"Stash failed: {revert.error}", {"iteration": outcome.iteration})

        if action.records_failure:
            reason = notes[0] if notes else action.note
            self.ledger.record(outcome.task, outcome.iteration, action.failure_category, reason)
            session.log_failure(outcome.task, action.failure_category.value, reason)

    def _implement(
        self,
        context: PromptContext,
        model: str,
        state: OrchestratorState,
        timeout: Optional[int] = None,
    ) -> AgentResult:
        prompt = self.prompts.build_task_prompt(context)
        config = self.agent_config(model, timeout)
        with OutputPeek(self.console, config.timeout, loop_start=state.loop_start) as peek:
            return self.runner.invoke(config, prompt, observer=peek.feed)

    def _two_phase(self, context: PromptContext, model: str, state: OrchestratorState) -> AgentResult:
        """Select a task with one call, then implement it with a second.

        Both calls share the iteration's time budget. A selection that
        times out, or leaves no budget, is the iteration's result.
        """
        selection = self.runner.invoke(self.agent_config(model), self.prompts.build_selection_prompt(context))
        if selection.timed_out:
            return selection

        context.selected_task = parse_selected_task(selection.output)
        if context.selected_task:
            self.console.print(f"  [dim]Selected: {context.selected_task}[/dim]")
        else:
            logger.warning("Selection call did not name a task, continuing unpinned")

        if not self.loop.task_timeout:
            return self._implement(context, model, state)
        remaining = self.loop.task_timeout - int(selection.duration)
        if remaining <= 0:
            return AgentResult(output=selection.output, exit_code=TIMEOUT_EXIT_CODE, duration=selection.duration)
        return self._implement(context, model, state, timeout=remaining)

    def _prompt_context(self, iteration: int, counts: TaskCounts, stage: RecoveryStage) -> PromptContext:
        return PromptContext(
            iteration=iteration,
            done=counts.done,
            pending=counts.pending,
            blocked=counts.blocked,
            stage=stage,
            agents_md=self.prompts.read_agents_md(self.paths.agents_file),
            progress_summary=self.progress.build_summary(),
            failed_tasks=self.ledger.format_for_prompt(),
            learnings=self.learnings.recent(),
            prd_path=self.paths.prd.relative_to(self.config.project_dir).as_posix(),
        )

    def _recover_document(self, before_text: str) -> None:
        """Restore the task document if the agent deleted or truncated it."""
        if self.store.exists() and not self.store.is_corrupted():
            return
        logger.warning("Task document lost all checkboxes, attempting restore from last commit")
        if self.store.restore_from_repo(self.repo):
            return
        if not self.store.exists():
            self.store.path.write_text(before_text, encoding="utf-8")
            self.console.print("[yellow]Warning:[/yellow] task document was deleted, rewrote the pre-iteration copy.")
            return
        self.console.print(
            "[yellow]Warning:[/yellow] task document looks corrupted and no committed "
            "version is available. Continuing with the damaged document."
        )

    def _auto_block(self, state: OrchestratorState) -> int:
        """Flip repeat offenders to blocked before the iteration starts.

        Returns:
            Number of tasks blocked.
        """
        blocked = 0
        if self.loop.auto_block_after <= 0:
            return blocked
        for title, attempts in self.ledger.repeat_offenders(self.loop.auto_block_after).items():
            if title in SENTINEL_TITLES:
                continue
            task = self.store.find(title)
            if task is None or task.state != TaskState.PENDING:
                continue
            self.store.mark_blocked(task.title)
            blocked += 1
            self.progress.append(IterationRecord(
                iteration=state.iteration,
                task=task.title,
                status="auto-blocked",
                notes=f"Exceeded max attempts ({attempts} failures)",
            ))
            self.console.print(f"  [red]⊘ Auto-blocked after {attempts} failures:[/red] {task.title}")
        return blocked

    def _dry_run(self, state: OrchestratorState, stage: RecoveryStage, counts: TaskCounts) -> None:
        model = self.loop.escalation_model if stage == RecoveryStage.ESCALATE else self.loop.model
        context = self._prompt_context(state.iteration, counts, stage)
        prompt = self.prompts.build_task_prompt(context)
        next_task = self.store.next_pending()
        self.console.print(f"[yellow][DRY RUN] Would send the task document to {model}[/yellow]")
        self.console.print(f"  Pending: {counts.pending}  Done: {counts.done}  Blocked: {counts.blocked}")
        if next_task:
            self.console.print(f"  First pending task: {next_task.title}")
        self.console.print(f"  Command: {self.agent_config(model).executable} ({len(prompt)} char prompt)")
        logger.debug(prompt)


def _signals_dict(signals: Signals) -> dict:
    return {
        "promise_done": signals.promise_done,
        "promise_blocked": signals.promise_blocked,
        "task_marked_done": signals.task_marked_done,
        "files_changed": signals.files_changed,
        "timed_out": signals.timed_out,
    }
