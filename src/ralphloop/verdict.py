"""Verdict decision table for one loop iteration.

Signals are reconciled in fixed precedence order (first match wins):

    1. timed_out                                  -> TIMEOUT
    2. promise_blocked                            -> BLOCKED
    3. promise_done and task_marked_done          -> VERIFIED
    4. task_marked_done and not promise_done      -> COMPLETED
    5. promise_done, not marked, files changed    -> PARTIAL
    6. promise_done, not marked, no file changes  -> SUSPICIOUS
    7. no promise, not marked, files changed      -> INCOMPLETE
    8. otherwise                                  -> NO_PROGRESS

The checkbox edit is the strongest signal, the promise token corroborates it,
and a workspace change is the weakest.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .failure_ledger import FailureCategory
from .signals import Signals


class Verdict(str, Enum):
    """Categorical outcome of one iteration."""

    VERIFIED = "verified"
    COMPLETED = "completed"
    PARTIAL = "partial"
    SUSPICIOUS = "suspicious"
    INCOMPLETE = "incomplete"
    NO_PROGRESS = "no-progress"
    TIMEOUT = "timeout"
    BLOCKED = "blocked"
    HEALTHCHECK_FAILED = "healthcheck-failed"

    @property
    def label(self) -> str:
        return self.value.replace("-", " ").upper()


@dataclass(frozen=True)
class VerdictAction:
    """What the loop does with the workspace after a verdict."""

    commit: bool = False
    stash: bool = False
    failure_category: Optional[FailureCategory] = None
    note: str = ""

    @property
    def records_failure(self) -> bool:
        return self.failure_category is not None


VERDICT_ACTIONS: dict[Verdict, VerdictAction] = {
    Verdict.VERIFIED: VerdictAction(commit=True, note="Verified: promise string + checkbox"),
    Verdict.COMPLETED: VerdictAction(commit=True, note="Checkbox marked, no promise string"),
    Verdict.PARTIAL: VerdictAction(
        commit=True,
        note="Promise + file changes but checkbox not marked",
    ),
    Verdict.SUSPICIOUS: VerdictAction(
        failure_category=FailureCategory.SUSPICIOUS,
        note="Promise without evidence, retrying",
    ),
    Verdict.INCOMPLETE: VerdictAction(note="Files changed, no completion signal, will retry"),
    Verdict.NO_PROGRESS: VerdictAction(
        failure_category=FailureCategory.NO_PROGRESS,
        note="No file changes, no signals",
    ),
    Verdict.TIMEOUT: VerdictAction(
        stash=True,
        failure_category=FailureCategory.TIMEOUT,
        note="Exceeded time budget, partial work stashed",
    ),
    Verdict.BLOCKED: VerdictAction(note="Agent self-reported blocker"),
    Verdict.HEALTHCHECK_FAILED: VerdictAction(
        stash=True,
        failure_category=FailureCategory.TEST_FAIL,
        note="Verification commands failed after completion claim, work stashed",
    ),
}


class VerdictResolver:
    """Maps a Signals tuple to a Verdict. Stateless."""

    def resolve(self, signals: Signals) -> Verdict:
        if signals.timed_out:
            return Verdict.TIMEOUT
        if signals.promise_blocked:
            return Verdict.BLOCKED
        if signals.promise_done and signals.task_marked_done:
            return Verdict.VERIFIED
        if signals.task_marked_done:
            return Verdict.COMPLETED
        if signals.promise_done and signals.files_changed:
            return Verdict.PARTIAL
        if signals.promise_done:
            return Verdict.SUSPICIOUS
        if signals.files_changed:
            return Verdict.INCOMPLETE
        return Verdict.NO_PROGRESS

    @staticmethod
    def action_for(verdict: Verdict) -> VerdictAction:
        return VERDICT_ACTIONS[verdict]


def resolve(signals: Signals) -> Verdict:
    """Module-level shortcut for VerdictResolver().resolve()."""
    return VerdictResolver().resolve(signals)
