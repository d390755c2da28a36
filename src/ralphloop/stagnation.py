"""Stagnation tracking, adaptive recovery stages and the circuit breaker.

The tracker counts consecutive iterations that did not reduce the number of
pending tasks. The count only ever grows by one per check or resets to zero
when the pending count strictly decreased. Recovery escalates with the count:

    N = 0               normal
    N = 1               hint: try a different approach
    N = 2 .. (max - 1)  skip: abandon the stuck task, pick another
    N = max             escalate: stronger model for this one iteration
    N = max + 1         skip
    N > max + 1         circuit breaker (terminal)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_STAGNANT = 3


class RecoveryStage(str, Enum):
    """Recovery instruction for the upcoming iteration."""

    NORMAL = "normal"
    HINT = "hint"
    SKIP = "skip"
    ESCALATE = "escalate"
    CIRCUIT_BREAK = "circuit-break"


class CircuitBreakerTripped(Exception):
    """Raised when stagnation exhausted every recovery stage."""

    def __init__(self, stagnant_count: int, max_stagnant: int):
        self.stagnant_count = stagnant_count
        self.max_stagnant = max_stagnant
        super().__init__(
            f"No task completed in {stagnant_count} consecutive iterations "
            f"(limit {max_stagnant + 1})"
        )


@dataclass(frozen=True)
class StagnationState:
    """Snapshot of the tracker, for logs and the dashboard."""

    last_pending: Optional[int]
    stagnant_count: int


class StagnationTracker:
    """Counts consecutive stagnant iterations.

    Owned by the orchestrator and never persisted: a new loop invocation
    starts from zero.
    """

    def __init__(self, max_stagnant: int = DEFAULT_MAX_STAGNANT):
        if max_stagnant < 1:
            raise ValueError(f"max_stagnant must be at least 1, got {max_stagnant}")
        self.max_stagnant = max_stagnant
        self.last_pending: Optional[int] = None
        self.stagnant_count = 0

    def update(self, iteration: int, pending: int) -> RecoveryStage:
        """Record the pending count observed at the start of an iteration.

        Args:
            iteration: 1-based iteration number about to run.
            pending: Pending task count read from the task document.

        Returns:
            Recovery stage to apply to this iteration.
        """
        if self.last_pending is not None and pending < self.last_pending:
            if self.stagnant_count:
                logger.info(f"Progress detected, stagnation counter reset (was {self.stagnant_count})")
            self.stagnant_count = 0
        elif iteration > 1 and self.last_pending is not None:
            self.stagnant_count += 1
            logger.debug(f"Stagnant iterations: {self.stagnant_count}")

        self.last_pending = pending
        return self.stage

    def discount(self, removed: int) -> None:
        """Lower the reference count for tasks the loop itself took off the pending list.

        Auto-blocked tasks leave the pending count without any work being
        done, so the next update must not see them as progress.
        """
        if self.last_pending is not None and removed > 0:
            self.last_pending = max(0, self.last_pending - removed)

    @property
    def stage(self) -> RecoveryStage:
        n = self.stagnant_count
        if n > self.max_stagnant + 1:
            return RecoveryStage.CIRCUIT_BREAK
        if n == self.max_stagnant:
            return RecoveryStage.ESCALATE
        if n == 0:
            return RecoveryStage.NORMAL
        if n == 1:
            return RecoveryStage.HINT
        return RecoveryStage.SKIP

    @property
    def tripped(self) -> bool:
        return self.stage == RecoveryStage.CIRCUIT_BREAK

    def check(self) -> None:
        """Raise CircuitBreakerTripped if the breaker has fired."""
        if self.tripped:
            raise CircuitBreakerTripped(self.stagnant_count, self.max_stagnant)

    def state(self) -> StagnationState:
        return StagnationState(last_pending=self.last_pending, stagnant_count=self.stagnant_count)
