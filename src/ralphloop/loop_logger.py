"""Structured JSON session log for the task loop.

One JSON file per loop invocation under .ralph/logs/, holding every
iteration's verdict, commits, stashes and errors plus aggregate stats.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class LoopStats:
    """Statistics for one loop invocation."""

    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    iterations: int = 0
    tasks_completed: int = 0
    commits_made: int = 0
    stashes_made: int = 0
    failures_recorded: int = 0
    escalations: int = 0
    verdicts: dict[str, int] = field(default_factory=dict)

    @property
    def duration_seconds(self) -> float:
        """Get duration in seconds."""
        end = self.end_time or datetime.now()
        return (end - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": self.duration_seconds,
            "iterations": self.iterations,
            "tasks_completed": self.tasks_completed,
            "commits": self.commits_made,
            "stashes": self.stashes_made,
            "failures": self.failures_recorded,
            "escalations": self.escalations,
            "verdicts": dict(self.verdicts),
        }


class LoopLogger:
    """Logger for one invocation of the task loop."""

    def __init__(self, log_dir: Path, model: str = ""):
        """Initialize the loop logger.

        Args:
            log_dir: Directory for session log files (.ralph/logs).
            model: Default execution model, recorded in the session header.
        """
        self.log_dir = Path(log_dir)
        self.stats = LoopStats()

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.log_file = self.log_dir / f"session_{timestamp}.json"

        self.log_data: dict = {
            "session": {
                "id": timestamp,
                "model": model,
                "start_time": datetime.now().isoformat(),
            },
            "iterations": [],
            "errors": [],
        }

    def log_iteration_start(
        self,
        iteration: int,
        max_iterations: int,
        model: str,
        stage: str,
        pending: int,
    ) -> None:
        """Log the start of an iteration."""
        self.stats.iterations = iteration
        self.log_data["iterations"].append({
            "number": iteration,
            "max": max_iterations,
            "model": model,
            "stage": stage,
            "pending_before": pending,
            "start_time": datetime.now().isoformat(),
        })
        logger.debug(f"Iteration {iteration}/{max_iterations} started ({stage}, {pending} pending)")

    def log_verdict(
        self,
        verdict: str,
        task: str,
        signals: dict,
        duration: float,
        notes: str = "",
    ) -> None:
        """Record the verdict of the current iteration."""
        self.stats.verdicts[verdict] = self.stats.verdicts.get(verdict, 0) + 1
        if verdict in ("verified", "completed"):
            self.stats.tasks_completed += 1

        current = self._current()
        if current is not None:
            current.update({
                "end_time": datetime.now().isoformat(),
                "verdict": verdict,
                "task": task,
                "signals": signals,
                "duration_seconds": round(duration, 2),
                "notes": notes,
            })

    def log_commit(self, commit_hash: str, message: str) -> None:
        """Log a git commit."""
        self.stats.commits_made += 1
        current = self._current()
        if current is not None:
            current.setdefault("commits", []).append({
                "hash": commit_hash,
                "message": message,
                "timestamp": datetime.now().isoformat(),
            })

    def log_stash(self, message: str) -> None:
        self.stats.stashes_made += 1
        current = self._current()
        if current is not None:
            current["stash"] = message

    def log_failure(self, task: str, category: str, reason: str) -> None:
        self.stats.failures_recorded += 1
        current = self._current()
        if current is not None:
            current.setdefault("failures", []).append({
                "task": task,
                "category": category,
                "reason": reason,
            })

    def log_escalation(self, model: str) -> None:
        self.stats.escalations += 1
        current = self._current()
        if current is not None:
            current["escalated_to"] = model

    def log_error(self, error: str, context: Optional[dict] = None) -> None:
        """Log an error."""
        self.log_data["errors"].append({
            "timestamp": datetime.now().isoformat(),
            "error": error,
            "context": context or {},
        })
        logger.error(f"Loop error: {error}")

    def finalize(self, exit_code: int, reason: str = "") -> Optional[Path]:
        """Finalize the log and write it to disk.

        Returns:
            Path of the written log file, or None if writing failed.
        """
        self.stats.end_time = datetime.now()

        self.log_data["session"]["end_time"] = self.stats.end_time.isoformat()
        self.log_data["session"]["exit_code"] = exit_code
        self.log_data["session"]["reason"] = reason
        self.log_data["stats"] = self.stats.to_dict()

        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with open(self.log_file, "w", encoding="utf-8") as f:
                json.dump(self.log_data, f, indent=2)
            logger.info(f"Loop log written to: {self.log_file}")
        except OSError as e:
            logger.error(f"Failed to write loop log: {e}")
            return None
        return self.log_file

    def _current(self) -> Optional[dict]:
        if self.log_data["iterations"]:
            return self.log_data["iterations"][-1]
        return None
