"""Append-only ledger of failed task attempts.

Each failure is one line in .ralph/failed-tasks.txt:

    2024-05-01 12:00:00 | iter 4 | Add login form | suspicious | Promise without evidence

History is never rewritten. Queries collapse the records per task for prompt
injection and surface repeat offenders for auto-blocking.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

LEDGER_HEADER = "# Failed Tasks (tracked automatically)"
FIELD_SEPARATOR = " | "
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


class FailureCategory(str, Enum):
    """Why an attempt was counted as a failure."""

    STAGNATION = "stagnation"
    TIMEOUT = "timeout"
    TEST_FAIL = "test-fail"
    NO_PROGRESS = "no-progress"
    BLOCKED = "blocked"
    SUSPICIOUS = "suspicious"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class FailureRecord:
    """A single failed attempt."""

    timestamp: str
    iteration: str
    task: str
    category: str
    reason: str

    def to_line(self) -> str:
        return FIELD_SEPARATOR.join(
            [self.timestamp, f"iter {self.iteration}", self.task, self.category, self.reason]
        )

    @classmethod
    def from_line(cls, line: str) -> Optional[FailureRecord]:
        """Parse a ledger line; legacy 4-field lines have no category."""
        parts = line.rstrip("\n").split(FIELD_SEPARATOR)
        if len(parts) < 4:
            return None

        iteration = parts[1].strip()
        if iteration.startswith("iter "):
            iteration = iteration[len("iter "):]

        if len(parts) >= 5:
            category = parts[3].strip()
            reason = FIELD_SEPARATOR.join(parts[4:]).strip()
        else:
            category = FailureCategory.UNKNOWN.value
            reason = parts[3].strip()

        return cls(
            timestamp=parts[0].strip(),
            iteration=iteration,
            task=parts[2].strip(),
            category=category,
            reason=reason,
        )


class FailureLedger:
    """Persistent, append-only record of failed attempts."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def initialize(self) -> None:
        """Create the ledger file with its header if missing."""
        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(LEDGER_HEADER + "\n", encoding="utf-8")

    def record(
        self,
        task: str,
        iteration: int | str,
        category: FailureCategory | str,
        reason: str,
    ) -> FailureRecord:
        """Append a failure record.

        Args:
            task: Task title (or sentinel) the attempt was attributed to.
            iteration: Loop iteration number.
            category: Failure category.
            reason: Free-text reason, flattened to one line.

        Returns:
            The record that was written.
        """
        self.initialize()
        category_value = category.value if isinstance(category, FailureCategory) else str(category)
        record = FailureRecord(
            timestamp=datetime.now().strftime(TIMESTAMP_FORMAT),
            iteration=str(iteration),
            task=_one_line(task),
            category=category_value,
            reason=_one_line(reason),
        )
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(record.to_line() + "\n")
        logger.debug(f"Recorded failure for '{record.task}' ({record.category})")
        return record

    def records(self) -> list[FailureRecord]:
        """All records in write order."""
        if not self.path.exists():
            return []

        records = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            if not line.strip() or line.startswith("#"):
                continue
            record = FailureRecord.from_line(line)
            if record is None:
                logger.debug(f"Skipping malformed ledger line: {line!r}")
                continue
            records.append(record)
        return records

    def __len__(self) -> int:
        return len(self.records())

    def failed_tasks_summary(self) -> dict[str, FailureRecord]:
        """Most recent failure per task, keyed by title."""
        summary: dict[str, FailureRecord] = {}
        for record in self.records():
            summary[record.task] = record
        return summary

    def attempt_count(self, task: str) -> int:
        return sum(1 for record in self.records() if record.task == task)

    def attempt_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for record in self.records():
            counts[record.task] = counts.get(record.task, 0) + 1
        return counts

    def repeat_offenders(self, min_count: int = 2) -> dict[str, int]:
        """Tasks that failed at least min_count times, with their counts."""
        return {task: n for task, n in self.attempt_counts().items() if n >= min_count}

    def category_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for record in self.records():
            counts[record.category] = counts.get(record.category, 0) + 1
        return counts

    def format_for_prompt(self) -> str:
        """Render the per-task summary for the agent prompt."""
        lines = []
        for task, record in self.failed_tasks_summary().items():
            lines.append(f'- "{task}" [{record.category}] iter {record.iteration}: {record.reason}')
        return "\n".join(lines)


def _one_line(text: str) -> str:
    return " ".join(str(text).split()).replace(FIELD_SEPARATOR, " / ")
