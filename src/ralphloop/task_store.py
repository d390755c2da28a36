"""Task document parsing and state tracking for the ralph loop.

The task document is a markdown checklist that the external agent edits while
it works. This module provides:
- A line-oriented parser producing typed Task entries
- Counts by state (pending, done, blocked)
- Completion detection by diffing two document snapshots
- Validation, checkpoint insertion and corruption recovery

The document stays the sole source of truth: every query re-reads the file.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .workspace import WorkspaceRepo

logger = logging.getLogger(__name__)


class TaskState(str, Enum):
    """Checkbox state of a task."""

    PENDING = "pending"
    DONE = "done"
    BLOCKED = "blocked"


class Effort(str, Enum):
    """Effort label attached to a task header."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    UNSPECIFIED = "unspecified"


class CompletionSentinel(str, Enum):
    """Returned when no newly completed task can be identified."""

    FIRST_RUN = "initial setup"
    UNKNOWN = "unknown task"


CHECKBOX_STATES = {
    " ": TaskState.PENDING,
    "x": TaskState.DONE,
    "X": TaskState.DONE,
    "~": TaskState.BLOCKED,
}

CHECKBOX_MARKS = {
    TaskState.PENDING: " ",
    TaskState.DONE: "x",
    TaskState.BLOCKED: "~",
}

CHECKPOINT_PREFIX = "Checkpoint "

CHECKPOINT_DESCRIPTION = (
    "Run full build and test suite. Verify all previously completed features "
    "still work. Fix any regressions found before proceeding."
)
CHECKPOINT_FILES = "(none - verification and regression fixing only)"
CHECKPOINT_ACCEPTANCE = (
    "All existing tests pass, application builds successfully, "
    "no regressions in completed features"
)

_HEADER_RE = re.compile(r"^- \[([ xX~])\]\s*(.*)$")
_EFFORT_RE = re.compile(r"\[effort:\s*([^\]]*)\]", re.IGNORECASE)
_DETAIL_RE = re.compile(r"^\s+-\s*(Description|Files|Acceptance):\s*(.*)$")


class TaskStoreError(Exception):
    """Exception raised for task document errors."""

    pass


@dataclass
class Task:
    """A single checklist entry of the task document."""

    title: str
    state: TaskState = TaskState.PENDING
    effort: Effort = Effort.UNSPECIFIED
    description: str = ""
    acceptance: Optional[str] = None
    files: list[str] = field(default_factory=list)
    line_number: int = 0

    @property
    def is_checkpoint(self) -> bool:
        return self.title.startswith(CHECKPOINT_PREFIX)


@dataclass
class TaskCounts:
    """Number of tasks in each state."""

    pending: int = 0
    done: int = 0
    blocked: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.done + self.blocked


@dataclass
class ValidationResult:
    """Outcome of validating a task document."""

    ok: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _parse_header(line: str) -> Optional[tuple[TaskState, str, Effort]]:
    """Parse a task header line into (state, title, effort)."""
    match = _HEADER_RE.match(line)
    if not match:
        return None

    state = CHECKBOX_STATES[match.group(1)]
    rest = match.group(2).strip()

    effort = Effort.UNSPECIFIED
    effort_match = _EFFORT_RE.search(rest)
    if effort_match:
        label = effort_match.group(1).strip().lower()
        try:
            effort = Effort(label)
        except ValueError:
            effort = Effort.UNSPECIFIED

    if rest.startswith("**"):
        end = rest.find("**", 2)
        title = rest[2:end] if end != -1 else rest[2:]
    else:
        title = _EFFORT_RE.sub("", rest)

    return state, title.strip(), effort


def _parse_files(value: str) -> list[str]:
    value = value.strip()
    if not value or value.startswith("(none"):
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def parse_tasks(text: str) -> list[Task]:
    """Parse task document text into Task objects.

    Args:
        text: Full task document content.

    Returns:
        Tasks in document order.
    """
    tasks: list[Task] = []
    current: Optional[Task] = None

    for index, line in enumerate(text.splitlines()):
        header = _parse_header(line)
        if header:
            state, title, effort = header
            current = Task(title=title, state=state, effort=effort, line_number=index)
            tasks.append(current)
            continue

        if current is None:
            continue

        detail = _DETAIL_RE.match(line)
        if detail:
            key, value = detail.group(1), detail.group(2).strip()
            if key == "Description":
                current.description = value
            elif key == "Files":
                current.files = _parse_files(value)
            elif key == "Acceptance":
                current.acceptance = value
        elif line.strip() and not line[0].isspace():
            # Unindented prose ends the current task block
            current = None

    return tasks


def count_tasks(tasks: list[Task]) -> TaskCounts:
    counts = TaskCounts()
    for task in tasks:
        if task.state == TaskState.PENDING:
            counts.pending += 1
        elif task.state == TaskState.DONE:
            counts.done += 1
        else:
            counts.blocked += 1
    return counts


def detect_newly_completed(before: Optional[str], after: str) -> str:
    """Find the task whose checkbox flipped from pending to done.

    Args:
        before: Document text before the iteration, or None when no prior
            snapshot exists.
        after: Document text after the iteration.

    Returns:
        Title of the first newly completed task, CompletionSentinel.FIRST_RUN
        when there was no prior snapshot, or CompletionSentinel.UNKNOWN.
    """
    if before is None:
        return CompletionSentinel.FIRST_RUN.value

    previous = {task.title: task.state for task in parse_tasks(before)}
    for task in parse_tasks(after):
        if task.state == TaskState.DONE and previous.get(task.title) == TaskState.PENDING:
            return task.title

    return CompletionSentinel.UNKNOWN.value


def format_checkpoint(number: int, final: bool = False) -> list[str]:
    """Render a checkpoint task block as document lines."""
    label = "Final Integration Verification" if final else "Integration Verification"
    return [
        f"- [ ] **{CHECKPOINT_PREFIX}{number}: {label}** [effort: low]",
        f"  - Description: {CHECKPOINT_DESCRIPTION}",
        f"  - Files: {CHECKPOINT_FILES}",
        f"  - Acceptance: {CHECKPOINT_ACCEPTANCE}",
    ]


class TaskStore:
    """Reads and repairs the task document.

    The store never flips a task to done itself; that is the agent's job.
    It only writes for checkpoint insertion, auto-blocking repeat offenders
    and corruption recovery.
    """

    def __init__(self, path: Path):
        """Initialize the task store.

        Args:
            path: Path to the task document (usually .ralph/prd.md).
        """
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.is_file()

    def read_text(self) -> str:
        """Read the document text.

        Raises:
            TaskStoreError: If the document does not exist.
        """
        if not self.exists():
            raise TaskStoreError(f"Task document not found: {self.path}")
        return self.path.read_text(encoding="utf-8")

    def _write_text(self, text: str) -> None:
        self.path.write_text(text, encoding="utf-8")

    def tasks(self) -> list[Task]:
        """Parse the current document into tasks."""
        return parse_tasks(self.read_text())

    def counts(self) -> TaskCounts:
        """Get task counts by state."""
        return count_tasks(self.tasks())

    def count_by_state(self, state: TaskState) -> int:
        return sum(1 for task in self.tasks() if task.state == state)

    def next_pending(self) -> Optional[Task]:
        """Get the first pending task in document order."""
        for task in self.tasks():
            if task.state == TaskState.PENDING:
                return task
        return None

    def find(self, title: str) -> Optional[Task]:
        """Find a task by exact title, falling back to unambiguous substring.

        Args:
            title: Full or partial task title.

        Returns:
            The matching task, or None if nothing (or more than one) matches.
        """
        tasks = self.tasks()
        for task in tasks:
            if task.title == title:
                return task

        candidates = [task for task in tasks if title and title in task.title]
        if len(candidates) == 1:
            return candidates[0]
        if len(candidates) > 1:
            logger.debug(f"Ambiguous task title '{title}' matches {len(candidates)} tasks")
        return None

    def validate(self) -> ValidationResult:
        """Validate a freshly generated document.

        Fails when no pending tasks exist; warns for each task that has no
        acceptance criterion.
        """
        result = ValidationResult(ok=True)
        if not self.exists():
            result.ok = False
            result.errors.append(f"Task document not found: {self.path}")
            return result

        tasks = self.tasks()
        if not any(task.state == TaskState.PENDING for task in tasks):
            result.ok = False
            result.errors.append("Task document has no pending tasks (no '- [ ]' lines found)")

        missing = [task.title for task in tasks if task.state == TaskState.PENDING and not task.acceptance]
        for title in missing:
            result.warnings.append(f"Task missing acceptance criteria: {title}")

        return result

    def insert_checkpoints(self, interval: int) -> int:
        """Insert checkpoint tasks after every `interval` pending tasks.

        A final checkpoint is appended when tasks remain after the last one.
        Documents that already contain checkpoint tasks are left untouched.

        Args:
            interval: Number of real tasks between checkpoints. 0 disables.

        Returns:
            Number of checkpoint tasks inserted.
        """
        if interval <= 0 or not self.exists():
            return 0

        tasks = self.tasks()
        if any(task.is_checkpoint for task in tasks):
            logger.debug("Checkpoint tasks already present, skipping insertion")
            return 0

        real_pending = [t for t in tasks if t.state == TaskState.PENDING]
        if len(real_pending) <= interval:
            return 0

        header_lines = {t.line_number for t in real_pending}
        output: list[str] = []
        task_count = 0
        checkpoint_num = 0
        last_checkpoint_at = 0

        for index, line in enumerate(self.read_text().splitlines()):
            if index in header_lines:
                task_count += 1
                if task_count - last_checkpoint_at - 1 >= interval:
                    checkpoint_num += 1
                    last_checkpoint_at = task_count - 1
                    output.append("")
                    output.extend(format_checkpoint(checkpoint_num))
                    output.append("")
            output.append(line)

        if task_count - last_checkpoint_at > 0:
            checkpoint_num += 1
            output.append("")
            output.extend(format_checkpoint(checkpoint_num, final=True))

        self._write_text("\n".join(output) + "\n")
        logger.info(f"Inserted {checkpoint_num} checkpoint task(s) every {interval} tasks")
        return checkpoint_num

    def mark_blocked(self, title: str) -> None:
        """Flip a pending task to blocked.

        Raises:
            TaskStoreError: If the task is missing or not pending.
        """
        task = self.find(title)
        if task is None:
            raise TaskStoreError(f"Task not found: {title}")
        if task.state != TaskState.PENDING:
            raise TaskStoreError(
                f"Invalid transition for '{task.title}': {task.state.value} -> blocked"
            )

        lines = self.read_text().splitlines()
        line = lines[task.line_number]
        lines[task.line_number] = line.replace("[ ]", f"[{CHECKBOX_MARKS[TaskState.BLOCKED]}]", 1)
        self._write_text("\n".join(lines) + "\n")
        logger.info(f"Task '{task.title}' status -> blocked")

    def is_corrupted(self) -> bool:
        """True when the document lost all pending and done checkboxes."""
        counts = self.counts()
        return counts.pending == 0 and counts.done == 0

    def restore_from_repo(self, repo: Optional[WorkspaceRepo]) -> bool:
        """Restore the last committed version of the document.

        Args:
            repo: Workspace repository, or None outside version control.

        Returns:
            True if the document was restored.
        """
        if repo is None:
            return False

        committed = repo.show_committed(self.path)
        if committed is None:
            return False

        if not parse_tasks(committed):
            logger.warning("Committed task document has no tasks either, not restoring")
            return False

        self._write_text(committed)
        logger.warning(f"Restored task document from last commit: {self.path}")
        return True

    def identify_completed(
        self,
        before: Optional[str],
        repo: Optional[WorkspaceRepo] = None,
    ) -> str:
        """Identify which task the last iteration completed.

        Diffs the pre-iteration snapshot against the current document. When
        nothing flipped and the document has never been committed, the
        iteration is reported as the first run rather than an unknown task.

        Args:
            before: Document text captured before the iteration.
            repo: Workspace repository used to look up the committed version.

        Returns:
            Task title or a CompletionSentinel value.
        """
        title = detect_newly_completed(before, self.read_text())
        if title != CompletionSentinel.UNKNOWN.value:
            return title

        if repo is None or repo.show_committed(self.path) is None:
            return CompletionSentinel.FIRST_RUN.value
        return title
