"""Append-only markdown log of loop iterations.

Each iteration appends a block to .ralph/progress.md. When the file grows past
max_lines it is rotated: everything but the most recent keep_lines lines
moves to progress-archive.md. The log is unversioned loop state.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

PROGRESS_HEADER = "# Ralph Loop Progress\n\n## Iteration Log\n\n"
PLACEHOLDER = "_No iterations yet._"
NO_PROGRESS = "No previous progress."

ROTATE_AFTER_LINES = 200
KEEP_LINES = 50

COMPLETED_STATUSES = frozenset({"verified", "completed"})
FAILURE_STATUSES = frozenset({"incomplete", "no-progress", "timeout", "suspicious", "blocked", "healthcheck-failed"})

HEADING_PATTERN = re.compile(r"^### Iteration (\d+) - (.+)$")
FIELD_PATTERN = re.compile(r"^- \*\*(Task|Status|Duration|Notes):\*\* ?(.*)$")


@dataclass(frozen=True)
class IterationRecord:
    """One entry of the progress log."""

    iteration: int
    task: str
    status: str
    notes: str = ""
    error_tail: Optional[str] = None
    duration: Optional[float] = None
    timestamp: str = ""

    def to_markdown(self) -> str:
        timestamp = self.timestamp or datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        lines = [
            "",
            f"### Iteration {self.iteration} - {timestamp}",
            f"- **Task:** {self.task}",
            f"- **Status:** {self.status}",
        ]
        if self.duration is not None:
            lines.append(f"- **Duration:** {int(self.duration)}s")
        if self.notes:
            lines.append(f"- **Notes:** {self.notes}")
        if self.error_tail:
            lines.append("- **Error context:**")
            lines.append("```")
            lines.append(self.error_tail.rstrip("\n"))
            lines.append("```")
        return "\n".join(lines) + "\n"


class ProgressLog:
    """Markdown iteration log with size-based rotation."""

    def __init__(
        self,
        path: Path,
        archive_path: Optional[Path] = None,
        rotate_after: int = ROTATE_AFTER_LINES,
        keep_lines: int = KEEP_LINES,
    ):
        self.path = Path(path)
        self.archive_path = Path(archive_path) if archive_path else self.path.with_name("progress-archive.md")
        self.rotate_after = rotate_after
        self.keep_lines = keep_lines

    def initialize(self) -> None:
        """Create the log with its header if it does not exist yet."""
        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(PROGRESS_HEADER + PLACEHOLDER + "\n", encoding="utf-8")

    def read_text(self) -> str:
        if not self.path.exists():
            return ""
        return self.path.read_text(encoding="utf-8")

    def append(self, record: IterationRecord) -> None:
        """Append one iteration block, rotating first if the log is too long."""
        self.initialize()
        text = self.read_text()
        if PLACEHOLDER in text:
            text = "\n".join("" if line == PLACEHOLDER else line for line in text.split("\n"))
            self.path.write_text(text, encoding="utf-8")

        self.rotate()
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(record.to_markdown())

    def rotate(self) -> int:
        """Move all but the last keep_lines lines to the archive.

        Returns:
            Number of lines archived (0 when under the threshold).
        """
        lines = self.read_text().splitlines(keepends=True)
        if len(lines) <= self.rotate_after:
            return 0

        archived, kept = lines[: -self.keep_lines], lines[-self.keep_lines:]
        with open(self.archive_path, "a", encoding="utf-8") as f:
            f.writelines(archived)
        self.path.write_text("".join(kept), encoding="utf-8")
        logger.info(f"Progress log rotated: {len(archived)} lines archived to {self.archive_path.name}")
        return len(archived)

    def entries(self) -> list[IterationRecord]:
        """Parse the iteration blocks currently in the log."""
        records = []
        current: Optional[dict] = None
        for line in self.read_text().splitlines():
            heading = HEADING_PATTERN.match(line)
            if heading:
                if current is not None:
                    records.append(IterationRecord(**current))
                current = {
                    "iteration": int(heading.group(1)),
                    "timestamp": heading.group(2).strip(),
                    "task": "",
                    "status": "",
                }
                continue
            if current is None:
                continue
            match = FIELD_PATTERN.match(line)
            if not match:
                continue
            name, value = match.group(1), match.group(2).strip()
            if name == "Duration":
                try:
                    current["duration"] = float(value.rstrip("s"))
                except ValueError:
                    pass
            else:
                current[name.lower()] = value
        if current is not None:
            records.append(IterationRecord(**current))
        return records

    def durations(self) -> list[float]:
        return [r.duration for r in self.entries() if r.duration is not None]

    def slowest_task(self) -> Optional[tuple[str, float]]:
        """Task of the longest iteration still in the log, with its duration."""
        timed = [r for r in self.entries() if r.duration]
        if not timed:
            return None
        slowest = max(timed, key=lambda r: r.duration)
        return slowest.task, slowest.duration

    def build_summary(self, recent_blocks: int = 5, recent_failures: int = 3) -> str:
        """Compact digest of past iterations for the agent prompt.

        Lists completed task titles, the most recent failures with their
        notes, and the raw text of the last few iteration blocks.
        """
        entries = self.entries()
        if not entries:
            return NO_PROGRESS

        sections = []
        completed = [r.task for r in entries if r.status in COMPLETED_STATUSES]
        if completed:
            sections.append("Completed tasks:\n" + "\n".join(f"- {t}" for t in completed))

        failures = [r for r in entries if r.status in FAILURE_STATUSES][-recent_failures:]
        if failures:
            lines = [f"- iter {r.iteration}: {r.task} [{r.status}] {r.notes}".rstrip() for r in failures]
            sections.append("Recent failures/issues:\n" + "\n".join(lines))

        blocks = self._raw_blocks()[-recent_blocks:]
        if blocks:
            sections.append("Last iterations:\n" + "\n".join(blocks))

        return "\n\n".join(sections)

    def _raw_blocks(self) -> list[str]:
        blocks: list[list[str]] = []
        for line in self.read_text().splitlines():
            if HEADING_PATTERN.match(line):
                blocks.append([line])
            elif blocks:
                blocks[-1].append(line)
        return ["\n".join(b).strip() for b in blocks]
