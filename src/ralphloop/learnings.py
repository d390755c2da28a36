"""Append-only knowledge base of completed tasks (.ralph/learnings.md)."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)

LEARNINGS_HEADER = "# Ralph Loop Learnings\n\n_Patterns discovered during task execution._\n"
ENTRY_PREFIX = "- ["


class Learnings:
    """Records which files each completed task touched."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def initialize(self) -> None:
        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(LEARNINGS_HEADER, encoding="utf-8")

    def append(self, task: str, files: Iterable[str]) -> None:
        """Add one entry for a committed task."""
        self.initialize()
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        file_list = ", ".join(files) or "(none listed)"
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(f"- [{timestamp}] **{task}** - files: {file_list}\n")
        logger.debug(f"Learning recorded for: {task}")

    def entries(self) -> list[str]:
        if not self.path.exists():
            return []
        return [
            line for line in self.path.read_text(encoding="utf-8").splitlines()
            if line.startswith(ENTRY_PREFIX)
        ]

    def recent(self, count: int = 10) -> list[str]:
        return self.entries()[-count:]
