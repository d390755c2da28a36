"""Progress signals observed after one agent invocation."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

TASK_DONE_TOKEN = "<ralph>TASK_DONE</ralph>"
TASK_BLOCKED_TOKEN = "<ralph>TASK_BLOCKED</ralph>"

# Exit code reported when the watchdog kills the agent (matches GNU timeout)
TIMEOUT_EXIT_CODE = 124


@dataclass(frozen=True)
class Signals:
    """Independent observations of one iteration."""

    promise_done: bool = False
    promise_blocked: bool = False
    task_marked_done: bool = False
    files_changed: bool = False
    timed_out: bool = False

    def describe(self) -> str:
        """Short human-readable signal summary for logs."""
        flags = {
            "promise": self.promise_done,
            "blocked": self.promise_blocked,
            "checkbox": self.task_marked_done,
            "files": self.files_changed,
            "timeout": self.timed_out,
        }
        return ", ".join(f"{name}={'yes' if value else 'no'}" for name, value in flags.items())


def has_token(output: str, token: str) -> bool:
    """True if token appears verbatim on its own line."""
    return any(line.strip() == token for line in output.splitlines())


class SignalCollector:
    """Turns raw iteration observations into a Signals tuple.

    Pure transformation, no side effects.
    """

    def __init__(self, timeout_exit_code: int = TIMEOUT_EXIT_CODE):
        self.timeout_exit_code = timeout_exit_code

    def observe(
        self,
        output: str,
        fingerprint_before: str,
        fingerprint_after: str,
        pending_before: int,
        pending_after: int,
        exit_code: int,
    ) -> Signals:
        return Signals(
            promise_done=has_token(output, TASK_DONE_TOKEN),
            promise_blocked=has_token(output, TASK_BLOCKED_TOKEN),
            task_marked_done=pending_after < pending_before,
            files_changed=fingerprint_after != fingerprint_before,
            timed_out=exit_code == self.timeout_exit_code,
        )


SELECTED_PATTERN = re.compile(r"^\s*<ralph>SELECTED:\s*(.+?)\s*</ralph>\s*$", re.MULTILINE)


def parse_selected_task(output: str) -> Optional[str]:
    """Title announced by a two-phase selection call, if any.

    The last announcement wins when the agent changed its mind.
    """
    matches = SELECTED_PATTERN.findall(output)
    return matches[-1] if matches else None
