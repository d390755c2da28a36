"""Tests for the failed task ledger."""

from __future__ import annotations

from pathlib import Path

import pytest

from ralphloop.failure_ledger import (
    LEDGER_HEADER,
    FailureCategory,
    FailureLedger,
    FailureRecord,
)


@pytest.fixture
def ledger(tmp_path: Path) -> FailureLedger:
    return FailureLedger(tmp_path / ".ralph" / "failed-tasks.txt")


class TestFailureRecord:
    """Tests for ledger line encoding."""

    def test_to_line(self) -> None:
        record = FailureRecord("2024-05-01 12:00:00", "4", "Add login", "suspicious", "No evidence")
        assert record.to_line() == "2024-05-01 12:00:00 | iter 4 | Add login | suspicious | No evidence"

    def test_from_line(self) -> None:
        record = FailureRecord.from_line("2024-05-01 12:00:00 | iter 4 | Add login | timeout | Exceeded 900s")

        assert record.iteration == "4"
        assert record.task == "Add login"
        assert record.category == "timeout"
        assert record.reason == "Exceeded 900s"

    def test_legacy_line_without_category(self) -> None:
        record = FailureRecord.from_line("2024-05-01 12:00:00 | iter 2 | Add login | Stagnation detected")

        assert record.category == FailureCategory.UNKNOWN.value
        assert record.reason == "Stagnation detected"

    def test_malformed_line(self) -> None:
        assert FailureRecord.from_line("garbage") is None


class TestFailureLedger:
    """Tests for FailureLedger."""

    def test_initialize_writes_header_once(self, ledger: FailureLedger) -> None:
        ledger.initialize()
        ledger.record("Task A", 1, FailureCategory.NO_PROGRESS, "nothing happened")
        ledger.initialize()

        text = ledger.path.read_text()
        assert text.startswith(LEDGER_HEADER)
        assert text.count(LEDGER_HEADER) == 1
        assert len(ledger) == 1

    def test_record_is_append_only(self, ledger: FailureLedger) -> None:
        ledger.record("Task A", 1, FailureCategory.NO_PROGRESS, "first")
        first_line = ledger.path.read_text().splitlines()[1]
        ledger.record("Task A", 2, FailureCategory.SUSPICIOUS, "second")

        lines = ledger.path.read_text().splitlines()
        assert lines[1] == first_line
        assert len(lines) == 3

    def test_record_flattens_reason(self, ledger: FailureLedger) -> None:
        record = ledger.record("Task A", 3, "test-fail", "line one\nline two | with pipe")

        assert "\n" not in record.reason
        assert ledger.records()[0].reason == record.reason

    def test_summary_keeps_most_recent(self, ledger: FailureLedger) -> None:
        ledger.record("Task A", 1, FailureCategory.NO_PROGRESS, "first")
        ledger.record("Task B", 2, FailureCategory.TIMEOUT, "slow")
        ledger.record("Task A", 3, FailureCategory.SUSPICIOUS, "latest")

        summary = ledger.failed_tasks_summary()
        assert set(summary) == {"Task A", "Task B"}
        assert summary["Task A"].iteration == "3"
        assert summary["Task A"].reason == "latest"

    def test_repeat_offenders(self, ledger: FailureLedger) -> None:
        for iteration in range(1, 4):
            ledger.record("Task A", iteration, FailureCategory.NO_PROGRESS, "stuck")
        ledger.record("Task B", 4, FailureCategory.TIMEOUT, "slow")

        assert ledger.repeat_offenders(2) == {"Task A": 3}
        assert ledger.repeat_offenders(4) == {}
        assert ledger.attempt_count("Task B") == 1

    def test_category_counts(self, ledger: FailureLedger) -> None:
        ledger.record("Task A", 1, FailureCategory.TIMEOUT, "slow")
        ledger.record("Task B", 2, FailureCategory.TIMEOUT, "slow")
        ledger.record("Task C", 3, FailureCategory.TEST_FAIL, "red")

        assert ledger.category_counts() == {"timeout": 2, "test-fail": 1}

    def test_missing_file_is_empty(self, ledger: FailureLedger) -> None:
        assert ledger.records() == []
        assert ledger.format_for_prompt() == ""

    def test_format_for_prompt(self, ledger: FailureLedger) -> None:
        ledger.record("Task A", 2, FailureCategory.SUSPICIOUS, "Promise without evidence")

        assert ledger.format_for_prompt() == '- "Task A" [suspicious] iter 2: Promise without evidence'
