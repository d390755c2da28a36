"""Tests for task document parsing and state tracking."""

from __future__ import annotations

from pathlib import Path

import pytest

from conftest import SAMPLE_PRD, mark_done
from ralphloop.task_store import (
    CompletionSentinel,
    Effort,
    TaskState,
    TaskStore,
    TaskStoreError,
    detect_newly_completed,
    parse_tasks,
)
from ralphloop.workspace import WorkspaceRepo


class TestParseTasks:
    """Tests for the checklist parser."""

    def test_parses_titles_and_states(self) -> None:
        """Test titles come from the bold span and all start pending."""
        tasks = parse_tasks(SAMPLE_PRD)

        assert [t.title for t in tasks] == [
            "Create project skeleton",
            "Add configuration loader",
            "Write usage docs",
        ]
        assert all(t.state == TaskState.PENDING for t in tasks)

    def test_parses_details(self) -> None:
        """Test effort, files and acceptance are attached to the right task."""
        tasks = parse_tasks(SAMPLE_PRD)

        assert tasks[0].effort == Effort.LOW
        assert tasks[0].files == ["src/app.py", "pyproject.toml"]
        assert tasks[1].effort == Effort.MEDIUM
        assert tasks[1].acceptance == "Missing keys fall back to defaults"
        assert tasks[2].acceptance is None

    def test_checkbox_variants(self) -> None:
        text = "- [x] Done one\n- [X] Done two\n- [~] Stuck\n- [ ] Open\n"
        states = [t.state for t in parse_tasks(text)]

        assert states == [TaskState.DONE, TaskState.DONE, TaskState.BLOCKED, TaskState.PENDING]

    def test_unknown_effort_is_unspecified(self) -> None:
        tasks = parse_tasks("- [ ] **Thing** [effort: huge]\n")
        assert tasks[0].effort == Effort.UNSPECIFIED

    def test_plain_title_strips_effort_tag(self) -> None:
        tasks = parse_tasks("- [ ] Plain title [effort: high]\n")
        assert tasks[0].title == "Plain title"
        assert tasks[0].effort == Effort.HIGH

    def test_ignores_non_task_lines(self) -> None:
        text = "# Heading\n\nSome prose\n* [ ] not a dash bullet\n"
        assert parse_tasks(text) == []


class TestDetectNewlyCompleted:
    """Tests for snapshot diffing."""

    def test_finds_flipped_task(self) -> None:
        after = SAMPLE_PRD.replace("- [ ] **Add configuration", "- [x] **Add configuration")
        assert detect_newly_completed(SAMPLE_PRD, after) == "Add configuration loader"

    def test_no_prior_snapshot_is_first_run(self) -> None:
        assert detect_newly_completed(None, SAMPLE_PRD) == CompletionSentinel.FIRST_RUN.value

    def test_nothing_flipped_is_unknown(self) -> None:
        assert detect_newly_completed(SAMPLE_PRD, SAMPLE_PRD) == CompletionSentinel.UNKNOWN.value

    def test_blocked_is_not_completion(self) -> None:
        after = SAMPLE_PRD.replace("- [ ] **Write usage", "- [~] **Write usage")
        assert detect_newly_completed(SAMPLE_PRD, after) == CompletionSentinel.UNKNOWN.value


class TestTaskStore:
    """Tests for TaskStore queries and mutations."""

    def test_counts(self, task_store: TaskStore) -> None:
        counts = task_store.counts()
        assert (counts.pending, counts.done, counts.blocked, counts.total) == (3, 0, 0, 3)

    def test_count_by_state_after_agent_edit(self, task_store: TaskStore) -> None:
        mark_done(task_store.path, "Create project skeleton")

        assert task_store.count_by_state(TaskState.DONE) == 1
        assert task_store.count_by_state(TaskState.PENDING) == 2

    def test_next_pending_in_document_order(self, task_store: TaskStore) -> None:
        mark_done(task_store.path, "Create project skeleton")
        assert task_store.next_pending().title == "Add configuration loader"

    def test_next_pending_none_when_all_done(self, tmp_path: Path) -> None:
        path = tmp_path / "prd.md"
        path.write_text("- [x] One\n- [~] Two\n")
        assert TaskStore(path).next_pending() is None

    def test_missing_document_raises(self, tmp_path: Path) -> None:
        store = TaskStore(tmp_path / "missing.md")
        assert not store.exists()
        with pytest.raises(TaskStoreError):
            store.counts()

    def test_find_exact_and_substring(self, task_store: TaskStore) -> None:
        assert task_store.find("Write usage docs").title == "Write usage docs"
        assert task_store.find("configuration").title == "Add configuration loader"
        assert task_store.find("nonexistent") is None

    def test_find_ambiguous_substring(self, task_store: TaskStore) -> None:
        """Test a substring that matches several tasks finds nothing."""
        assert task_store.find("a") is None


class TestValidate:
    """Tests for document validation."""

    def test_valid_document_warns_on_missing_acceptance(self, task_store: TaskStore) -> None:
        result = task_store.validate()

        assert result.ok
        assert result.warnings == ["Task missing acceptance criteria: Write usage docs"]

    def test_no_pending_tasks_fails(self, tmp_path: Path) -> None:
        path = tmp_path / "prd.md"
        path.write_text("# Tasks\n\n- [x] Already done\n")
        result = TaskStore(path).validate()

        assert not result.ok
        assert result.errors

    def test_missing_document_fails(self, tmp_path: Path) -> None:
        result = TaskStore(tmp_path / "prd.md").validate()
        assert not result.ok


class TestCheckpoints:
    """Tests for checkpoint insertion."""

    def _document(self, tmp_path: Path, count: int) -> TaskStore:
        path = tmp_path / "prd.md"
        path.write_text("".join(f"- [ ] **Task {i}**\n" for i in range(1, count + 1)))
        return TaskStore(path)

    def test_inserts_every_interval_plus_final(self, tmp_path: Path) -> None:
        store = self._document(tmp_path, 5)

        inserted = store.insert_checkpoints(2)

        titles = [t.title for t in store.tasks()]
        assert inserted == 3
        assert titles == [
            "Task 1",
            "Task 2",
            "Checkpoint 1: Integration Verification",
            "Task 3",
            "Task 4",
            "Checkpoint 2: Integration Verification",
            "Task 5",
            "Checkpoint 3: Final Integration Verification",
        ]

    def test_checkpoints_have_no_files(self, tmp_path: Path) -> None:
        store = self._document(tmp_path, 3)
        store.insert_checkpoints(1)

        checkpoints = [t for t in store.tasks() if t.is_checkpoint]
        assert checkpoints
        assert all(t.files == [] for t in checkpoints)

    def test_zero_interval_is_noop(self, tmp_path: Path) -> None:
        store = self._document(tmp_path, 5)
        before = store.read_text()

        assert store.insert_checkpoints(0) == 0
        assert store.read_text() == before

    def test_few_tasks_is_noop(self, tmp_path: Path) -> None:
        store = self._document(tmp_path, 2)
        assert store.insert_checkpoints(2) == 0

    def test_not_inserted_twice(self, tmp_path: Path) -> None:
        store = self._document(tmp_path, 5)
        store.insert_checkpoints(2)

        assert store.insert_checkpoints(2) == 0


class TestMarkBlocked:
    """Tests for flipping repeat offenders to blocked."""

    def test_marks_pending_task(self, task_store: TaskStore) -> None:
        task_store.mark_blocked("Add configuration loader")

        assert task_store.find("Add configuration loader").state == TaskState.BLOCKED
        assert task_store.counts().pending == 2

    def test_rejects_done_task(self, task_store: TaskStore) -> None:
        mark_done(task_store.path, "Create project skeleton")
        with pytest.raises(TaskStoreError):
            task_store.mark_blocked("Create project skeleton")

    def test_rejects_unknown_task(self, task_store: TaskStore) -> None:
        with pytest.raises(TaskStoreError):
            task_store.mark_blocked("No such task")


class TestCorruptionRecovery:
    """Tests for restoring a truncated task document."""

    def test_truncated_document_is_corrupted(self, task_store: TaskStore) -> None:
        task_store.path.write_text("# Tasks\n")
        assert task_store.is_corrupted()

    def test_intact_document_is_not_corrupted(self, task_store: TaskStore) -> None:
        assert not task_store.is_corrupted()

    def test_restores_committed_version(self, git_repo, task_store: TaskStore) -> None:
        task_store.path.write_text("oops\n")
        repo = WorkspaceRepo(Path(git_repo.working_dir))

        assert task_store.restore_from_repo(repo)
        assert task_store.counts().pending == 3

    def test_no_repo_cannot_restore(self, task_store: TaskStore) -> None:
        task_store.path.write_text("oops\n")

        assert not task_store.restore_from_repo(None)
        assert task_store.read_text() == "oops\n"


class TestIdentifyCompleted:
    """Tests for attributing an iteration to a task."""

    def test_flipped_task(self, task_store: TaskStore) -> None:
        before = task_store.read_text()
        mark_done(task_store.path, "Write usage docs")

        assert task_store.identify_completed(before) == "Write usage docs"

    def test_uncommitted_document_is_first_run(self, task_store: TaskStore) -> None:
        before = task_store.read_text()
        assert task_store.identify_completed(before) == CompletionSentinel.FIRST_RUN.value

    def test_committed_document_is_unknown(self, git_repo, task_store: TaskStore) -> None:
        before = task_store.read_text()
        repo = WorkspaceRepo(Path(git_repo.working_dir))

        assert task_store.identify_completed(before, repo) == CompletionSentinel.UNKNOWN.value
