"""Safe commit and safe revert policy for the workspace.

Commits stage everything, then unstage sensitive files, build artifacts and
the loop's own unversioned state before committing. Reverts stash partial
work instead of discarding it. Both operations are idempotent no-ops on a
clean tree.
"""

from __future__ import annotations

import fnmatch
import logging
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Optional

from git.exc import GitCommandError

from .workspace import WorkspaceRepo

logger = logging.getLogger(__name__)

# Matched case-insensitively against the file name
SENSITIVE_PATTERNS = (
    ".env",
    ".env.*",
    "*.pem",
    "*.key",
    "*.p12",
    "*.pfx",
    "*.secret",
    "*credential*",
    "*secret*",
    "id_rsa",
    "id_ed25519",
)

# Matched against every directory component of the path
BUILD_ARTIFACT_DIRS = frozenset({
    "node_modules",
    "__pycache__",
    ".pytest_cache",
    "dist",
    "build",
    ".next",
    "vendor",
    "target",
    ".venv",
    "venv",
    ".tox",
    "coverage",
    ".nyc_output",
    ".gradle",
})

# Matched against the file name
BUILD_ARTIFACT_FILES = ("*.pyc", ".DS_Store")


def is_sensitive(path: str) -> bool:
    name = PurePosixPath(path).name.lower()
    return any(fnmatch.fnmatchcase(name, pattern) for pattern in SENSITIVE_PATTERNS)


def is_build_artifact(path: str) -> bool:
    parts = PurePosixPath(path).parts
    if any(part in BUILD_ARTIFACT_DIRS for part in parts[:-1]):
        return True
    name = parts[-1] if parts else ""
    return any(fnmatch.fnmatchcase(name, pattern) for pattern in BUILD_ARTIFACT_FILES)


@dataclass
class CommitResult:
    """Result of a safe commit."""

    success: bool
    commit_hash: Optional[str]
    message: str
    error: Optional[str] = None
    excluded_sensitive: list[str] = field(default_factory=list)
    excluded_artifacts: list[str] = field(default_factory=list)

    @property
    def committed(self) -> bool:
        return self.success and self.commit_hash is not None


@dataclass
class RevertResult:
    """Result of a safe revert."""

    success: bool
    stashed: bool
    message: str = ""
    error: Optional[str] = None


class CommitGate:
    """Applies the commit/revert policy to a workspace repository."""

    def __init__(self, repo: Optional[WorkspaceRepo]):
        """Initialize the commit gate.

        Args:
            repo: Workspace repository, or None when not under version control.
        """
        self.repo = repo

    def commit(self, message: str, skip_hooks: bool = False) -> CommitResult:
        """Stage, filter and commit all workspace changes.

        Args:
            message: Commit message.
            skip_hooks: Pass --no-verify to bypass pre-commit hooks.

        Returns:
            CommitResult. A hook rejection is reported as success=False with
            the remaining changes left staged.
        """
        if self.repo is None:
            logger.warning("Not a git repo, skipping commit")
            return CommitResult(success=True, commit_hash=None, message="Not a git repository")

        try:
            self.repo.stage_all()
            staged = self.repo.staged_paths()

            sensitive = [p for p in staged if is_sensitive(p)]
            artifacts = [p for p in staged if p not in sensitive and is_build_artifact(p)]
            state = [p for p in staged if self.repo.is_state_path(p)]

            to_unstage = sorted(set(sensitive) | set(artifacts) | set(state))
            if to_unstage:
                self.repo.unstage(to_unstage)
            if sensitive:
                logger.warning(f"Sensitive files excluded from commit: {', '.join(sensitive)}")
            if artifacts:
                logger.warning(f"Build artifacts excluded from commit: {len(artifacts)} path(s)")

            if not self.repo.staged_paths():
                logger.info("No changes to commit")
                return CommitResult(
                    success=True,
                    commit_hash=None,
                    message="No changes to commit",
                    excluded_sensitive=sensitive,
                    excluded_artifacts=artifacts,
                )
        except GitCommandError as exc:
            logger.error(f"Staging failed: {exc}")
            return CommitResult(success=False, commit_hash=None, message=message, error=str(exc))

        try:
            commit_hash = self.repo.commit(message, no_verify=skip_hooks)
        except GitCommandError as exc:
            logger.warning("Commit failed (pre-commit hook?). Changes remain staged.")
            return CommitResult(
                success=False,
                commit_hash=None,
                message=message,
                error=str(exc.stderr or exc).strip(),
                excluded_sensitive=sensitive,
                excluded_artifacts=artifacts,
            )

        logger.info(f"Committed: {commit_hash} - {message[:60]}")
        return CommitResult(
            success=True,
            commit_hash=commit_hash,
            message=message,
            excluded_sensitive=sensitive,
            excluded_artifacts=artifacts,
        )

    def revert(self, iteration: int, reason: str = "timeout") -> RevertResult:
        """Stash partial work of an iteration. Never discards changes.

        Args:
            iteration: Iteration number, recorded in the stash message.
            reason: Why the work is being set aside.

        Returns:
            RevertResult telling whether anything was stashed.
        """
        if self.repo is None:
            return RevertResult(success=True, stashed=False, message="Not a git repository")

        stash_message = f"ralph: partial work iter {iteration} ({reason})"
        try:
            self.repo.stage_all()
            if not self.repo.staged_paths() and not self.repo.untracked_files():
                return RevertResult(success=True, stashed=False, message="Nothing to stash")

            self.repo.stash(stash_message)
        except GitCommandError as exc:
            logger.error(f"Failed to stash partial work: {exc}")
            return RevertResult(success=False, stashed=False, message=stash_message, error=str(exc))

        logger.warning("Partial work stashed (recoverable via 'git stash list')")
        return RevertResult(success=True, stashed=True, message=stash_message)
