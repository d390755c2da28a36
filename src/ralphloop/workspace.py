"""Version-controlled workspace access using GitPython.

This module wraps the git operations the loop needs: the content fingerprint
of uncommitted state, reading the last committed version of a file, staging,
committing and stashing. Commit policy itself lives in commit_gate.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Iterable, Optional

import git
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

logger = logging.getLogger(__name__)

NO_GIT_FINGERPRINT = "no-git"


class WorkspaceError(Exception):
    """Exception raised for workspace repository operations."""

    pass


class WorkspaceRepo:
    """Git repository holding the project the agent works on."""

    def __init__(self, repo_path: Path, state_paths: Iterable[Path] = ()):
        """Open the repository containing repo_path.

        Args:
            repo_path: Project directory (or any path inside the work tree).
            state_paths: Files or directories holding unversioned loop state.
                They are left out of fingerprints, stashes and commits.

        Raises:
            WorkspaceError: If the path is not inside a git work tree.
        """
        self.repo_path = Path(repo_path)
        try:
            self.repo = git.Repo(self.repo_path, search_parent_directories=True)
        except (InvalidGitRepositoryError, NoSuchPathError) as exc:
            raise WorkspaceError(f"Not a git repository: {self.repo_path}") from exc

        if self.repo.bare:
            raise WorkspaceError(f"Bare repository has no work tree: {self.repo_path}")

        self.state_paths = [self.relative(p) for p in state_paths]

    @classmethod
    def open(cls, repo_path: Path, state_paths: Iterable[Path] = ()) -> Optional[WorkspaceRepo]:
        """Open the repository, or return None outside version control."""
        try:
            return cls(repo_path, state_paths)
        except WorkspaceError as exc:
            logger.debug(f"No workspace repository: {exc}")
            return None

    def is_state_path(self, path: str) -> bool:
        """True for repo-relative paths under one of the state paths."""
        return any(path == p or path.startswith(p + "/") for p in self.state_paths)

    def _pathspec(self) -> list[str]:
        if not self.state_paths:
            return []
        return ["--", "."] + [f":(exclude){p}" for p in self.state_paths]

    @property
    def root(self) -> Path:
        return Path(self.repo.working_tree_dir)

    def relative(self, path: Path) -> str:
        """Path relative to the work tree root, in git's posix form."""
        return Path(path).resolve().relative_to(self.root.resolve()).as_posix()

    def has_head(self) -> bool:
        """True once the repository has at least one commit."""
        try:
            self.repo.head.commit
        except ValueError:
            return False
        return True

    def fingerprint(self) -> str:
        """Digest of unstaged diff, staged diff and untracked file listing."""
        pathspec = self._pathspec()
        digest = hashlib.sha256()
        digest.update(self.repo.git.diff(*pathspec).encode("utf-8", errors="replace"))
        digest.update(b"\0")
        digest.update(self.repo.git.diff("--cached", *pathspec).encode("utf-8", errors="replace"))
        digest.update(b"\0")
        untracked = self.repo.git.ls_files("--others", "--exclude-standard", *pathspec)
        digest.update(untracked.encode("utf-8", errors="replace"))
        return digest.hexdigest()

    def has_uncommitted_changes(self) -> bool:
        return self.repo.is_dirty(untracked_files=True)

    def has_tracked_changes(self) -> bool:
        """True when tracked files differ from HEAD (staged or unstaged)."""
        return self.repo.is_dirty(untracked_files=False)

    def show_committed(self, path: Path) -> Optional[str]:
        """Content of a file at HEAD, or None if it was never committed."""
        if not self.has_head():
            return None
        try:
            return self.repo.git.show(f"HEAD:{self.relative(path)}", strip_newline_in_stdout=False)
        except (GitCommandError, ValueError):
            return None

    def stage_all(self) -> None:
        """Stage all changes, including untracked files and deletions."""
        self.repo.git.add("--all", *self._pathspec())

    def staged_paths(self) -> list[str]:
        output = self.repo.git.diff("--cached", "--name-only")
        return [line for line in output.splitlines() if line.strip()]

    def untracked_files(self) -> list[str]:
        return [p for p in self.repo.untracked_files if not self.is_state_path(p)]

    def unstage(self, paths: list[str]) -> None:
        """Remove paths from the index without touching the work tree."""
        if not paths:
            return
        if self.has_head():
            self.repo.git.reset("HEAD", "--", *paths)
        else:
            self.repo.git.rm("--cached", "-r", "--quiet", "--", *paths)

    def commit(self, message: str, no_verify: bool = False) -> str:
        """Commit the index through the git CLI so hooks run.

        Returns:
            Abbreviated hash of the new commit.

        Raises:
            GitCommandError: If git (or a hook) rejects the commit.
        """
        args = ["-m", message]
        if no_verify:
            args.append("--no-verify")
        self.repo.git.commit(*args)
        return self.repo.head.commit.hexsha[:8]

    def stash(self, message: str) -> None:
        """Stash all changes except loop state, untracked files included."""
        self.repo.git.stash("push", "-u", "-m", message, *self._pathspec())

    def stash_list(self) -> list[str]:
        output = self.repo.git.stash("list")
        return [line for line in output.splitlines() if line.strip()]


def fingerprint(repo: Optional[WorkspaceRepo]) -> str:
    """Fingerprint the workspace, or NO_GIT_FINGERPRINT outside git."""
    if repo is None:
        return NO_GIT_FINGERPRINT
    try:
        return repo.fingerprint()
    except GitCommandError as exc:
        logger.warning(f"Failed to fingerprint workspace: {exc}")
        return NO_GIT_FINGERPRINT
