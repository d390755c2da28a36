"""Shared test fixtures for ralph-loop tests."""

from __future__ import annotations

from pathlib import Path

import git
import pytest

from ralphloop.config import Config, LoopConfig
from ralphloop.task_store import TaskStore

SAMPLE_PRD = """# Project Tasks

## Setup

- [ ] **Create project skeleton** [effort: low]
  - Description: Add the package layout and entry point
  - Files: src/app.py, pyproject.toml
  - Acceptance: `python -m app` prints a greeting

- [ ] **Add configuration loader** [effort: medium]
  - Description: Read settings from a YAML file
  - Files: src/config.py
  - Acceptance: Missing keys fall back to defaults

- [ ] **Write usage docs** [effort: low]
  - Description: Document the CLI in README.md
  - Files: README.md
"""


def mark_done(path: Path, title: str) -> None:
    """Flip a task checkbox to done, the way an agent would."""
    lines = path.read_text(encoding="utf-8").splitlines()
    for index, line in enumerate(lines):
        if line.startswith("- [ ]") and f"**{title}**" in line:
            lines[index] = line.replace("- [ ]", "- [x]", 1)
            break
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


@pytest.fixture
def prd_text() -> str:
    return SAMPLE_PRD


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Create a project directory with a task document, not under git."""
    ralph_dir = tmp_path / ".ralph"
    ralph_dir.mkdir()
    (ralph_dir / "prd.md").write_text(SAMPLE_PRD, encoding="utf-8")
    return tmp_path


@pytest.fixture
def git_repo(project_dir: Path) -> git.Repo:
    """Initialize a git repository with the task document committed."""
    repo = git.Repo.init(project_dir)

    # Configure git user for commits
    repo.config_writer().set_value("user", "name", "Test User").release()
    repo.config_writer().set_value("user", "email", "test@example.com").release()

    (project_dir / ".gitignore").write_text("__pycache__/\n", encoding="utf-8")
    (project_dir / "main.py").write_text("# Initial file\n", encoding="utf-8")
    repo.index.add([".gitignore", "main.py", ".ralph/prd.md"])
    repo.index.commit("Initial commit")
    return repo


@pytest.fixture
def task_store(project_dir: Path) -> TaskStore:
    return TaskStore(project_dir / ".ralph" / "prd.md")


@pytest.fixture
def loop_config(project_dir: Path) -> Config:
    """Configuration with healthchecks off and a short budget."""
    return Config(
        project_dir=project_dir,
        loop=LoopConfig(
            max_iterations=5,
            max_stagnant=2,
            task_timeout=30,
            healthcheck=False,
        ),
    )
