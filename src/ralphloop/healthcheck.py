"""Post-completion verification commands.

Commands come from the block between ``ralph:verify:start`` and
``ralph:verify:end`` markers in the project's AGENTS.md. When no block is
present they are auto-detected from project files. A failing command turns a
completed iteration into HEALTHCHECK_FAILED.
"""

from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

VERIFY_START = "ralph:verify:start"
VERIFY_END = "ralph:verify:end"
DEFAULT_HEALTHCHECK_TIMEOUT = 120


@dataclass
class HealthcheckResult:
    """Outcome of running the verification commands."""

    passed: bool
    commands: list[str] = field(default_factory=list)
    failed_commands: list[str] = field(default_factory=list)
    output: str = ""
    auto_detected: bool = False

    @property
    def skipped(self) -> bool:
        return not self.commands


def parse_verify_commands(agents_file: Path) -> list[str]:
    """Extract commands from the verify block of AGENTS.md.

    Code fence lines, blank lines and ``#`` comments inside the block are
    ignored.
    """
    if not agents_file.exists():
        return []

    commands = []
    in_block = False
    for line in agents_file.read_text(encoding="utf-8").splitlines():
        if VERIFY_START in line:
            in_block = True
            continue
        if VERIFY_END in line:
            break
        if not in_block:
            continue
        stripped = line.strip()
        if not stripped or stripped.startswith("```") or stripped.startswith("#"):
            continue
        commands.append(stripped)
    return commands


def auto_detect_verify_commands(project_dir: Path) -> list[str]:
    """Guess verification commands from common project markers."""
    commands = []
    package_json = project_dir / "package.json"
    pyproject = project_dir / "pyproject.toml"

    if package_json.exists():
        try:
            scripts = json.loads(package_json.read_text(encoding="utf-8")).get("scripts", {})
        except (json.JSONDecodeError, AttributeError):
            scripts = {}
        if "test" in scripts:
            commands.append("npm test")
        if "build" in scripts:
            commands.append("npm run build")
        if "lint" in scripts:
            commands.append("npm run lint")
    elif any((project_dir / name).exists() for name in ("requirements.txt", "pyproject.toml", "setup.py")):
        if (project_dir / "pytest.ini").exists() or pyproject.exists() or (project_dir / "tests").is_dir():
            commands.append("python -m pytest")
        if pyproject.exists() and "ruff" in pyproject.read_text(encoding="utf-8"):
            commands.append("ruff check .")
    elif (project_dir / "go.mod").exists():
        commands.extend(["go build ./...", "go test ./..."])
    elif (project_dir / "Cargo.toml").exists():
        commands.extend(["cargo build", "cargo test"])

    return commands


def run_healthcheck(
    project_dir: Path,
    timeout: int = DEFAULT_HEALTHCHECK_TIMEOUT,
    commands: Optional[list[str]] = None,
) -> HealthcheckResult:
    """Run every verification command and collect failures.

    Args:
        project_dir: Directory the commands run in.
        timeout: Per-command time limit in seconds.
        commands: Explicit commands; discovered from the project when None.

    Returns:
        HealthcheckResult. Passes trivially when there is nothing to run.
    """
    auto_detected = False
    if commands is None:
        commands = parse_verify_commands(project_dir / "AGENTS.md")
        if not commands:
            commands = auto_detect_verify_commands(project_dir)
            auto_detected = bool(commands)
            if auto_detected:
                logger.info("Healthcheck: auto-detected verify commands")

    if not commands:
        return HealthcheckResult(passed=True)

    failed = []
    report = []
    for command in commands:
        logger.debug(f"Healthcheck: {command}")
        try:
            # Verify commands are shell lines written by the project owner
            completed = subprocess.run(
                command,
                shell=True,
                cwd=project_dir,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            failed.append(command)
            report.append(f"FAILED: {command}\n(timed out after {timeout}s)")
            continue

        if completed.returncode != 0:
            failed.append(command)
            report.append(f"FAILED: {command}\n{(completed.stdout or '') + (completed.stderr or '')}".rstrip())

    if failed:
        logger.warning(f"Healthcheck failed: {', '.join(failed)}")

    return HealthcheckResult(
        passed=not failed,
        commands=list(commands),
        failed_commands=failed,
        output="\n".join(report),
        auto_detected=auto_detected,
    )
