"""Tests for post-completion verification commands."""

from __future__ import annotations

import json
import shlex
import sys
from pathlib import Path

from ralphloop.healthcheck import (
    auto_detect_verify_commands,
    parse_verify_commands,
    run_healthcheck,
)

AGENTS_MD = """# Project

Some conventions.

<!-- ralph:verify:start -->
```bash
# unit tests
npm test

npm run lint
```
<!-- ralph:verify:end -->

npm run ignored
"""


def python_exit(code: int) -> str:
    script = "import sys; print('checked'); sys.exit(%d)" % code
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(script)}"


class TestParseVerifyCommands:
    """Tests for the AGENTS.md verify block."""

    def test_parses_block(self, tmp_path: Path) -> None:
        agents = tmp_path / "AGENTS.md"
        agents.write_text(AGENTS_MD)

        assert parse_verify_commands(agents) == ["npm test", "npm run lint"]

    def test_missing_file(self, tmp_path: Path) -> None:
        assert parse_verify_commands(tmp_path / "AGENTS.md") == []

    def test_no_block(self, tmp_path: Path) -> None:
        agents = tmp_path / "AGENTS.md"
        agents.write_text("# Project\n\nnpm test\n")

        assert parse_verify_commands(agents) == []


class TestAutoDetect:
    """Tests for command auto-detection."""

    def test_package_json_scripts(self, tmp_path: Path) -> None:
        (tmp_path / "package.json").write_text(json.dumps({"scripts": {"test": "jest", "build": "tsc"}}))

        assert auto_detect_verify_commands(tmp_path) == ["npm test", "npm run build"]

    def test_python_project(self, tmp_path: Path) -> None:
        (tmp_path / "pyproject.toml").write_text("[tool.ruff]\nline-length = 100\n")

        assert auto_detect_verify_commands(tmp_path) == ["python -m pytest", "ruff check ."]

    def test_go_project(self, tmp_path: Path) -> None:
        (tmp_path / "go.mod").write_text("module example.com/x\n")

        assert auto_detect_verify_commands(tmp_path) == ["go build ./...", "go test ./..."]

    def test_unknown_project(self, tmp_path: Path) -> None:
        assert auto_detect_verify_commands(tmp_path) == []


class TestRunHealthcheck:
    """Tests for run_healthcheck."""

    def test_nothing_to_run_passes(self, tmp_path: Path) -> None:
        result = run_healthcheck(tmp_path)

        assert result.passed
        assert result.skipped

    def test_passing_commands(self, tmp_path: Path) -> None:
        result = run_healthcheck(tmp_path, commands=[python_exit(0)])

        assert result.passed
        assert result.failed_commands == []

    def test_failing_command_reported(self, tmp_path: Path) -> None:
        failing = python_exit(2)

        result = run_healthcheck(tmp_path, commands=[python_exit(0), failing])

        assert not result.passed
        assert result.failed_commands == [failing]
        assert "checked" in result.output

    def test_timeout_is_failure(self, tmp_path: Path) -> None:
        slow = f"{shlex.quote(sys.executable)} -c 'import time; time.sleep(10)'"

        result = run_healthcheck(tmp_path, timeout=1, commands=[slow])

        assert not result.passed
        assert "timed out" in result.output
