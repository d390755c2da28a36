"""Tests for agent invocation."""

from __future__ import annotations

import shlex
import sys
from pathlib import Path

import pytest
from rich.console import Console

from ralphloop.agent_runner import (
    NOT_FOUND_EXIT_CODE,
    AgentConfig,
    AgentNotAvailableError,
    AgentResult,
    AgentRunner,
    MockAgentRunner,
    MockStep,
    OutputPeek,
    check_installed,
    ensure_installed,
    format_duration,
    strip_ansi,
)
from ralphloop.signals import TIMEOUT_EXIT_CODE


def python_command(script: str) -> str:
    """Agent command template running an inline Python script."""
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(script)} {{prompt}}"


class TestAgentConfig:
    """Tests for AgentConfig."""

    def test_build_argv_default(self) -> None:
        argv = AgentConfig(model="sonnet").build_argv("do the thing")

        assert argv[0] == "claude"
        assert argv[argv.index("--model") + 1] == "sonnet"
        assert argv[-1] == "do the thing"

    def test_prompt_stays_one_argument(self) -> None:
        """Test quotes and shell metacharacters in the prompt are not interpreted."""
        prompt = "line one\nit's $HOME; rm -rf / && `echo hi`"
        argv = AgentConfig(model="m", command="agent {prompt}").build_argv(prompt)

        assert argv == ["agent", prompt]

    def test_model_inside_token(self) -> None:
        argv = AgentConfig(model="opus", command="agent --model={model} {prompt}").build_argv("p")
        assert argv == ["agent", "--model=opus", "p"]

    def test_executable(self) -> None:
        assert AgentConfig(model="m", command="/usr/bin/agent run {prompt}").executable == "/usr/bin/agent"


class TestCheckInstalled:
    """Tests for agent availability checks."""

    def test_python_is_installed(self) -> None:
        assert check_installed(AgentConfig(model="m", command=python_command("pass")))

    def test_missing_executable(self) -> None:
        config = AgentConfig(model="m", command="definitely-not-an-agent-xyz {prompt}")

        assert not check_installed(config)
        with pytest.raises(AgentNotAvailableError):
            ensure_installed(config)


class TestAgentRunner:
    """Tests for the subprocess runner."""

    def test_captures_output_and_exit_code(self, tmp_path: Path) -> None:
        config = AgentConfig(
            model="m",
            timeout=30,
            command=python_command("import sys; print('got: ' + sys.argv[1]); sys.exit(3)"),
            cwd=tmp_path,
        )
        seen = []

        result = AgentRunner().invoke(config, "hello prompt", observer=seen.append)

        assert result.exit_code == 3
        assert "got: hello prompt" in result.output
        assert any("got: hello prompt" in line for line in seen)
        assert not result.timed_out

    def test_runs_in_project_directory(self, tmp_path: Path) -> None:
        config = AgentConfig(
            model="m",
            timeout=30,
            command=python_command("import pathlib; pathlib.Path('touched.txt').write_text('x')"),
            cwd=tmp_path,
        )

        result = AgentRunner().invoke(config, "p")

        assert result.success
        assert (tmp_path / "touched.txt").exists()

    def test_watchdog_kills_with_timeout_code(self, tmp_path: Path) -> None:
        config = AgentConfig(
            model="m",
            timeout=1,
            command=python_command("import time; print('working', flush=True); time.sleep(30)"),
            cwd=tmp_path,
        )

        result = AgentRunner().invoke(config, "p")

        assert result.exit_code == TIMEOUT_EXIT_CODE
        assert result.timed_out
        assert "working" in result.output
        assert result.duration < 20

    @pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")
    def test_watchdog_kills_background_children(self, tmp_path: Path) -> None:
        """Test a child holding the output pipe cannot stretch the time budget."""
        config = AgentConfig(model="m", timeout=1, command="sh -c 'sleep 8 & sleep 8' {prompt}", cwd=tmp_path)

        result = AgentRunner().invoke(config, "p")

        assert result.exit_code == TIMEOUT_EXIT_CODE
        assert result.duration < 5

    @pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")
    def test_returns_when_agent_exits_before_its_children(self, tmp_path: Path) -> None:
        config = AgentConfig(model="m", timeout=30, command="sh -c 'sleep 8 & echo finished' {prompt}", cwd=tmp_path)

        result = AgentRunner().invoke(config, "p")

        assert result.exit_code == 0
        assert "finished" in result.output
        assert result.duration < 5

    def test_missing_executable_exit_code(self, tmp_path: Path) -> None:
        config = AgentConfig(model="m", command="definitely-not-an-agent-xyz {prompt}", cwd=tmp_path)

        result = AgentRunner().invoke(config, "p")

        assert result.exit_code == NOT_FOUND_EXIT_CODE
        assert result.error


class TestAgentResult:
    """Tests for AgentResult helpers."""

    def test_tail_skips_blank_lines(self) -> None:
        output = "\n".join(f"line {i}" for i in range(30)) + "\n\n\n"
        tail = AgentResult(output=output, exit_code=1).tail(3)

        assert tail == "line 27\nline 28\nline 29"


class TestHelpers:
    """Tests for small formatting helpers."""

    def test_strip_ansi(self) -> None:
        assert strip_ansi("\x1b[31mred\x1b[0m\r") == "red"

    def test_format_duration(self) -> None:
        assert format_duration(42.7) == "42s"
        assert format_duration(125) == "2m 5s"


class TestOutputPeek:
    """Tests for the live output preview."""

    def test_keeps_last_lines(self) -> None:
        peek = OutputPeek(Console(), timeout=60, max_lines=2, enabled=False)
        with peek:
            for line in ["one\n", "", "two\n", "three\n"]:
                peek.feed(line)

        assert list(peek.lines) == ["two", "three"]

    def test_truncates_long_lines(self) -> None:
        peek = OutputPeek(Console(), timeout=60, enabled=False)
        peek.feed("x" * 200)

        assert len(peek.lines[0]) == 70

    def test_renders_panel(self) -> None:
        console = Console(record=True, width=100)
        peek = OutputPeek(console, timeout=60, enabled=False)
        with peek:
            peek.feed("building")
            console.print(peek)

        assert "building" in console.export_text()

    def test_torn_down_on_error(self) -> None:
        peek = OutputPeek(Console(force_terminal=True), timeout=60, enabled=True)
        with pytest.raises(RuntimeError):
            with peek:
                raise RuntimeError("agent crashed")

        assert peek._live is None


class TestMockAgentRunner:
    """Tests for the scripted runner used by orchestrator tests."""

    def test_plays_steps_in_order(self, tmp_path: Path) -> None:
        runner = MockAgentRunner([
            MockStep(output="first"),
            MockStep(output="second", exit_code=2, effect=lambda cwd: (cwd / "f.txt").write_text("x")),
        ])
        config = AgentConfig(model="sonnet", cwd=tmp_path)

        first = runner.invoke(config, "p1")
        second = runner.invoke(config, "p2")
        third = runner.invoke(config, "p3")

        assert (first.output, second.output, third.output) == ("first", "second", "")
        assert second.exit_code == 2
        assert (tmp_path / "f.txt").exists()
        assert runner.call_count == 3
        assert runner.prompts == ["p1", "p2", "p3"]

    def test_availability(self) -> None:
        assert not MockAgentRunner(available=False).is_available(AgentConfig(model="m"))
