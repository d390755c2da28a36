"""External coding-agent invocation with a watchdog timeout.

The agent is spawned as a subprocess from a typed AgentConfig; the command
line is built from a template split into argv tokens, so prompts never pass
through a shell. A threading.Timer kills the agent's process group when the budget
expires, and a killed invocation is reported with TIMEOUT_EXIT_CODE.
"""

from __future__ import annotations

import logging
import os
import queue
import re
import shlex
import shutil
import signal
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.text import Text

from .signals import TIMEOUT_EXIT_CODE

logger = logging.getLogger(__name__)

DEFAULT_AGENT_COMMAND = "claude --print --model {model} --dangerously-skip-permissions -p {prompt}"

# Exit code reported when the agent executable cannot be started
NOT_FOUND_EXIT_CODE = 127

# Seconds to wait for buffered output once the agent has exited
DRAIN_GRACE_SECONDS = 2.0

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[a-zA-Z]|\x1b\][^\x07]*\x07")


def strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences and carriage returns."""
    return ANSI_ESCAPE.sub("", text).replace("\r", "")


def format_duration(seconds: float) -> str:
    secs = int(seconds)
    if secs >= 60:
        return f"{secs // 60}m {secs % 60}s"
    return f"{secs}s"


class AgentNotAvailableError(Exception):
    """Raised when the agent executable cannot be found."""

    pass


@dataclass
class AgentConfig:
    """Everything needed to run the agent once."""

    model: str
    timeout: int = 900
    command: str = DEFAULT_AGENT_COMMAND
    cwd: Optional[Path] = None

    @property
    def executable(self) -> str:
        tokens = shlex.split(self.command)
        return tokens[0] if tokens else ""

    def build_argv(self, prompt: str) -> list[str]:
        """Split the command template and substitute {model} and {prompt}.

        Placeholders are substituted per token after splitting, so the prompt
        always ends up as a single argument.
        """
        argv = []
        for token in shlex.split(self.command):
            if token == "{prompt}":
                argv.append(prompt)
            else:
                argv.append(token.replace("{model}", self.model))
        return argv


@dataclass
class AgentResult:
    """Outcome of one agent invocation."""

    output: str
    exit_code: int
    duration: float = 0.0
    error: Optional[str] = None

    @property
    def timed_out(self) -> bool:
        return self.exit_code == TIMEOUT_EXIT_CODE

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def tail(self, lines: int = 20) -> str:
        """Last non-empty output lines, for error context in the progress log."""
        kept = [line for line in self.output.splitlines() if line.strip()]
        return "\n".join(kept[-lines:])


def check_installed(config: AgentConfig) -> bool:
    """Check if the agent executable is on PATH (or an existing file).

    Args:
        config: Agent configuration holding the command template.

    Returns:
        True if the executable can be found, False otherwise.
    """
    executable = config.executable
    if not executable:
        return False
    return shutil.which(executable) is not None or Path(executable).is_file()


def ensure_installed(config: AgentConfig) -> None:
    """Raise AgentNotAvailableError if the agent executable is missing."""
    if not check_installed(config):
        raise AgentNotAvailableError(f"Agent executable not found: {config.executable or '(empty command)'}")


class OutputPeek:
    """Live preview of the agent's latest output lines.

    Decorative only: renders elapsed time against the budget and the last
    few output lines in a transient rich Live panel. Used as a context manager
    so the panel is torn down on every exit path of the invocation.
    """

    def __init__(
        self,
        console: Console,
        timeout: int,
        loop_start: Optional[float] = None,
        max_lines: int = 3,
        enabled: Optional[bool] = None,
    ):
        self.console = console
        self.timeout = timeout
        self.loop_start = loop_start
        self.lines: deque[str] = deque(maxlen=max_lines)
        self.enabled = console.is_terminal if enabled is None else enabled
        self._started = 0.0
        self._live: Optional[Live] = None

    def __enter__(self) -> OutputPeek:
        self._started = time.monotonic()
        if self.enabled:
            self._live = Live(self, console=self.console, refresh_per_second=2, transient=True)
            self._live.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._live is not None:
            self._live.stop()
            self._live = None

    def feed(self, line: str) -> None:
        """Observe one line of agent output."""
        cleaned = strip_ansi(line).rstrip()
        if cleaned.strip():
            if len(cleaned) > 70:
                cleaned = cleaned[:67] + "..."
            self.lines.append(cleaned)

    def __rich__(self) -> Panel:
        elapsed = time.monotonic() - self._started
        status = f"{format_duration(elapsed)} / {format_duration(self.timeout)}"
        if self.loop_start is not None:
            status += f"  |  Total: {format_duration(time.monotonic() - self.loop_start)}"

        body = [Text(status)]
        if self.lines:
            body.extend(Text(f"  {line}", style="dim") for line in self.lines)
        else:
            body.append(Text("  (waiting for output...)", style="dim"))
        return Panel(Group(*body), title="Agent output", border_style="dim", expand=False)


def kill_process_group(process: subprocess.Popen) -> None:
    """Kill the agent and everything it started in its session."""
    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()
    except OSError:
        # Group already gone
        pass


def _pump_lines(stream, sink: queue.Queue) -> None:
    try:
        for line in stream:
            sink.put(line)
    finally:
        sink.put(None)


class AgentRunner:
    """Runs the external agent as a subprocess guarded by a watchdog timer."""

    def is_available(self, config: AgentConfig) -> bool:
        return check_installed(config)

    def invoke(
        self,
        config: AgentConfig,
        prompt: str,
        observer: Optional[Callable[[str], None]] = None,
    ) -> AgentResult:
        """Run the agent once and block until it exits or is killed.

        Args:
            config: Model, timeout, command template and working directory.
            prompt: Prompt text passed as a single argument.
            observer: Optional callback receiving each output line as it arrives.

        Returns:
            AgentResult. A watchdog kill yields TIMEOUT_EXIT_CODE; a missing
            executable yields NOT_FOUND_EXIT_CODE.
        """
        argv = config.build_argv(prompt)
        logger.info(f"Invoking agent with model {config.model} (timeout {config.timeout}s)")
        logger.debug(f"Prompt: {prompt[:200]}...")

        started = time.monotonic()
        try:
            process = subprocess.Popen(
                argv,
                cwd=config.cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as e:
            logger.error(f"Failed to start agent: {e}")
            return AgentResult(output="", exit_code=NOT_FOUND_EXIT_CODE, error=str(e))

        killed = threading.Event()

        def _kill() -> None:
            killed.set()
            logger.warning(f"Agent exceeded {config.timeout}s, terminating")
            kill_process_group(process)

        watchdog = None
        if config.timeout > 0:
            watchdog = threading.Timer(config.timeout, _kill)
            watchdog.daemon = True
            watchdog.start()

        # Lines arrive through a reader thread so the wait ends when the agent
        # itself exits, even if a process it spawned still holds the pipe.
        lines: queue.Queue = queue.Queue()
        reader = threading.Thread(target=_pump_lines, args=(process.stdout, lines), daemon=True)
        reader.start()

        chunks: list[str] = []

        def _consume(line: str) -> None:
            chunks.append(line)
            if observer is not None:
                observer(line)

        try:
            while True:
                try:
                    line = lines.get(timeout=0.1)
                except queue.Empty:
                    if process.poll() is None:
                        continue
                    kill_process_group(process)
                    reader.join(timeout=DRAIN_GRACE_SECONDS)
                    break
                if line is None:
                    break
                _consume(line)

            while True:
                try:
                    line = lines.get_nowait()
                except queue.Empty:
                    break
                if line is None:
                    break
                _consume(line)
            process.wait()
        finally:
            if watchdog is not None:
                watchdog.cancel()
            kill_process_group(process)
            if process.poll() is None:
                process.kill()
                process.wait()

        duration = time.monotonic() - started
        output = strip_ansi("".join(chunks))
        exit_code = TIMEOUT_EXIT_CODE if killed.is_set() else process.returncode

        logger.info(f"Agent finished with exit code {exit_code} in {format_duration(duration)}")
        return AgentResult(output=output, exit_code=exit_code, duration=duration)


@dataclass
class MockStep:
    """One scripted agent invocation.

    The effect callback receives the working directory and simulates what
    the agent would have done to the workspace.
    """

    output: str = ""
    exit_code: int = 0
    effect: Optional[Callable[[Path], None]] = None


class MockAgentRunner(AgentRunner):
    """Mock agent runner for testing."""

    def __init__(self, steps: Optional[list[MockStep]] = None, available: bool = True):
        """Initialize mock runner with scripted steps."""
        self.steps: list[MockStep] = list(steps or [])
        self.available = available
        self.call_count = 0
        self.prompts: list[str] = []
        self.models: list[str] = []
        self.configs: list[AgentConfig] = []

    def is_available(self, config: AgentConfig) -> bool:
        """Mock availability, True unless configured otherwise."""
        return self.available

    def invoke(
        self,
        config: AgentConfig,
        prompt: str,
        observer: Optional[Callable[[str], None]] = None,
    ) -> AgentResult:
        """Play back the next scripted step."""
        self.call_count += 1
        self.prompts.append(prompt)
        self.models.append(config.model)
        self.configs.append(config)

        step = self.steps.pop(0) if self.steps else MockStep()
        if step.effect is not None:
            step.effect(Path(config.cwd) if config.cwd else Path.cwd())
        if observer is not None:
            for line in step.output.splitlines(keepends=True):
                observer(line)

        return AgentResult(output=step.output, exit_code=step.exit_code, duration=0.0)
