"""Configuration management for the task loop.

Settings are layered: dataclass defaults, then the optional ``ralph.yaml``
in the project root, then ``RALPH_*`` environment variables (a project
``.env`` is loaded first), then CLI flags applied by the caller.
"""

from __future__ import annotations

import logging
import os
import shlex
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv

from .agent_runner import DEFAULT_AGENT_COMMAND

logger = logging.getLogger(__name__)

SETTINGS_FILE = "ralph.yaml"
RALPH_DIR = ".ralph"

TRUE_VALUES = ("true", "1", "yes", "on")


class ConfigError(Exception):
    """Exception raised for unreadable or invalid configuration."""

    pass


def _as_bool(value: str) -> bool:
    return value.strip().lower() in TRUE_VALUES


@dataclass
class RalphPaths:
    """Locations of the loop's files inside a project."""

    project_dir: Path

    @property
    def ralph_dir(self) -> Path:
        return self.project_dir / RALPH_DIR

    @property
    def prd(self) -> Path:
        return self.ralph_dir / "prd.md"

    @property
    def progress(self) -> Path:
        return self.ralph_dir / "progress.md"

    @property
    def progress_archive(self) -> Path:
        return self.ralph_dir / "progress-archive.md"

    @property
    def failed_tasks(self) -> Path:
        return self.ralph_dir / "failed-tasks.txt"

    @property
    def config_snapshot(self) -> Path:
        return self.ralph_dir / "config.yaml"

    @property
    def learnings(self) -> Path:
        return self.ralph_dir / "learnings.md"

    @property
    def logs_dir(self) -> Path:
        return self.ralph_dir / "logs"

    @property
    def agents_file(self) -> Path:
        return self.project_dir / "AGENTS.md"

    @property
    def settings_file(self) -> Path:
        return self.project_dir / SETTINGS_FILE

    @property
    def state_paths(self) -> list[Path]:
        """Unversioned loop state; everything under .ralph/ except the task document."""
        return [
            self.progress,
            self.progress_archive,
            self.failed_tasks,
            self.config_snapshot,
            self.learnings,
            self.logs_dir,
        ]

    def gitignore_patterns(self) -> list[str]:
        patterns = []
        for path in self.state_paths:
            rel = path.relative_to(self.project_dir).as_posix()
            patterns.append(rel + "/" if path == self.logs_dir else rel)
        return patterns

    def ensure(self) -> None:
        """Create .ralph/ and add the state files to an existing .gitignore.

        A missing .gitignore is left alone; creating one is the project's
        business.
        """
        self.ralph_dir.mkdir(parents=True, exist_ok=True)
        gitignore = self.project_dir / ".gitignore"
        if not gitignore.exists():
            return

        content = gitignore.read_text(encoding="utf-8")
        present = {line.strip() for line in content.splitlines()}
        missing = [p for p in self.gitignore_patterns() if p not in present]
        if missing:
            prefix = "" if not content or content.endswith("\n") else "\n"
            with open(gitignore, "a", encoding="utf-8") as f:
                f.write(prefix + "\n".join(missing) + "\n")
            logger.info(f"Added {len(missing)} loop state pattern(s) to .gitignore")


@dataclass
class LoopConfig:
    """Settings that drive one loop invocation."""

    model: str = "sonnet"
    escalation_model: str = "opus"
    max_iterations: int = 50
    max_stagnant: int = 3
    task_timeout: int = 900
    auto_commit: bool = True
    skip_hooks: bool = False
    two_phase: bool = False
    dry_run: bool = False
    checkpoint_interval: int = 0
    agent_command: str = DEFAULT_AGENT_COMMAND
    auto_block_after: int = 3
    healthcheck: bool = True
    healthcheck_timeout: int = 120
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict) -> LoopConfig:
        """Create LoopConfig from a parsed settings document."""
        loop_data = data.get("loop", {}) or {}
        if not isinstance(loop_data, dict):
            raise ConfigError("'loop' section must be a mapping")
        defaults = cls()
        try:
            return cls(
                model=str(loop_data.get("model", defaults.model)),
                escalation_model=str(loop_data.get("escalation_model", defaults.escalation_model)),
                max_iterations=int(loop_data.get("max_iterations", defaults.max_iterations)),
                max_stagnant=int(loop_data.get("max_stagnant", defaults.max_stagnant)),
                task_timeout=int(loop_data.get("task_timeout", defaults.task_timeout)),
                auto_commit=bool(loop_data.get("auto_commit", defaults.auto_commit)),
                skip_hooks=bool(loop_data.get("skip_hooks", defaults.skip_hooks)),
                two_phase=bool(loop_data.get("two_phase", defaults.two_phase)),
                dry_run=bool(loop_data.get("dry_run", defaults.dry_run)),
                checkpoint_interval=int(loop_data.get("checkpoint_interval", defaults.checkpoint_interval)),
                agent_command=str(loop_data.get("agent_command", defaults.agent_command)),
                auto_block_after=int(loop_data.get("auto_block_after", defaults.auto_block_after)),
                healthcheck=bool(loop_data.get("healthcheck", defaults.healthcheck)),
                healthcheck_timeout=int(loop_data.get("healthcheck_timeout", defaults.healthcheck_timeout)),
                log_level=str(loop_data.get("log_level", defaults.log_level)).upper(),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid loop setting: {e}") from e

    @classmethod
    def load_from_file(cls, path: Path) -> LoopConfig:
        """Load loop config from a YAML file, or defaults if it is absent."""
        if not path.exists():
            return cls()
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Cannot parse {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a mapping")
        return cls.from_dict(data)

    def apply_env(self, environ: Optional[dict] = None) -> None:
        """Override settings from RALPH_* environment variables."""
        env = os.environ if environ is None else environ
        try:
            if env.get("RALPH_LOOP_MODEL"):
                self.model = env["RALPH_LOOP_MODEL"]
            if env.get("RALPH_ESCALATION_MODEL"):
                self.escalation_model = env["RALPH_ESCALATION_MODEL"]
            if env.get("RALPH_MAX_ITERATIONS"):
                self.max_iterations = int(env["RALPH_MAX_ITERATIONS"])
            if env.get("RALPH_MAX_STAGNANT"):
                self.max_stagnant = int(env["RALPH_MAX_STAGNANT"])
            if env.get("RALPH_TASK_TIMEOUT"):
                self.task_timeout = int(env["RALPH_TASK_TIMEOUT"])
            if env.get("RALPH_CHECKPOINT_INTERVAL"):
                self.checkpoint_interval = int(env["RALPH_CHECKPOINT_INTERVAL"])
        except ValueError as e:
            raise ConfigError(f"Invalid RALPH_* environment value: {e}") from e

        if env.get("RALPH_AUTO_COMMIT"):
            self.auto_commit = _as_bool(env["RALPH_AUTO_COMMIT"])
        if env.get("RALPH_SKIP_HOOKS"):
            self.skip_hooks = _as_bool(env["RALPH_SKIP_HOOKS"])
        if env.get("RALPH_TWO_PHASE"):
            self.two_phase = _as_bool(env["RALPH_TWO_PHASE"])
        if env.get("RALPH_AGENT_COMMAND"):
            self.agent_command = env["RALPH_AGENT_COMMAND"]
        if env.get("RALPH_LOG_LEVEL"):
            self.log_level = env["RALPH_LOG_LEVEL"].upper()

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Config:
    """Configuration settings for a loop invocation in one project."""

    project_dir: Path = field(default_factory=Path.cwd)
    loop: LoopConfig = field(default_factory=LoopConfig)

    @property
    def paths(self) -> RalphPaths:
        return RalphPaths(self.project_dir)

    @classmethod
    def from_env(cls, project_dir: Optional[Path] = None) -> Config:
        """Load configuration from the settings file and environment.

        Args:
            project_dir: Project directory. Defaults to CWD.

        Returns:
            Config instance with file settings and env overrides applied.

        Raises:
            ConfigError: If the settings file or an env value is invalid.
        """
        project = Path(project_dir).resolve() if project_dir else Path.cwd()
        load_dotenv(project / ".env")

        loop = LoopConfig.load_from_file(project / SETTINGS_FILE)
        loop.apply_env()
        return cls(project_dir=project, loop=loop)

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors.

        Returns:
            List of validation error messages. Empty if valid.
        """
        errors = []
        loop = self.loop

        if not self.project_dir.is_dir():
            errors.append(f"Project directory does not exist: {self.project_dir}")
        if not loop.model:
            errors.append("Execution model must not be empty")
        if not loop.escalation_model:
            errors.append("Escalation model must not be empty")
        if loop.max_iterations < 1:
            errors.append(f"max_iterations must be at least 1 (got {loop.max_iterations})")
        if loop.max_stagnant < 1:
            errors.append(f"max_stagnant must be at least 1 (got {loop.max_stagnant})")
        if loop.task_timeout < 0:
            errors.append(f"task_timeout must not be negative (got {loop.task_timeout})")
        if loop.checkpoint_interval < 0:
            errors.append(f"checkpoint_interval must not be negative (got {loop.checkpoint_interval})")
        if loop.auto_block_after < 0:
            errors.append(f"auto_block_after must not be negative (got {loop.auto_block_after})")
        try:
            if "{prompt}" not in shlex.split(loop.agent_command):
                errors.append("agent_command must contain a standalone {prompt} placeholder")
        except ValueError as e:
            errors.append(f"agent_command cannot be parsed: {e}")

        return errors

    def write_snapshot(self) -> Path:
        """Write the effective configuration to .ralph/config.yaml."""
        path = self.paths.config_snapshot
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "written_at": datetime.now().isoformat(timespec="seconds"),
            "project_dir": str(self.project_dir),
            "loop": self.loop.to_dict(),
        }
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, sort_keys=False)
        logger.debug(f"Config snapshot written to {path}")
        return path
