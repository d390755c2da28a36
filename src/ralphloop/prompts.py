"""Agent prompt rendering.

Prompts are jinja2 templates rendered from a PromptContext. The loop owns
only the framing (counts, recovery instructions, failure history, learnings);
what the agent does with the task document is up to the agent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from jinja2 import Template

from .stagnation import RecoveryStage

logger = logging.getLogger(__name__)

NO_AGENTS_MD = "No AGENTS.md found. Use your best judgment for project conventions."

STAGE_INSTRUCTIONS = {
    RecoveryStage.HINT: (
        "The previous iteration did not complete any task. Whatever was tried "
        "last time did not work: try a different approach this time."
    ),
    RecoveryStage.SKIP: (
        "Several iterations in a row completed nothing. Abandon the task you were "
        "stuck on and pick a DIFFERENT pending task. If the stuck task cannot be "
        "done, mark it blocked by changing \"- [ ]\" to \"- [~]\"."
    ),
    RecoveryStage.ESCALATE: (
        "You are running on a stronger model because the loop is stuck. Take a "
        "fresh look at the stuck task: break it down, fix the root cause, or mark "
        "it blocked with \"- [~]\" if it truly cannot be done."
    ),
}

TASK_PROMPT = Template(
    """You are an autonomous coding agent in a Ralph Loop (iteration {{ iteration }}).
{{ done }} tasks completed, {{ pending }} tasks remaining{% if blocked %}, {{ blocked }} blocked{% endif %}.

## Project Instructions
{{ agents_md }}

## Recent Progress
{{ progress_summary }}
{% if failed_tasks %}

## Previously Failed Tasks
These tasks failed in earlier iterations. Avoid repeating the same approach:
{{ failed_tasks }}
{% endif %}
{% if learnings %}

## Learnings From Completed Tasks
{% for entry in learnings %}
{{ entry }}
{% endfor %}
{% endif %}
{% if stage_instruction %}

## Recovery Instruction
{{ stage_instruction }}
{% endif %}

## Your Mission
{% if selected_task %}

Your task for this iteration has already been selected:
**{{ selected_task }}**

1. Read {{ prd_path }} and find that task.
2. Implement ONLY that task. Keep changes minimal and focused.
{% else %}

1. Read {{ prd_path }} to see the full task list.
2. Study which tasks are already done [x] and which are still open [ ].
3. Choose the most important remaining task. Consider dependencies, what the
   project needs first, and what previous iterations accomplished.
4. Implement ONLY that one task. Keep changes minimal and focused.
{% endif %}
- Follow existing code conventions and patterns in the project.
- After implementing, run ALL verification commands you can find (tests, lint,
  type checking, build). Check AGENTS.md for project-specific commands.
- If any verification fails, FIX the issues before continuing.
- Once everything passes, mark the task as done in {{ prd_path }}:
  change its line from "- [ ]" to "- [x]".

## Completion Signal

When (and ONLY when) you have implemented the task, all verification commands
pass, and the task is marked [x] in {{ prd_path }}, output this exact string on
its own line:
{{ done_token }}

If you could NOT complete any task (all remaining tasks are blocked), output:
{{ blocked_token }}

Do NOT output either signal until you are truly finished or truly blocked.

## Rules
- Do NOT modify files under .ralph/ other than {{ prd_path }}; the loop manages them.
- Work on exactly ONE task per iteration.
- Do NOT output the completion signal prematurely.
""",
    trim_blocks=True,
    lstrip_blocks=True,
)

SELECTION_PROMPT = Template(
    """You are the planning half of a Ralph Loop iteration ({{ iteration }}).
{{ done }} tasks completed, {{ pending }} tasks remaining.

Read {{ prd_path }} and choose the single most important pending task ("- [ ]").
Consider dependencies between tasks and what earlier iterations accomplished.
{% if failed_tasks %}

These tasks failed before; prefer others unless you see a new approach:
{{ failed_tasks }}
{% endif %}
{% if stage_instruction %}

{{ stage_instruction }}
{% endif %}

Do NOT modify any files. Answer with exactly one line in this format:
<ralph>SELECTED: <exact task title></ralph>
""",
    trim_blocks=True,
    lstrip_blocks=True,
)


@dataclass
class PromptContext:
    """Everything a prompt can mention."""

    iteration: int
    done: int
    pending: int
    blocked: int = 0
    stage: RecoveryStage = RecoveryStage.NORMAL
    agents_md: str = ""
    progress_summary: str = ""
    failed_tasks: str = ""
    learnings: list[str] = field(default_factory=list)
    selected_task: Optional[str] = None
    prd_path: str = ".ralph/prd.md"


class PromptBuilder:
    """Renders the task and selection prompts."""

    def __init__(self, done_token: str, blocked_token: str):
        self.done_token = done_token
        self.blocked_token = blocked_token

    @staticmethod
    def read_agents_md(path: Path) -> str:
        if path.exists():
            return path.read_text(encoding="utf-8").strip()
        return ""

    def _variables(self, context: PromptContext) -> dict:
        return {
            "iteration": context.iteration,
            "done": context.done,
            "pending": context.pending,
            "blocked": context.blocked,
            "agents_md": context.agents_md or NO_AGENTS_MD,
            "progress_summary": context.progress_summary or "No previous progress.",
            "failed_tasks": context.failed_tasks,
            "learnings": context.learnings,
            "stage_instruction": STAGE_INSTRUCTIONS.get(context.stage, ""),
            "selected_task": context.selected_task,
            "prd_path": context.prd_path,
            "done_token": self.done_token,
            "blocked_token": self.blocked_token,
        }

    def build_task_prompt(self, context: PromptContext) -> str:
        """Render the implementation prompt for one iteration."""
        prompt = TASK_PROMPT.render(**self._variables(context))
        logger.debug(f"Task prompt rendered ({len(prompt)} chars, stage {context.stage.value})")
        return prompt

    def build_selection_prompt(self, context: PromptContext) -> str:
        """Render the first-phase prompt that only picks a task."""
        return SELECTION_PROMPT.render(**self._variables(context))
