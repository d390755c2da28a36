"""ralph-loop: autonomous task-completion loop around an external coding agent."""

__version__ = "0.3.0"
