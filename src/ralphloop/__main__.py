"""Main entry point for running ralph-loop as a module.

Usage:
    python -m ralphloop --help
    python -m ralphloop run --project .
    python -m ralphloop status
"""

from __future__ import annotations

from .cli import app

if __name__ == "__main__":
    app()
