"""
Roadmap Cascade CLI Module

Contains the command-line interface:
- main: CLI entry point with typer
- Commands: plan, spec, align, implement, execute, status, decide, unblock, add-item
- output: rich terminal output
"""

from .main import app
from .output import OutputManager

__all__ = [
    "app",
    "OutputManager",
]
