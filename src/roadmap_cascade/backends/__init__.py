"""
Roadmap Cascade Backends Module

Contains the session executor abstraction used for all content work.

Key Components:
- SessionExecutor: Abstract base class for executors
- SessionRequest / SessionResult: the structured call contract
- HumanChannel: synchronous operator Q&A
- CommandSessionExecutor: runs an agent CLI per session
"""

from .base import (
    HumanChannel,
    SessionExecutor,
    SessionOptions,
    SessionRequest,
    SessionResult,
)
from .command import CommandSessionExecutor

__all__ = [
    # Base classes
    "SessionExecutor",
    "SessionRequest",
    "SessionResult",
    "SessionOptions",
    "HumanChannel",
    # Implementations
    "CommandSessionExecutor",
]
