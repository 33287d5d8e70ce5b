"""
Error taxonomy for Roadmap Cascade.

Local, recoverable conditions (transient executor failures, lease contention)
are retried where they occur. Structural failures are recorded against the
single work item they belong to. Only an invalid graph at start-up or an
unusable state directory ends the process.
"""

from __future__ import annotations

from typing import Any


class RoadmapCascadeError(Exception):
    """Base exception for all Roadmap Cascade errors."""
    pass


class GraphError(RoadmapCascadeError):
    """Raised when the dependency graph would contain a cycle or a dangling edge."""

    def __init__(self, message: str, problems: list[str] | None = None, cycle: list[str] | None = None):
        """
        Initialize graph error.

        Args:
            message: Error message
            problems: Every validation problem found (for roadmap loading)
            cycle: Item ids forming the offending cycle, if any
        """
        super().__init__(message)
        self.problems = problems or [message]
        self.cycle = cycle


class ExecutorError(RoadmapCascadeError):
    """Raised by a SessionExecutor call that did not produce a usable result."""

    def __init__(
        self,
        message: str,
        transient: bool = False,
        item_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        """
        Initialize executor error.

        Args:
            message: Error message
            transient: True for timeouts and rate limits (retried),
                False for malformed or incomplete output (not retried)
            item_id: Work item the call was made for
            details: Extra diagnostic data (exit code, stderr excerpt)
        """
        super().__init__(message)
        self.transient = transient
        self.item_id = item_id
        self.details = details or {}

    @classmethod
    def timeout(cls, item_id: str | None, timeout_ms: int) -> "ExecutorError":
        """Create a transient error for an expired session timeout."""
        return cls(f"Session timed out after {timeout_ms}ms", transient=True, item_id=item_id)

    @classmethod
    def malformed(cls, reason: str, item_id: str | None = None) -> "ExecutorError":
        """Create a structural error for a malformed session result."""
        return cls(f"Malformed session result: {reason}", transient=False, item_id=item_id)


class StateConflictError(RoadmapCascadeError):
    """Raised when the lease for a work item is held by another writer."""

    def __init__(self, item_id: str, holder: str | None = None):
        message = f"Lease for '{item_id}' is held"
        if holder:
            message += f" by {holder}"
        super().__init__(message)
        self.item_id = item_id
        self.holder = holder


class StateStoreUnavailableError(RoadmapCascadeError):
    """Raised when the state directory cannot be read or written."""
    pass


class ItemNotFoundError(RoadmapCascadeError, KeyError):
    """Raised when a work item id is not present in the state store."""

    def __init__(self, item_id: str):
        super().__init__(f"Unknown work item: {item_id}")
        self.item_id = item_id

    def __str__(self) -> str:
        return self.args[0]


class LifecycleError(RoadmapCascadeError, ValueError):
    """Raised for a phase status transition the lifecycle does not allow."""
    pass


class ConfigError(RoadmapCascadeError):
    """Raised when configuration fails validation."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []
