"""
Roadmap Cascade - dependency-ordered orchestration of roadmap work

Roadmap Cascade drives every item of a product roadmap through a fixed
lifecycle (shape, write-spec, create-tasks, implement), dispatching each
phase to a pluggable session executor in dependency order, and reviews the
produced specs and task breakdowns for drift at checkpoints between phases.

Architecture:
    - Scheduling Layer: dependency graph, phase gates and ready sets
    - Execution Layer: bounded worker pool with retry and backoff
    - Alignment Layer: drift detection, classification and resolution

Example usage:
    from roadmap_cascade import CommandSessionExecutor, Orchestrator

    orchestrator = Orchestrator(project_root, CommandSessionExecutor(["claude", "--print"]))
    orchestrator.load_roadmap(project_root / "roadmap.yaml")
    summary = asyncio.run(orchestrator.execute())
"""

__version__ = "0.1.0"
__author__ = "Roadmap Cascade Team"

# Core orchestration
from .core import (
    EXIT_AWAITING_DECISION,
    EXIT_BLOCKED,
    EXIT_ERROR,
    EXIT_OK,
    AlignmentEngine,
    AlignmentReport,
    BatchExecutor,
    BatchResult,
    CheckpointKind,
    Decision,
    DependencyGraph,
    DriftClassifier,
    DriftEvent,
    ExecutionMode,
    ExecutionRecord,
    Orchestrator,
    Phase,
    PhaseStatus,
    RetryConfig,
    RetryPolicy,
    RunSummary,
    Severity,
    WorkItem,
)

# Errors
from .core.errors import (
    ConfigError,
    ExecutorError,
    GraphError,
    LifecycleError,
    RoadmapCascadeError,
    StateConflictError,
    StateStoreUnavailableError,
)

# Backends
from .backends import (
    CommandSessionExecutor,
    HumanChannel,
    SessionExecutor,
    SessionOptions,
    SessionRequest,
    SessionResult,
)

# State
from .state import StateStore

# Settings
from .settings import Settings, SettingsStorage

__all__ = [
    "__version__",
    # Core
    "Orchestrator",
    "RunSummary",
    "DependencyGraph",
    "BatchExecutor",
    "BatchResult",
    "RetryConfig",
    "RetryPolicy",
    "AlignmentEngine",
    "DriftClassifier",
    "Phase",
    "PhaseStatus",
    "ExecutionMode",
    "CheckpointKind",
    "WorkItem",
    "ExecutionRecord",
    "DriftEvent",
    "AlignmentReport",
    "Severity",
    "Decision",
    "EXIT_OK",
    "EXIT_ERROR",
    "EXIT_AWAITING_DECISION",
    "EXIT_BLOCKED",
    # Errors
    "RoadmapCascadeError",
    "GraphError",
    "ExecutorError",
    "StateConflictError",
    "StateStoreUnavailableError",
    "LifecycleError",
    "ConfigError",
    # Backends
    "SessionExecutor",
    "SessionRequest",
    "SessionResult",
    "SessionOptions",
    "HumanChannel",
    "CommandSessionExecutor",
    # State
    "StateStore",
    # Settings
    "Settings",
    "SettingsStorage",
]
