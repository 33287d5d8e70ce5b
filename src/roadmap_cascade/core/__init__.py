"""
Roadmap Cascade Core Module

Contains the orchestration core:
- DependencyGraph: ready sets, cycle detection, execution order
- BatchExecutor: bounded worker pool dispatching one phase
- RetryPolicy: failure classification with exponential backoff
- AlignmentEngine: checkpoint reviews, resolutions and cascade checks
- DriftClassifier: deterministic severity rule table
- Orchestrator: phase loop, halting policy and exit codes
"""

from .errors import (
    ConfigError,
    ExecutorError,
    GraphError,
    ItemNotFoundError,
    LifecycleError,
    RoadmapCascadeError,
    StateConflictError,
    StateStoreUnavailableError,
)
from .models import (
    AlignmentReport,
    Decision,
    DriftEvent,
    ExecutionRecord,
    InterfaceDecl,
    Outcome,
    PhaseStatus,
    ReportStatus,
    ResolutionAction,
    Severity,
    WorkItem,
)
from .phases import CheckpointKind, ExecutionMode, Phase, PhaseGate, build_gate
from .dependency_graph import DependencyGraph
from .retry_manager import ErrorType, FailureRecord, RetryConfig, RetryPolicy
from .drift_classifier import DeviationTraits, DriftClassifier
from .roadmap import load_roadmap
from .batch_executor import BatchExecutor, BatchResult, ItemProgress, ItemState
from .alignment import AlignmentEngine
from .orchestrator import (
    EXIT_AWAITING_DECISION,
    EXIT_BLOCKED,
    EXIT_ERROR,
    EXIT_OK,
    Orchestrator,
    RunSummary,
)

__all__ = [
    # Errors
    "RoadmapCascadeError",
    "GraphError",
    "ExecutorError",
    "StateConflictError",
    "StateStoreUnavailableError",
    "ItemNotFoundError",
    "LifecycleError",
    "ConfigError",
    # Models
    "PhaseStatus",
    "Outcome",
    "Severity",
    "Decision",
    "ReportStatus",
    "ResolutionAction",
    "InterfaceDecl",
    "WorkItem",
    "ExecutionRecord",
    "DriftEvent",
    "AlignmentReport",
    # Phases
    "Phase",
    "PhaseGate",
    "ExecutionMode",
    "CheckpointKind",
    "build_gate",
    # Scheduling
    "DependencyGraph",
    "load_roadmap",
    # Execution
    "BatchExecutor",
    "BatchResult",
    "ItemProgress",
    "ItemState",
    "RetryConfig",
    "RetryPolicy",
    "ErrorType",
    "FailureRecord",
    # Alignment
    "AlignmentEngine",
    "DriftClassifier",
    "DeviationTraits",
    # Orchestration
    "Orchestrator",
    "RunSummary",
    "EXIT_OK",
    "EXIT_ERROR",
    "EXIT_AWAITING_DECISION",
    "EXIT_BLOCKED",
]
