"""
Phase definitions and entry gates.

Each phase moves work items from its entry statuses to a target status. The
gate also names the threshold every dependency must have reached before the
item may enter the phase.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from .models import PhaseStatus


class Phase(str, Enum):
    """Lifecycle phases executed by the orchestrator."""
    SHAPE = "shape"
    WRITE_SPEC = "write-spec"
    CREATE_TASKS = "create-tasks"
    IMPLEMENT = "implement"

    @classmethod
    def get_order(cls) -> list["Phase"]:
        return [cls.SHAPE, cls.WRITE_SPEC, cls.CREATE_TASKS, cls.IMPLEMENT]

    @classmethod
    def spec_phases(cls) -> list["Phase"]:
        return [cls.SHAPE, cls.WRITE_SPEC, cls.CREATE_TASKS]


class ExecutionMode(str, Enum):
    """How a batch is dispatched."""
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class CheckpointKind(str, Enum):
    """Alignment checkpoints between phases."""
    SPECS = "specs"
    TASKS = "tasks"
    DRIFT = "drift"


@dataclass(frozen=True)
class PhaseGate:
    """
    Entry gate for one phase.

    Attributes:
        phase: Phase this gate opens
        entry_statuses: Statuses an item may be in to enter the phase
            (None means any lifecycle status below the target)
        target: Status reached on success
        dependency_threshold: Minimum status every dependency must have reached
        dispatch_status: Status written when the item is dispatched, if any
    """
    phase: str
    target: PhaseStatus
    dependency_threshold: PhaseStatus
    entry_statuses: tuple[PhaseStatus, ...] | None = None
    dispatch_status: PhaseStatus | None = None

    def admits(self, status: PhaseStatus) -> bool:
        """Check whether an item with this effective status may enter the phase."""
        if status.is_side_state or status.rank() >= self.target.rank():
            return False
        if self.entry_statuses is None:
            return True
        return status in self.entry_statuses

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "target": self.target.value,
            "dependency_threshold": self.dependency_threshold.value,
            "entry_statuses": [s.value for s in self.entry_statuses] if self.entry_statuses else None,
            "dispatch_status": self.dispatch_status.value if self.dispatch_status else None,
        }


DEFAULT_GATES: dict[Phase, PhaseGate] = {
    Phase.SHAPE: PhaseGate(
        phase=Phase.SHAPE.value,
        entry_statuses=(PhaseStatus.DRAFTING,),
        target=PhaseStatus.SHAPED,
        dependency_threshold=PhaseStatus.SPECCED,
    ),
    Phase.WRITE_SPEC: PhaseGate(
        phase=Phase.WRITE_SPEC.value,
        entry_statuses=(PhaseStatus.SHAPED,),
        target=PhaseStatus.SPECCED,
        dependency_threshold=PhaseStatus.SPECCED,
    ),
    Phase.CREATE_TASKS: PhaseGate(
        phase=Phase.CREATE_TASKS.value,
        entry_statuses=(PhaseStatus.SPECCED,),
        target=PhaseStatus.TASKED,
        dependency_threshold=PhaseStatus.SPECCED,
    ),
    Phase.IMPLEMENT: PhaseGate(
        phase=Phase.IMPLEMENT.value,
        entry_statuses=(PhaseStatus.TASKED, PhaseStatus.IN_PROGRESS),
        target=PhaseStatus.COMPLETED,
        dependency_threshold=PhaseStatus.COMPLETED,
        dispatch_status=PhaseStatus.IN_PROGRESS,
    ),
}

DEFAULT_MODES: dict[Phase, ExecutionMode] = {
    Phase.SHAPE: ExecutionMode.SEQUENTIAL,
    Phase.WRITE_SPEC: ExecutionMode.PARALLEL,
    Phase.CREATE_TASKS: ExecutionMode.PARALLEL,
    Phase.IMPLEMENT: ExecutionMode.PARALLEL,
}

# Checkpoint run once a phase's batches are done
CHECKPOINT_AFTER: dict[Phase, CheckpointKind] = {
    Phase.WRITE_SPEC: CheckpointKind.SPECS,
    Phase.CREATE_TASKS: CheckpointKind.TASKS,
}

# Phase a checkpoint's resolutions send items back to
REVISION_TARGET: dict[CheckpointKind, Phase] = {
    CheckpointKind.SPECS: Phase.WRITE_SPEC,
    CheckpointKind.TASKS: Phase.CREATE_TASKS,
    CheckpointKind.DRIFT: Phase.WRITE_SPEC,
}


def build_gate(phase: Phase, threshold: PhaseStatus | str | None = None) -> PhaseGate:
    """Return the default gate for a phase, optionally with a different dependency threshold."""
    gate = DEFAULT_GATES[Phase(phase)]
    if threshold is None:
        return gate
    return PhaseGate(
        phase=gate.phase,
        entry_statuses=gate.entry_statuses,
        target=gate.target,
        dependency_threshold=PhaseStatus(threshold),
        dispatch_status=gate.dispatch_status,
    )


def resume_status_for(phase: Phase | str) -> PhaseStatus:
    """Status an item re-enters at when sent back to ``phase``."""
    gate = DEFAULT_GATES[Phase(phase)]
    if not gate.entry_statuses:
        return PhaseStatus.DRAFTING
    return gate.entry_statuses[0]
