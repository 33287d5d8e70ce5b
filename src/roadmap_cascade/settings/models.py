"""
Settings data models for Roadmap Cascade.

This module defines all configuration-related data classes including:
- CheckpointSettings: which alignment checkpoints run
- ExecutorSettings: how sessions are launched
- Settings: Main settings class aggregating all configuration options
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class DriftScope(Enum):
    """
    How far a pending critical drift event stops new dispatches.

    - SUBGRAPH: only the affected items and their dependents
    - GLOBAL: every item, until the event is decided
    """

    SUBGRAPH = "subgraph"
    GLOBAL = "global"


@dataclass
class CheckpointSettings:
    """
    Alignment checkpoint switches.

    Attributes:
        after_spec_alignment: Review specs once write-spec finishes.
        after_task_alignment: Review task breakdowns once create-tasks finishes.
        on_high_severity_drift: Halt as soon as a session reports high/critical
            drift, instead of waiting for the next checkpoint.
    """

    after_spec_alignment: bool = True
    after_task_alignment: bool = True
    on_high_severity_drift: bool = True


@dataclass
class ExecutorSettings:
    """
    Configuration for the session executor.

    Attributes:
        command: Agent command and arguments run once per session.
        model: Model name passed through to the executor.
        allowed_capabilities: Capabilities sessions may use.
        env: Extra environment variables for the agent command.
    """

    command: List[str] = field(
        default_factory=lambda: ["claude", "--print", "--output-format", "json"]
    )
    model: str = ""
    allowed_capabilities: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)


@dataclass
class Settings:
    """
    Project settings for Roadmap Cascade.

    Attributes:
        max_concurrency: Maximum in-flight sessions in a parallel phase.
        retry_attempts: Retries after the first attempt for transient failures.
        session_timeout_ms: Timeout for each session call.
        retry_base_delay_seconds: First backoff delay.
        retry_max_delay_seconds: Backoff ceiling.
        checkpoints: Alignment checkpoint switches.
        critical_drift_scope: subgraph or global halting for critical drift.
        phase_gates: Phase name -> dependency threshold override.
        phase_modes: Phase name -> sequential/parallel override.
        executor: Session executor configuration.
        core_abstractions: Declaration names treated as core abstractions.
        security_tags: Scope tags treated as security relevant.
        lease_timeout_seconds: Wait for a contended item lease.
        log_level: Log level for the run log.
    """

    max_concurrency: int = 3
    retry_attempts: int = 3
    session_timeout_ms: int = 1_800_000
    retry_base_delay_seconds: float = 5.0
    retry_max_delay_seconds: float = 60.0

    checkpoints: CheckpointSettings = field(default_factory=CheckpointSettings)
    critical_drift_scope: DriftScope = DriftScope.SUBGRAPH

    phase_gates: Dict[str, str] = field(default_factory=dict)
    phase_modes: Dict[str, str] = field(default_factory=dict)

    executor: ExecutorSettings = field(default_factory=ExecutorSettings)

    core_abstractions: List[str] = field(default_factory=list)
    security_tags: List[str] = field(
        default_factory=lambda: ["auth", "authentication", "authorization", "security", "secrets"]
    )

    lease_timeout_seconds: float = 2.0
    log_level: str = "INFO"

    def mode_for(self, phase: str) -> Optional[str]:
        """Return the configured execution mode for a phase, if overridden."""
        return self.phase_modes.get(phase)

    def threshold_for(self, phase: str) -> Optional[str]:
        """Return the configured dependency threshold for a phase, if overridden."""
        return self.phase_gates.get(phase)
