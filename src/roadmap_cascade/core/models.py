"""
Data Model for Roadmap Cascade

Explicit, validated records for everything the orchestration core persists:
- WorkItem: a roadmap entry moving through the lifecycle state machine
- ExecutionRecord: append-only outcome of one SessionExecutor call
- DriftEvent: a classified deviation found between produced artifacts
- AlignmentReport: the result of one checkpoint review

All records round-trip through plain dictionaries (to_dict/from_dict) so the
StateStore can persist them as JSON.
"""

from __future__ import annotations

import hashlib
import json
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .errors import GraphError, LifecycleError


def utc_now() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def new_id(prefix: str) -> str:
    """Generate a short unique identifier with a readable prefix."""
    return f"{prefix}-{uuid.uuid4().hex[:10]}"


class PhaseStatus(str, Enum):
    """
    Lifecycle status of a work item.

    drafting -> shaped -> specced -> tasked -> in-progress -> completed,
    plus two side states:
    - BLOCKED: recoverable, re-entered at the status it left
    - NEEDS_REVISION: entered only through an applied drift resolution
    """
    DRAFTING = "drafting"
    SHAPED = "shaped"
    SPECCED = "specced"
    TASKED = "tasked"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    NEEDS_REVISION = "needs-revision"

    @classmethod
    def get_order(cls) -> list["PhaseStatus"]:
        """Get lifecycle statuses in order (side states excluded)."""
        return [
            cls.DRAFTING,
            cls.SHAPED,
            cls.SPECCED,
            cls.TASKED,
            cls.IN_PROGRESS,
            cls.COMPLETED,
        ]

    @property
    def is_side_state(self) -> bool:
        return self in (PhaseStatus.BLOCKED, PhaseStatus.NEEDS_REVISION)

    def rank(self) -> int:
        """Position in the lifecycle; side states have no rank."""
        if self.is_side_state:
            raise LifecycleError(f"'{self.value}' is a side state and has no lifecycle rank")
        return PhaseStatus.get_order().index(self)

    def at_least(self, other: "PhaseStatus") -> bool:
        """Check whether this status is at or beyond another lifecycle status."""
        return self.rank() >= other.rank()


class Outcome(str, Enum):
    """Outcome of one ExecutionRecord."""
    SUCCESS = "success"
    FAILURE = "failure"
    BLOCKED = "blocked"


class Severity(str, Enum):
    """Risk tier of a drift event."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    def rank(self) -> int:
        return [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL].index(self)

    @property
    def halts(self) -> bool:
        """High and critical events halt until a human decides."""
        return self in (Severity.HIGH, Severity.CRITICAL)


class Decision(str, Enum):
    """Decision recorded on a drift event."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    MODIFIED = "modified"


class ReportStatus(str, Enum):
    """Review status of an alignment report."""
    PENDING_REVIEW = "pending-review"
    APPROVED = "approved"
    APPLIED = "applied"


class ResolutionAction(str, Enum):
    """What the classifier allows to happen with a drift event."""
    AUTO_RESOLVE = "auto-resolve"
    AUTO_RESOLVE_NOTIFY = "auto-resolve-notify"
    HALT = "halt"


def normalize_name(name: str) -> str:
    """Lower-case alphanumeric form used to compare declaration names."""
    return re.sub(r"[^a-z0-9]", "", name.lower())


@dataclass
class InterfaceDecl:
    """
    A declaration recorded by a session: a model, endpoint, table or component.

    Attributes:
        name: Declared name as spelled by the producing item
        kind: Free-form kind tag ("model", "endpoint", "component", ...)
        fields: Field name -> type/shape
        optional_fields: Fields that callers may omit
        component: Shared component this declaration belongs to
        scope: Scope tags the producing item claims ownership of
        uses: Names of declarations owned by other items that this one relies on
        core: Declares (or modifies) a core abstraction
        security: Security-relevant declaration
    """
    name: str
    kind: str = "model"
    fields: dict[str, str] = field(default_factory=dict)
    optional_fields: list[str] = field(default_factory=list)
    component: str | None = None
    scope: list[str] = field(default_factory=list)
    uses: list[str] = field(default_factory=list)
    core: bool = False
    security: bool = False

    def __post_init__(self):
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError("InterfaceDecl.name must be a non-empty string")
        if not isinstance(self.fields, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in self.fields.items()
        ):
            raise ValueError(f"InterfaceDecl '{self.name}': fields must map str to str")

    @property
    def normalized_name(self) -> str:
        return normalize_name(self.name)

    def fingerprint(self) -> str:
        """Stable hash of the declaration's shape (name spelling excluded)."""
        shape = {
            "kind": self.kind,
            "fields": dict(sorted(self.fields.items())),
            "optional": sorted(self.optional_fields),
        }
        encoded = json.dumps(shape, sort_keys=True).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()[:16]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "fields": dict(self.fields),
            "optional_fields": list(self.optional_fields),
            "component": self.component,
            "scope": list(self.scope),
            "uses": list(self.uses),
            "core": self.core,
            "security": self.security,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InterfaceDecl":
        return cls(
            name=data["name"],
            kind=data.get("kind", "model"),
            fields=dict(data.get("fields", {})),
            optional_fields=list(data.get("optional_fields", [])),
            component=data.get("component"),
            scope=list(data.get("scope", [])),
            uses=list(data.get("uses", [])),
            core=bool(data.get("core", False)),
            security=bool(data.get("security", False)),
        )


@dataclass
class ExecutionRecord:
    """
    Append-only record of one SessionExecutor call (or one resolution step).

    Attributes:
        item_id: Work item the record belongs to
        phase: Phase name ("shape", "write-spec", ..., "align", "unblock")
        attempt_count: Number of attempts the call took
        outcome: success, failure or blocked
        started_at: ISO-8601 start timestamp
        finished_at: ISO-8601 finish timestamp
        artifacts: Opaque artifact references
        findings: Opaque notes for future phases
        errors: Failure reason per failed attempt
    """
    item_id: str
    phase: str
    attempt_count: int
    outcome: Outcome
    started_at: str
    finished_at: str
    artifacts: list[str] = field(default_factory=list)
    findings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    active: bool = True

    def __post_init__(self):
        self.outcome = Outcome(self.outcome)
        if self.attempt_count < 0:
            raise ValueError("attempt_count must be >= 0")
        if self.finished_at < self.started_at:
            raise ValueError(f"ExecutionRecord for '{self.item_id}' finishes before it starts")

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "phase": self.phase,
            "attempt_count": self.attempt_count,
            "outcome": self.outcome.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "artifacts": list(self.artifacts),
            "findings": list(self.findings),
            "errors": list(self.errors),
            "active": self.active,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionRecord":
        return cls(
            item_id=data["item_id"],
            phase=data["phase"],
            attempt_count=data.get("attempt_count", 1),
            outcome=Outcome(data["outcome"]),
            started_at=data["started_at"],
            finished_at=data["finished_at"],
            artifacts=list(data.get("artifacts", [])),
            findings=list(data.get("findings", [])),
            errors=list(data.get("errors", [])),
            active=data.get("active", True),
        )


@dataclass
class DriftEvent:
    """
    A deviation detected between expected and actual artifacts.

    Severity and resolution are assigned by the DriftClassifier. ``edit`` is the
    structured change applied when the event is resolved, e.g.
    ``{"op": "rename", "from": "user_profile", "to": "UserProfile"}``.
    """
    category: str
    severity: Severity
    description: str
    affected_items: list[str]
    recommendation: str
    decision: Decision = Decision.PENDING
    resolved_at: str | None = None
    event_id: str = field(default_factory=lambda: new_id("drift"))
    subject: str = ""
    expected: str | None = None
    actual: str | None = None
    impact: str = ""
    resolution: ResolutionAction | None = None
    edit: dict[str, Any] | None = None
    target_phase: str | None = None
    decided_by: str | None = None
    note: str | None = None
    follow_up_required: bool = False
    cascade: bool = False
    parent_event_id: str | None = None
    report_id: str | None = None
    source: str = "alignment"
    traits: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utc_now)

    def __post_init__(self):
        self.severity = Severity(self.severity)
        self.decision = Decision(self.decision)
        if self.resolution is not None:
            self.resolution = ResolutionAction(self.resolution)
        if not self.category:
            raise ValueError("DriftEvent.category must not be empty")
        self.affected_items = sorted(set(self.affected_items))

    @property
    def is_pending(self) -> bool:
        return self.decision == Decision.PENDING

    @property
    def is_blocking(self) -> bool:
        """Pending high/critical events block their affected subgraph."""
        return self.is_pending and self.severity.halts

    def fingerprint(self) -> tuple[str, str, tuple[str, ...]]:
        """Identity of the underlying deviation, stable across reviews."""
        return (self.category, self.subject, tuple(self.affected_items))

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "category": self.category,
            "severity": self.severity.value,
            "description": self.description,
            "affected_items": list(self.affected_items),
            "recommendation": self.recommendation,
            "decision": self.decision.value,
            "resolved_at": self.resolved_at,
            "subject": self.subject,
            "expected": self.expected,
            "actual": self.actual,
            "impact": self.impact,
            "resolution": self.resolution.value if self.resolution else None,
            "edit": self.edit,
            "target_phase": self.target_phase,
            "decided_by": self.decided_by,
            "note": self.note,
            "follow_up_required": self.follow_up_required,
            "cascade": self.cascade,
            "parent_event_id": self.parent_event_id,
            "report_id": self.report_id,
            "source": self.source,
            "traits": dict(self.traits),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DriftEvent":
        return cls(
            event_id=data.get("event_id") or new_id("drift"),
            category=data["category"],
            severity=Severity(data.get("severity", "medium")),
            description=data.get("description", ""),
            affected_items=list(data.get("affected_items", [])),
            recommendation=data.get("recommendation", ""),
            decision=Decision(data.get("decision", "pending")),
            resolved_at=data.get("resolved_at"),
            subject=data.get("subject", ""),
            expected=data.get("expected"),
            actual=data.get("actual"),
            impact=data.get("impact", ""),
            resolution=data.get("resolution"),
            edit=data.get("edit"),
            target_phase=data.get("target_phase"),
            decided_by=data.get("decided_by"),
            note=data.get("note"),
            follow_up_required=data.get("follow_up_required", False),
            cascade=data.get("cascade", False),
            parent_event_id=data.get("parent_event_id"),
            report_id=data.get("report_id"),
            source=data.get("source", "alignment"),
            traits=dict(data.get("traits", {})),
            created_at=data.get("created_at") or utc_now(),
        )


@dataclass
class WorkItem:
    """
    A unit of roadmap work tracked through the lifecycle.

    ``artifacts`` and ``interfaces`` hold the item's current recorded output:
    they accumulate from successful ExecutionRecords and are edited by applied
    drift resolutions. ``history`` keeps every record unchanged.
    """
    id: str
    title: str = ""
    description: str = ""
    phase_status: PhaseStatus = PhaseStatus.DRAFTING
    dependencies: list[str] = field(default_factory=list)
    priority: int = 0
    related_items: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    history: list[ExecutionRecord] = field(default_factory=list)
    drift_events: list[DriftEvent] = field(default_factory=list)
    artifacts: list[str] = field(default_factory=list)
    interfaces: list[InterfaceDecl] = field(default_factory=list)
    blocked_from: PhaseStatus | None = None
    block_reason: str | None = None
    resume_status: PhaseStatus | None = None
    active: bool = True
    sequence: int = 0
    created_at: str = field(default_factory=utc_now)
    updated_at: str | None = None

    def __post_init__(self):
        if not isinstance(self.id, str) or not self.id.strip():
            raise ValueError("WorkItem.id must be a non-empty string")
        self.phase_status = PhaseStatus(self.phase_status)
        if self.blocked_from is not None:
            self.blocked_from = PhaseStatus(self.blocked_from)
        if self.resume_status is not None:
            self.resume_status = PhaseStatus(self.resume_status)
        # de-duplicate while keeping declaration order
        self.dependencies = list(dict.fromkeys(self.dependencies))
        self.related_items = [r for r in dict.fromkeys(self.related_items) if r != self.id]
        if self.id in self.dependencies:
            raise GraphError(f"Work item '{self.id}' depends on itself", cycle=[self.id, self.id])
        if isinstance(self.priority, bool) or not isinstance(self.priority, int):
            raise ValueError(f"WorkItem '{self.id}': priority must be an integer")
        if self.phase_status == PhaseStatus.BLOCKED and self.blocked_from is None:
            raise LifecycleError(f"Blocked item '{self.id}' has no blocked_from status")
        if self.phase_status == PhaseStatus.NEEDS_REVISION and self.resume_status is None:
            raise LifecycleError(f"Item '{self.id}' needs revision but has no resume_status")

    @property
    def effective_status(self) -> PhaseStatus:
        """Lifecycle status used for gating: side states map to the status they re-enter at."""
        if self.phase_status == PhaseStatus.BLOCKED:
            return self.blocked_from  # type: ignore[return-value]
        if self.phase_status == PhaseStatus.NEEDS_REVISION:
            return self.resume_status  # type: ignore[return-value]
        return self.phase_status

    @property
    def is_blocked(self) -> bool:
        return self.phase_status == PhaseStatus.BLOCKED

    def transition(
        self,
        new_status: PhaseStatus,
        reason: str | None = None,
        resume_status: PhaseStatus | None = None,
    ) -> None:
        """
        Move to a new phase status, enforcing the lifecycle rules.

        Args:
            new_status: Target status
            reason: Block reason (BLOCKED only)
            resume_status: Status to re-enter at (NEEDS_REVISION only)

        Raises:
            LifecycleError: If the move would regress the lifecycle
        """
        new_status = PhaseStatus(new_status)
        current = self.phase_status

        if new_status == PhaseStatus.BLOCKED:
            if current == PhaseStatus.COMPLETED:
                raise LifecycleError(f"Completed item '{self.id}' cannot be blocked")
            if current != PhaseStatus.BLOCKED:
                self.blocked_from = self.effective_status
            self.block_reason = reason
            self.phase_status = PhaseStatus.BLOCKED
            return

        if new_status == PhaseStatus.NEEDS_REVISION:
            if resume_status is None or PhaseStatus(resume_status).is_side_state:
                raise LifecycleError("needs-revision requires a lifecycle resume_status")
            self.resume_status = PhaseStatus(resume_status)
            self.blocked_from = None
            self.block_reason = None
            self.phase_status = PhaseStatus.NEEDS_REVISION
            return

        floor = self.effective_status
        if new_status.rank() < floor.rank():
            raise LifecycleError(
                f"Item '{self.id}' cannot move from '{current.value}' back to '{new_status.value}'"
            )
        self.phase_status = new_status
        self.blocked_from = None
        self.block_reason = None
        self.resume_status = None

    def latest_record(self, phase: str | None = None) -> ExecutionRecord | None:
        for record in reversed(self.history):
            if record.active and (phase is None or record.phase == phase):
                return record
        return None

    def pending_drift(self) -> list[DriftEvent]:
        return [e for e in self.drift_events if e.is_pending]

    def blocking_drift(self) -> list[DriftEvent]:
        return [e for e in self.drift_events if e.is_blocking]

    def find_drift(self, event_id: str) -> DriftEvent | None:
        for event in self.drift_events:
            if event.event_id == event_id:
                return event
        return None

    def upsert_drift(self, event: DriftEvent) -> None:
        """Insert or replace a drift event by id."""
        for i, existing in enumerate(self.drift_events):
            if existing.event_id == event.event_id:
                self.drift_events[i] = event
                return
        self.drift_events.append(event)

    def findings(self) -> list[str]:
        notes: list[str] = []
        for record in self.history:
            if record.active:
                notes.extend(record.findings)
        return notes

    def to_dict(self) -> dict[str, Any]:
        """Convert to the persisted record format."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "phase_status": self.phase_status.value,
            "dependencies": list(self.dependencies),
            "priority": self.priority,
            "related_items": list(self.related_items),
            "tags": list(self.tags),
            "history": [r.to_dict() for r in self.history],
            "drift_events": [e.to_dict() for e in self.drift_events],
            "artifacts": list(self.artifacts),
            "interfaces": [i.to_dict() for i in self.interfaces],
            "blocked_from": self.blocked_from.value if self.blocked_from else None,
            "block_reason": self.block_reason,
            "resume_status": self.resume_status.value if self.resume_status else None,
            "active": self.active,
            "sequence": self.sequence,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkItem":
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            description=data.get("description", ""),
            phase_status=PhaseStatus(data.get("phase_status", "drafting")),
            dependencies=list(data.get("dependencies", [])),
            priority=data.get("priority", 0),
            related_items=list(data.get("related_items", [])),
            tags=list(data.get("tags", [])),
            history=[ExecutionRecord.from_dict(r) for r in data.get("history", [])],
            drift_events=[DriftEvent.from_dict(e) for e in data.get("drift_events", [])],
            artifacts=list(data.get("artifacts", [])),
            interfaces=[InterfaceDecl.from_dict(i) for i in data.get("interfaces", [])],
            blocked_from=data.get("blocked_from"),
            block_reason=data.get("block_reason"),
            resume_status=data.get("resume_status"),
            active=data.get("active", True),
            sequence=data.get("sequence", 0),
            created_at=data.get("created_at") or utc_now(),
            updated_at=data.get("updated_at"),
        )


@dataclass
class AlignmentReport:
    """Result of one alignment checkpoint."""
    checkpoint: str
    reviewed_items: list[str]
    events: list[DriftEvent] = field(default_factory=list)
    recommended_order: list[str] = field(default_factory=list)
    status: ReportStatus = ReportStatus.PENDING_REVIEW
    report_id: str = field(default_factory=lambda: new_id("report"))
    new_edges: list[list[str]] = field(default_factory=list)
    notifications: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)
    applied_at: str | None = None

    def __post_init__(self):
        self.status = ReportStatus(self.status)

    def event(self, event_id: str) -> DriftEvent | None:
        for event in self.events:
            if event.event_id == event_id:
                return event
        return None

    def pending_blocking(self) -> list[DriftEvent]:
        return [e for e in self.events if e.is_blocking]

    @property
    def has_blocking(self) -> bool:
        return bool(self.pending_blocking())

    def to_dict(self) -> dict[str, Any]:
        return {
            "report_id": self.report_id,
            "checkpoint": self.checkpoint,
            "reviewed_items": list(self.reviewed_items),
            "events": [e.to_dict() for e in self.events],
            "recommended_order": list(self.recommended_order),
            "status": self.status.value,
            "new_edges": [list(edge) for edge in self.new_edges],
            "notifications": list(self.notifications),
            "created_at": self.created_at,
            "applied_at": self.applied_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AlignmentReport":
        return cls(
            report_id=data["report_id"],
            checkpoint=data.get("checkpoint", ""),
            reviewed_items=list(data.get("reviewed_items", [])),
            events=[DriftEvent.from_dict(e) for e in data.get("events", [])],
            recommended_order=list(data.get("recommended_order", [])),
            status=ReportStatus(data.get("status", "pending-review")),
            new_edges=[list(edge) for edge in data.get("new_edges", [])],
            notifications=list(data.get("notifications", [])),
            created_at=data.get("created_at") or utc_now(),
            applied_at=data.get("applied_at"),
        )
