#!/usr/bin/env python3
"""
Roadmap Orchestrator for Roadmap Cascade

Drives work items through the lifecycle phases in dependency order:

1. Rebuild the dependency graph from the StateStore
2. Compute the ready set for the current phase gate
3. Dispatch it through the BatchExecutor
4. Repeat until the phase has nothing ready, then run the phase's checkpoint

Pending high/critical drift halts only the affected items and their
dependents (or everything, with ``critical_drift_scope: global`` and a
critical event); independent branches keep going.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..backends.base import HumanChannel, SessionExecutor, SessionOptions
from ..settings.models import DriftScope, Settings
from ..state.state_store import StateStore
from .alignment import AlignmentEngine
from .batch_executor import BatchExecutor, BatchResult, PayloadBuilder, build_default_payload
from .dependency_graph import DependencyGraph
from .drift_classifier import DriftClassifier
from .errors import LifecycleError
from .models import (
    AlignmentReport,
    Decision,
    DriftEvent,
    ExecutionRecord,
    Outcome,
    PhaseStatus,
    Severity,
    WorkItem,
    utc_now,
)
from .phases import (
    CHECKPOINT_AFTER,
    DEFAULT_MODES,
    CheckpointKind,
    ExecutionMode,
    Phase,
    PhaseGate,
    build_gate,
)
from .retry_manager import RetryConfig, RetryPolicy
from .roadmap import load_roadmap

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_AWAITING_DECISION = 2
EXIT_BLOCKED = 3

# Status an item must have reached to be reviewed at a checkpoint
REVIEW_THRESHOLD = {
    CheckpointKind.SPECS: PhaseStatus.SPECCED,
    CheckpointKind.TASKS: PhaseStatus.TASKED,
}


@dataclass
class RunSummary:
    """Outcome of one orchestrator run."""
    phases_run: list[str] = field(default_factory=list)
    batches: list[BatchResult] = field(default_factory=list)
    reports: list[AlignmentReport] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    halted: list[str] = field(default_factory=list)
    pending_decisions: list[DriftEvent] = field(default_factory=list)
    stopped_at: str | None = None
    cancelled: bool = False

    @property
    def exit_code(self) -> int:
        if self.pending_decisions:
            return EXIT_AWAITING_DECISION
        if self.blocked:
            return EXIT_BLOCKED
        return EXIT_OK

    def to_dict(self) -> dict[str, Any]:
        return {
            "phases_run": list(self.phases_run),
            "batches": [b.to_dict() for b in self.batches],
            "reports": [r.report_id for r in self.reports],
            "completed": list(self.completed),
            "blocked": list(self.blocked),
            "halted": list(self.halted),
            "pending_decisions": [e.event_id for e in self.pending_decisions],
            "stopped_at": self.stopped_at,
            "cancelled": self.cancelled,
            "exit_code": self.exit_code,
        }


class Orchestrator:
    """Schedules phases, batches and checkpoints over the persisted roadmap."""

    def __init__(
        self,
        project_root: Path,
        executor: SessionExecutor,
        settings: Settings | None = None,
        store: StateStore | None = None,
        human: HumanChannel | None = None,
        payload_builder: PayloadBuilder | None = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            project_root: Root directory of the project
            executor: SessionExecutor doing the content work
            settings: Project settings (defaults when omitted)
            store: StateStore instance (created if not provided)
            human: Operator channel for interactive sessions
            payload_builder: Overrides the default payload
        """
        self.project_root = Path(project_root)
        self.settings = settings or Settings()
        self.executor = executor
        self.store = store or StateStore(self.project_root, lease_timeout=self.settings.lease_timeout_seconds)
        self.human = human
        self.payload_builder = payload_builder or self._default_payload

        self.classifier = DriftClassifier(self.settings.core_abstractions, self.settings.security_tags)
        self.engine = AlignmentEngine(self.store, self.classifier)
        self.retry_policy = RetryPolicy(RetryConfig(
            retry_attempts=self.settings.retry_attempts,
            base_delay_seconds=self.settings.retry_base_delay_seconds,
            max_delay_seconds=self.settings.retry_max_delay_seconds,
        ))
        self.options = SessionOptions(
            model=self.settings.executor.model,
            allowed_capabilities=list(self.settings.executor.allowed_capabilities),
            timeout_ms=self.settings.session_timeout_ms,
        )
        self.graph: DependencyGraph | None = None
        self._cancel_event = asyncio.Event()

    # ========== Graph ==========

    def load_roadmap(self, path: Path) -> list[WorkItem]:
        """
        Validate a roadmap file against the persisted items and create the new ones.

        Items already in the store keep their progress. Nothing is written
        unless the combined graph is valid.

        Returns:
            The newly created items

        Raises:
            GraphError: If the roadmap or the combined graph is invalid
        """
        declared = load_roadmap(path)
        existing = {i.id: i for i in self.store.load_all()}
        new_items = [i for i in declared if i.id not in existing]

        offset = max((i.sequence for i in existing.values()), default=-1) + 1
        for index, item in enumerate(new_items):
            item.sequence = offset + index
        DependencyGraph.from_items(list(existing.values()) + new_items)

        self.store.ensure_directories()
        for item in new_items:
            self.store.create(item)
        self.rebuild_graph()
        logger.info("Roadmap %s: %d new item(s), %d already tracked", path, len(new_items), len(existing))
        return new_items

    def rebuild_graph(self) -> DependencyGraph:
        """Rebuild the dependency graph from persisted state."""
        self.graph = DependencyGraph.from_items(self.store.load_all())
        return self.graph

    def declare_item(self, item: WorkItem) -> WorkItem:
        """
        Add a work item between batches.

        Raises:
            GraphError: If the item would form a cycle or names an unknown dependency
        """
        graph = self.rebuild_graph()
        graph.add_item(item)
        created = self.store.create(item)
        self.rebuild_graph()
        return created

    def gate_for(self, phase: Phase) -> PhaseGate:
        phase = Phase(phase)
        return build_gate(phase, self.settings.threshold_for(phase.value))

    def mode_for(self, phase: Phase) -> ExecutionMode:
        phase = Phase(phase)
        configured = self.settings.mode_for(phase.value)
        return ExecutionMode(configured) if configured else DEFAULT_MODES[phase]

    # ========== Drift state ==========

    def pending_decisions(self, items: Iterable[WorkItem] | None = None) -> list[DriftEvent]:
        """Pending high/critical events, one per event id."""
        events: dict[str, DriftEvent] = {}
        for item in items if items is not None else self.store.load_all():
            if not item.active:
                continue
            for event in item.blocking_drift():
                events.setdefault(event.event_id, event)
        return list(events.values())

    def halted_items(self, graph: DependencyGraph | None = None) -> set[str]:
        """Items held back by pending high/critical drift, including their dependents."""
        if graph is None:
            graph = self.graph if self.graph is not None else self.rebuild_graph()
        pending = self.pending_decisions(graph.items())
        if not pending:
            return set()

        if self.settings.critical_drift_scope == DriftScope.GLOBAL and any(
            e.severity == Severity.CRITICAL for e in pending
        ):
            return set(graph.ids())

        affected = {iid for e in pending for iid in e.affected_items if iid in graph}
        return affected | graph.descendants(affected)

    def _session_drift(self, item: WorkItem, events: list[DriftEvent]) -> list[DriftEvent]:
        kept = []
        for event in events:
            event.source = "session"
            event.report_id = None
            event.affected_items = sorted(set(event.affected_items) | {item.id})
            self.classifier.reclassify(event)
            if event.severity.halts and not self.settings.checkpoints.on_high_severity_drift:
                # recorded for the next checkpoint review instead of halting now
                record = item.history[-1] if item.history else None
                if record is not None:
                    record.findings.append(
                        f"drift ({event.severity.value}) {event.category}: {event.description}"
                    )
                continue
            if event.severity.halts:
                logger.warning(
                    "Session for %s reported %s drift (%s); halting affected items",
                    item.id, event.severity.value, event.category,
                )
            kept.append(event)
        return kept

    # ========== Phases ==========

    def _default_payload(self, item: WorkItem, phase: str) -> dict[str, Any]:
        dependency_findings = self.store.read_findings(set(item.dependencies)) if item.dependencies else []
        return build_default_payload(item, phase, dependency_findings)

    def _batch_executor(self) -> BatchExecutor:
        return BatchExecutor(
            store=self.store,
            executor=self.executor,
            retry_policy=self.retry_policy,
            options=self.options,
            working_context=self.project_root,
            payload_builder=self.payload_builder,
            human=self.human,
            session_drift_handler=self._session_drift,
        )

    async def run_phase(
        self,
        phase: Phase,
        scope: Iterable[str] | None = None,
        mode: ExecutionMode | None = None,
    ) -> list[BatchResult]:
        """
        Run one phase until nothing more is ready.

        Each batch is the ready set at that moment. The graph is rebuilt from
        the StateStore between batches, so items unlocked by the previous batch
        join the next one. An item is dispatched at most once per call.
        """
        phase = Phase(phase)
        gate = self.gate_for(phase)
        mode = ExecutionMode(mode) if mode else self.mode_for(phase)
        scope_ids = set(scope) if scope is not None else None
        dispatched: set[str] = set()
        results: list[BatchResult] = []

        while not self._cancel_event.is_set():
            graph = self.rebuild_graph()
            halted = self.halted_items(graph)
            ready = [
                i for i in graph.compute_ready_set(gate, halted=halted, scope=scope_ids)
                if i.id not in dispatched
            ]
            if not ready:
                break

            dispatched.update(i.id for i in ready)
            logger.info("Phase %s batch %d: %s", phase.value, len(results) + 1, [i.id for i in ready])
            batch = await self._batch_executor().run_phase(
                ready,
                gate,
                mode=mode,
                concurrency_limit=self.settings.max_concurrency,
                cancel_event=self._cancel_event,
            )
            results.append(batch)

            if self.settings.checkpoints.on_high_severity_drift:
                self._review_session_drift(batch.completed)
            if batch.cancelled:
                break

        return results

    def _review_session_drift(self, item_ids: list[str]) -> AlignmentReport | None:
        """Give session-reported events a report right away so they can be decided."""
        items = [self.store.load(iid) for iid in item_ids]
        reporting = [i for i in items if any(e.report_id is None and e.is_pending for e in i.drift_events)]
        if not reporting:
            return None
        report = self.engine.review(reporting, CheckpointKind.DRIFT)
        return self.engine.resolve(report)

    def run_checkpoint(self, kind: CheckpointKind, scope: Iterable[str] | None = None) -> AlignmentReport:
        """Review every item that has reached the checkpoint's status and auto-resolve low/medium drift."""
        kind = CheckpointKind(kind)
        threshold = REVIEW_THRESHOLD.get(kind, PhaseStatus.SHAPED)
        allowed = set(scope) if scope is not None else None
        items = [
            i for i in self.store.load_all(include_inactive=False)
            if (allowed is None or i.id in allowed) and i.effective_status.at_least(threshold)
        ]
        report = self.engine.review(items, kind)
        report = self.engine.resolve(report)

        for event in report.pending_blocking():
            logger.warning(
                "Halted on %s drift %s (%s): %s",
                event.severity.value, event.event_id, event.category, ", ".join(event.affected_items),
            )
        return report

    def checkpoint_enabled(self, kind: CheckpointKind) -> bool:
        if kind == CheckpointKind.SPECS:
            return self.settings.checkpoints.after_spec_alignment
        if kind == CheckpointKind.TASKS:
            return self.settings.checkpoints.after_task_alignment
        return True

    async def execute(
        self,
        spec_only: bool = False,
        checkpoint_at: Phase | str | None = None,
        scope: Iterable[str] | None = None,
    ) -> RunSummary:
        """
        Run the full loop until no phase makes progress.

        Args:
            spec_only: Stop before the implement phase
            checkpoint_at: Stop after this phase (and its checkpoint) in the first round
            scope: Restrict the run to these item ids

        Returns:
            RunSummary whose ``exit_code`` is 0, 2 or 3
        """
        phases = Phase.spec_phases() if spec_only else Phase.get_order()
        stop_phase = Phase(checkpoint_at) if checkpoint_at else None
        scope_ids = list(scope) if scope is not None else None
        summary = RunSummary()
        self.rebuild_graph()

        progressing = True
        while progressing and not self._cancel_event.is_set():
            progressing = False
            for phase in phases:
                if self._cancel_event.is_set():
                    break
                batches = await self.run_phase(phase, scope=scope_ids)
                summary.batches.extend(batches)
                summary.phases_run.append(phase.value)
                if any(b.completed for b in batches):
                    progressing = True
                    kind = CHECKPOINT_AFTER.get(phase)
                    if kind is not None and self.checkpoint_enabled(kind):
                        report = self.run_checkpoint(kind, scope=scope_ids)
                        summary.reports.append(report)
                if phase == stop_phase:
                    summary.stopped_at = phase.value
                    break
            if summary.stopped_at:
                break

        summary.cancelled = self._cancel_event.is_set()
        return self._summarize(summary)

    async def run_phases(
        self,
        phases: Iterable[tuple[Phase, ExecutionMode | None]],
        scope: Iterable[str] | None = None,
    ) -> RunSummary:
        """Run each (phase, mode) once, in order, without checkpoints."""
        scope_ids = list(scope) if scope is not None else None
        summary = RunSummary()
        for phase, mode in phases:
            if self._cancel_event.is_set():
                break
            summary.batches.extend(await self.run_phase(phase, scope=scope_ids, mode=mode))
            summary.phases_run.append(Phase(phase).value)
        summary.cancelled = self._cancel_event.is_set()
        return self._summarize(summary)

    def _summarize(self, summary: RunSummary) -> RunSummary:
        items = self.store.load_all(include_inactive=False)
        graph = self.rebuild_graph()
        summary.completed = [i.id for i in items if i.phase_status == PhaseStatus.COMPLETED]
        summary.blocked = [i.id for i in items if i.is_blocked]
        summary.pending_decisions = self.pending_decisions(items)
        summary.halted = sorted(self.halted_items(graph))
        logger.info(
            "Run finished: %d completed, %d blocked, %d pending decision(s)",
            len(summary.completed), len(summary.blocked), len(summary.pending_decisions),
        )
        return summary

    def summary(self) -> RunSummary:
        """Summary of the persisted state without running anything."""
        return self._summarize(RunSummary())

    def cancel(self) -> None:
        """Stop dispatching new work; in-flight sessions are asked to stop."""
        self._cancel_event.set()

    # ========== Operator actions ==========

    def find_event(self, event_id: str) -> tuple[AlignmentReport, DriftEvent]:
        for report in self.store.list_reports():
            event = report.event(event_id)
            if event is not None:
                return report, event
        raise KeyError(f"Unknown drift event: {event_id}")

    def decide(self, event_id: str, decision: Decision | str, note: str | None = None) -> AlignmentReport:
        """
        Record an operator decision on a drift event and apply it.

        ``pause`` leaves the event pending.
        """
        report, event = self.find_event(event_id)
        if decision == "pause":
            logger.info("Drift %s left pending", event_id)
            return report
        decision = Decision(decision)
        if decision == Decision.PENDING:
            return report
        if not event.is_pending:
            raise LifecycleError(f"Drift event {event_id} was already decided ({event.decision.value})")
        logger.info("Operator decided %s on drift %s", decision.value, event_id)
        return self.engine.apply_resolutions(report, {event_id: (decision, note)})

    def unblock(self, item_id: str) -> WorkItem:
        """
        Return a blocked item to the status it was blocked from.

        Raises:
            LifecycleError: If the item is not blocked
        """
        def update(item: WorkItem) -> None:
            if not item.is_blocked:
                raise LifecycleError(f"Work item '{item.id}' is not blocked")
            restore = item.blocked_from
            reason = item.block_reason
            now = utc_now()
            item.history.append(ExecutionRecord(
                item_id=item.id,
                phase="unblock",
                attempt_count=0,
                outcome=Outcome.SUCCESS,
                started_at=now,
                finished_at=now,
                findings=[f"unblocked (was: {reason})"] if reason else [],
            ))
            item.transition(restore)

        item = self.store.update_with_retry(item_id, update)
        logger.info("Unblocked %s at %s", item_id, item.phase_status.value)
        return item

    def retire(self, item_id: str) -> WorkItem:
        """
        Take an item out of future runs, keeping its record and history.

        Dependents stop waiting on a retired item.

        Raises:
            ItemNotFoundError: If the item does not exist
        """
        item = self.store.mark_inactive(item_id)
        released = [i.id for i in self.store.load_all(include_inactive=False) if item_id in i.dependencies]
        logger.info("Retired %s at %s", item_id, item.phase_status.value)
        if released:
            logger.info("%s no longer wait on %s", ", ".join(released), item_id)
        return item
