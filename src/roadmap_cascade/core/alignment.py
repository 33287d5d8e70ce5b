#!/usr/bin/env python3
"""
Alignment Engine for Roadmap Cascade

Runs at the checkpoints between phases. ``review`` compares the interfaces
recorded on each reviewed item against every other reviewed item and turns
each deviation into a classified DriftEvent:

- naming-conflict: same normalized name, different spelling
- api-inconsistency: same name, different shape
- duplicated-scope: two items claim the same scope tag
- dependency-order: an item uses a declaration of an item it does not depend on
- shared-component-divergence: one component declared with different shapes

``apply_resolutions`` applies the edits of approved events, sends items
affected by high/critical resolutions back for revision, and runs one
cascade check over the affected items and their related items.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable
from typing import Any

from ..state.state_store import StateStore
from .dependency_graph import DependencyGraph
from .drift_classifier import DeviationTraits, DriftClassifier
from .errors import GraphError
from .models import (
    AlignmentReport,
    Decision,
    DriftEvent,
    ExecutionRecord,
    InterfaceDecl,
    Outcome,
    PhaseStatus,
    ReportStatus,
    Severity,
    WorkItem,
    normalize_name,
    utc_now,
)
from .phases import REVISION_TARGET, CheckpointKind, resume_status_for

logger = logging.getLogger(__name__)

NAMING_CONFLICT = "naming-conflict"
API_INCONSISTENCY = "api-inconsistency"
DUPLICATED_SCOPE = "duplicated-scope"
DEPENDENCY_ORDER = "dependency-order"
COMPONENT_DIVERGENCE = "shared-component-divergence"

CATEGORIES = (NAMING_CONFLICT, API_INCONSISTENCY, DUPLICATED_SCOPE, DEPENDENCY_ORDER, COMPONENT_DIVERGENCE)


def _additive_union(a: InterfaceDecl, b: InterfaceDecl) -> InterfaceDecl | None:
    """Union of two shapes when they differ only by optional fields, else None."""
    if a.kind != b.kind:
        return None
    shared = a.fields.keys() & b.fields.keys()
    if any(a.fields[k] != b.fields[k] for k in shared):
        return None
    optional_a, optional_b = set(a.optional_fields), set(b.optional_fields)
    if optional_a & shared != optional_b & shared:
        return None
    extras = (a.fields.keys() - shared) | (b.fields.keys() - shared)
    optional = optional_a | optional_b
    if not extras <= optional:
        return None
    fields = {**a.fields, **b.fields}
    return InterfaceDecl(
        name=a.name,
        kind=a.kind,
        fields=dict(sorted(fields.items())),
        optional_fields=sorted(optional & fields.keys()),
    )


class AlignmentEngine:
    """
    Checkpoint reviews and drift resolution.

    The engine reads and writes work items only through the StateStore; it
    never mutates a DependencyGraph the orchestrator holds.
    """

    def __init__(self, store: StateStore, classifier: DriftClassifier | None = None):
        self.store = store
        self.classifier = classifier or DriftClassifier()

    # ========== Review ==========

    def review(
        self,
        items: Iterable[WorkItem],
        checkpoint: CheckpointKind = CheckpointKind.SPECS,
    ) -> AlignmentReport:
        """
        Review items against each other and persist the resulting report.

        Args:
            items: Items whose recorded interfaces are compared
            checkpoint: Checkpoint the review runs at

        Returns:
            AlignmentReport in pending-review (or approved when nothing was found)
        """
        checkpoint = CheckpointKind(checkpoint)
        reviewed = sorted({i.id: i for i in items}.values(), key=lambda i: i.sequence)
        all_items = self.store.load_all()
        graph = DependencyGraph.from_items(all_items)

        report = AlignmentReport(checkpoint=checkpoint.value, reviewed_items=[i.id for i in reviewed])
        # session-reported events win over detected duplicates
        events = self._collect_session_events(reviewed, all_items)
        events.extend(self._detect(reviewed, graph, all_items))

        target_phase = REVISION_TARGET[checkpoint].value
        seen: set[tuple[str, str, tuple[str, ...]]] = set()
        for event in events:
            if event.fingerprint() in seen:
                continue
            seen.add(event.fingerprint())
            event.report_id = report.report_id
            event.target_phase = event.target_phase or target_phase
            report.events.append(event)

        report.new_edges = [
            [e.edit["item"], e.edit["depends_on"]]
            for e in report.events
            if e.category == DEPENDENCY_ORDER and e.edit
        ]
        reviewed_ids = set(report.reviewed_items)
        try:
            order = graph.topological_order(extra_edges=[tuple(edge) for edge in report.new_edges])
        except GraphError:
            order = graph.topological_order()
        report.recommended_order = [iid for iid in order if iid in reviewed_ids]
        if not report.events:
            report.status = ReportStatus.APPROVED

        self.store.save_report(report)
        self._write_events(report.events)
        logger.info(
            "Alignment review (%s) of %d item(s): %d drift event(s)",
            checkpoint.value, len(reviewed), len(report.events),
        )
        return report

    def _rejected_decisions(self, all_items: list[WorkItem]) -> set[tuple[str, str]]:
        rejected: set[tuple[str, str]] = set()
        for item in all_items:
            for event in item.drift_events:
                if event.decision == Decision.REJECTED and event.decided_by != "auto":
                    rejected.add((event.category, event.subject))
        return rejected

    def _open_fingerprints(self, all_items: list[WorkItem]) -> set[tuple[str, str, tuple[str, ...]]]:
        """Deviations already reported and still awaiting a decision."""
        return {
            e.fingerprint()
            for item in all_items
            for e in item.drift_events
            if e.report_id and e.is_pending
        }

    def _accepted_deviations(self, all_items: list[WorkItem]) -> set[tuple[Any, ...]]:
        """
        Deviations a human rejected, with the shapes seen at the time.

        A rejected deviation is not reported again while both sides are
        unchanged. Once either side changes it is reported and, through the
        rejected (category, subject) pair, escalated.
        """
        return {
            (e.fingerprint(), e.expected, e.actual)
            for item in all_items
            for e in item.drift_events
            if e.decision == Decision.REJECTED and e.decided_by != "auto"
        }

    def _detect(
        self,
        reviewed: list[WorkItem],
        graph: DependencyGraph,
        all_items: list[WorkItem],
    ) -> list[DriftEvent]:
        rejected = self._rejected_decisions(all_items)
        open_events = self._open_fingerprints(all_items)
        accepted = self._accepted_deviations(all_items)
        found: list[tuple[DriftEvent, DeviationTraits]] = []

        found.extend(self._check_names(reviewed))
        found.extend(self._check_scope(reviewed))
        found.extend(self._check_dependency_order(reviewed, graph))

        events = []
        for event, traits in found:
            if event.fingerprint() in open_events:
                continue
            if (event.fingerprint(), event.expected, event.actual) in accepted:
                continue
            events.append(self.classifier.apply(event, traits, rejected))
        return events

    def _declarations(self, reviewed: list[WorkItem]) -> dict[str, list[tuple[WorkItem, InterfaceDecl]]]:
        by_name: dict[str, list[tuple[WorkItem, InterfaceDecl]]] = defaultdict(list)
        for item in reviewed:
            for decl in item.interfaces:
                by_name[decl.normalized_name].append((item, decl))
        return by_name

    def _check_names(self, reviewed: list[WorkItem]) -> list[tuple[DriftEvent, DeviationTraits]]:
        """Naming conflicts, shape inconsistencies and shared-component divergence."""
        found = []
        for normalized, owners in self._declarations(reviewed).items():
            owner_item, owner_decl = owners[0]
            for item, decl in owners[1:]:
                if item.id == owner_item.id:
                    continue
                affected = [owner_item.id, item.id]

                if decl.name != owner_decl.name:
                    found.append((
                        DriftEvent(
                            category=NAMING_CONFLICT,
                            severity=Severity.LOW,
                            subject=owner_decl.name,
                            description=f"'{item.id}' spells '{owner_decl.name}' as '{decl.name}'",
                            affected_items=affected,
                            expected=owner_decl.name,
                            actual=decl.name,
                            impact="References across items will not resolve to one declaration",
                            recommendation=f"Rename '{decl.name}' to '{owner_decl.name}' in '{item.id}'",
                            edit={"op": "rename", "item": item.id, "from": decl.name, "to": owner_decl.name},
                        ),
                        DeviationTraits(cosmetic=True, items_affected=2),
                    ))

                if decl.fingerprint() == owner_decl.fingerprint():
                    continue
                found.append(self._shape_event(owner_item, owner_decl, item, decl, normalized))
        return found

    def _shape_event(
        self,
        owner_item: WorkItem,
        owner_decl: InterfaceDecl,
        item: WorkItem,
        decl: InterfaceDecl,
        normalized: str,
    ) -> tuple[DriftEvent, DeviationTraits]:
        affected = [owner_item.id, item.id]
        traits = DeviationTraits(items_affected=2, same_intent=False)
        traits.touches_core = self.classifier.is_core(owner_decl) or self.classifier.is_core(decl)
        traits.security_relevant = (
            self.classifier.is_security(owner_decl, owner_item.tags)
            or self.classifier.is_security(decl, item.tags)
        )
        expected = f"{owner_decl.name}{owner_decl.fields}"
        actual = f"{decl.name}{decl.fields}"

        if owner_decl.component and owner_decl.component == decl.component:
            event = DriftEvent(
                category=COMPONENT_DIVERGENCE,
                severity=Severity.HIGH,
                subject=owner_decl.component,
                description=(
                    f"Component '{owner_decl.component}' declares '{owner_decl.name}' differently "
                    f"in '{owner_item.id}' and '{item.id}'"
                ),
                affected_items=affected,
                expected=expected,
                actual=actual,
                impact="Items built against the shared component will disagree at runtime",
                recommendation=f"Align '{item.id}' to the declaration owned by '{owner_item.id}'",
                edit={"op": "adopt_interface", "items": [item.id], "name": normalized,
                      "interface": owner_decl.to_dict()},
            )
            return event, traits

        union = _additive_union(owner_decl, decl)
        if union is not None:
            traits.additive = True
            return DriftEvent(
                category=API_INCONSISTENCY,
                severity=Severity.LOW,
                subject=owner_decl.name,
                description=f"'{item.id}' and '{owner_item.id}' differ only by optional fields on '{owner_decl.name}'",
                affected_items=affected,
                expected=expected,
                actual=actual,
                impact="Additive change; existing callers are unaffected",
                recommendation="Adopt the union of both shapes in both items",
                edit={"op": "adopt_interface", "items": affected, "name": normalized,
                      "interface": union.to_dict()},
            ), traits

        return DriftEvent(
            category=API_INCONSISTENCY,
            severity=Severity.HIGH,
            subject=owner_decl.name,
            description=f"'{item.id}' declares '{decl.name}' with a shape that conflicts with '{owner_item.id}'",
            affected_items=affected,
            expected=expected,
            actual=actual,
            impact="Callers written against one shape break against the other",
            recommendation=f"Adopt the shape owned by '{owner_item.id}' in '{item.id}'",
            edit={"op": "adopt_interface", "items": [item.id], "name": normalized,
                  "interface": owner_decl.to_dict()},
        ), traits

    def _check_scope(self, reviewed: list[WorkItem]) -> list[tuple[DriftEvent, DeviationTraits]]:
        claims: dict[str, list[str]] = defaultdict(list)
        for item in reviewed:
            tags = dict.fromkeys(tag for decl in item.interfaces for tag in decl.scope)
            for tag in tags:
                claims[tag].append(item.id)

        found = []
        for tag, owners in claims.items():
            for later in owners[1:]:
                traits = DeviationTraits(items_affected=1, same_intent=True)
                traits.security_relevant = tag.lower() in self.classifier.security_tags
                found.append((
                    DriftEvent(
                        category=DUPLICATED_SCOPE,
                        severity=Severity.MEDIUM,
                        subject=tag,
                        description=f"'{later}' and '{owners[0]}' both claim scope '{tag}'",
                        affected_items=[owners[0], later],
                        expected=owners[0],
                        actual=later,
                        impact="The same work would be done twice",
                        recommendation=f"Drop scope '{tag}' from '{later}'",
                        edit={"op": "drop_scope", "item": later, "tag": tag},
                    ),
                    traits,
                ))
        return found

    def _check_dependency_order(
        self,
        reviewed: list[WorkItem],
        graph: DependencyGraph,
    ) -> list[tuple[DriftEvent, DeviationTraits]]:
        owners: dict[str, WorkItem] = {}
        for item in reviewed:
            for decl in item.interfaces:
                owners.setdefault(decl.normalized_name, item)

        found = []
        for item in reviewed:
            used = dict.fromkeys(u for decl in item.interfaces for u in decl.uses)
            for name in used:
                owner = owners.get(normalize_name(name))
                if owner is None or owner.id == item.id:
                    continue
                if item.id in graph and owner.id in graph and graph.depends_on(item.id, owner.id):
                    continue

                cycle = graph.would_create_cycle(item.id, owner.id) if item.id in graph else None
                event = DriftEvent(
                    category=DEPENDENCY_ORDER,
                    severity=Severity.MEDIUM,
                    subject=name,
                    description=f"'{item.id}' uses '{name}' from '{owner.id}' without depending on it",
                    affected_items=[item.id, owner.id],
                    expected=f"{item.id} depends on {owner.id}",
                    actual=f"{item.id} may run before {owner.id}",
                    impact="The item can be built before the declaration it relies on",
                    recommendation=f"Add dependency {item.id} -> {owner.id}",
                    edit={"op": "add_dependency", "item": item.id, "depends_on": owner.id},
                )
                traits = DeviationTraits(items_affected=1, same_intent=True)
                if cycle:
                    event.edit = None
                    event.recommendation = (
                        f"Adding {item.id} -> {owner.id} would form the cycle {' -> '.join(cycle)}; "
                        f"move '{name}' or restructure the items"
                    )
                    traits.same_intent = False
                found.append((event, traits))
        return found

    def _collect_session_events(self, reviewed: list[WorkItem], all_items: list[WorkItem]) -> list[DriftEvent]:
        """Session-reported events not yet part of any report, re-classified."""
        rejected = self._rejected_decisions(all_items)
        events = []
        for item in reviewed:
            for event in item.drift_events:
                if event.report_id is None and event.is_pending:
                    events.append(self.classifier.reclassify(event, rejected))
        return events

    def _write_events(self, events: Iterable[DriftEvent]) -> None:
        by_item: dict[str, list[DriftEvent]] = defaultdict(list)
        for event in events:
            for item_id in event.affected_items:
                by_item[item_id].append(event)

        for item_id, item_events in by_item.items():
            if not self.store.exists(item_id):
                logger.warning("Drift event references unknown item %s", item_id)
                continue

            def update(item: WorkItem, item_events: list[DriftEvent] = item_events) -> None:
                for event in item_events:
                    item.upsert_drift(DriftEvent.from_dict(event.to_dict()))

            self.store.update_with_retry(item_id, update)

    # ========== Resolution ==========

    def auto_decide(self, report: AlignmentReport) -> list[DriftEvent]:
        """Approve every pending low/medium event. Returns the events decided."""
        decided = []
        for event in report.events:
            if not event.is_pending or event.severity.halts or event.cascade:
                continue
            event.decision = Decision.APPROVED
            event.decided_by = "auto"
            decided.append(event)
            if event.severity == Severity.MEDIUM:
                notice = f"[{event.category}] {event.description}: {event.recommendation}"
                report.notifications.append(notice)
                logger.warning("Auto-resolved with notification: %s", notice)
            else:
                logger.info("Auto-resolved %s: %s", event.category, event.description)
        return decided

    def resolve(self, report: AlignmentReport) -> AlignmentReport:
        """Auto-decide low/medium events and apply them."""
        self.auto_decide(report)
        return self.apply_resolutions(report)

    def apply_resolutions(
        self,
        report: AlignmentReport,
        decisions: dict[str, Decision | tuple[Decision, str | None]] | None = None,
    ) -> AlignmentReport:
        """
        Record decisions and apply every decided, not yet applied event.

        Args:
            report: Report the events belong to
            decisions: event_id -> decision, or (decision, note) for operator input

        Returns:
            The updated (and persisted) report
        """
        for event_id, value in (decisions or {}).items():
            decision, note = value if isinstance(value, tuple) else (value, None)
            event = report.event(event_id)
            if event is None:
                raise KeyError(f"Drift event {event_id} is not part of report {report.report_id}")
            event.decision = Decision(decision)
            event.decided_by = "operator"
            if note:
                event.note = note

        applied: list[DriftEvent] = []
        for event in report.events:
            if event.is_pending or event.resolved_at is not None:
                continue
            if event.decision == Decision.REJECTED:
                logger.info("Drift %s rejected; no edit applied", event.event_id)
            else:
                self._apply_event(report, event)
                applied.append(event)
            event.resolved_at = utc_now()

        if applied:
            self._cascade_check(report, applied)

        self._write_events(report.events)
        if not any(e.is_pending for e in report.events):
            report.status = ReportStatus.APPLIED
            report.applied_at = utc_now()
        self.store.save_report(report)
        return report

    def _apply_event(self, report: AlignmentReport, event: DriftEvent) -> None:
        edit = event.edit if event.decision == Decision.APPROVED else None
        if edit and edit.get("op") == "add_dependency":
            if not self._add_dependency(edit["item"], edit["depends_on"]):
                event.follow_up_required = True
                event.note = event.note or "Dependency edge would form a cycle; not applied"
                edit = None
            elif [edit["item"], edit["depends_on"]] not in report.new_edges:
                report.new_edges.append([edit["item"], edit["depends_on"]])

        # an operator modification carries its note back to the authoring phase
        revise = event.severity.halts or event.decision == Decision.MODIFIED
        target_phase = event.target_phase or REVISION_TARGET[CheckpointKind(report.checkpoint)].value

        for item_id in event.affected_items:
            if not self.store.exists(item_id):
                continue

            def update(item: WorkItem) -> None:
                changed = edit is not None and self._apply_edit(item, edit)
                if revise:
                    resume = resume_status_for(target_phase)
                    current = item.effective_status
                    if current.rank() < resume.rank():
                        resume = current
                    item.transition(PhaseStatus.NEEDS_REVISION, resume_status=resume)
                if changed or revise:
                    notes = [f"{event.category}: {event.recommendation}"]
                    if event.note:
                        notes.append(f"operator note: {event.note}")
                    now = utc_now()
                    item.history.append(ExecutionRecord(
                        item_id=item.id,
                        phase="align",
                        attempt_count=1,
                        outcome=Outcome.SUCCESS,
                        started_at=now,
                        finished_at=now,
                        findings=notes,
                    ))

            self.store.update_with_retry(item_id, update)

        logger.info(
            "Applied %s drift %s (%s)%s",
            event.severity.value, event.event_id, event.category,
            "; items sent back for revision" if revise else "",
        )

    def _add_dependency(self, item_id: str, dependency_id: str) -> bool:
        graph = DependencyGraph.from_items(self.store.load_all())
        try:
            graph.add_dependency(item_id, dependency_id)
        except GraphError as e:
            logger.warning("Not adding %s -> %s: %s", item_id, dependency_id, e)
            return False
        return True

    @staticmethod
    def _apply_edit(item: WorkItem, edit: dict[str, Any]) -> bool:
        """Apply one structured edit to an item's recorded output. Returns True if it changed."""
        op = edit.get("op")
        if op == "rename" and edit.get("item") == item.id:
            changed = False
            for decl in item.interfaces:
                if decl.name == edit["from"]:
                    decl.name = edit["to"]
                    changed = True
                if edit["from"] in decl.uses:
                    decl.uses = [edit["to"] if u == edit["from"] else u for u in decl.uses]
                    changed = True
            return changed

        if op == "drop_scope" and edit.get("item") == item.id:
            changed = False
            for decl in item.interfaces:
                if edit["tag"] in decl.scope:
                    decl.scope = [t for t in decl.scope if t != edit["tag"]]
                    changed = True
            return changed

        if op == "add_dependency" and edit.get("item") == item.id:
            if edit["depends_on"] in item.dependencies:
                return False
            item.dependencies.append(edit["depends_on"])
            return True

        if op == "adopt_interface" and item.id in edit.get("items", []):
            shape = InterfaceDecl.from_dict(edit["interface"])
            changed = False
            for decl in item.interfaces:
                if decl.normalized_name == edit["name"] and decl.fingerprint() != shape.fingerprint():
                    decl.kind = shape.kind
                    decl.fields = dict(shape.fields)
                    decl.optional_fields = list(shape.optional_fields)
                    changed = True
            return changed

        return False

    def _cascade_check(self, report: AlignmentReport, applied: list[DriftEvent]) -> list[DriftEvent]:
        """
        Re-review the items touched by ``applied`` plus their related items, once.

        New findings are added to the report as pending cascade events and
        their parent resolutions are marked modified with a follow-up.
        """
        touched: set[str] = set()
        for event in applied:
            touched.update(event.affected_items)

        all_items = self.store.load_all()
        by_id = {i.id: i for i in all_items}
        scope = set(touched)
        for item_id in touched:
            if item_id in by_id:
                scope.update(by_id[item_id].related_items)
        items = sorted((by_id[i] for i in scope if i in by_id), key=lambda i: i.sequence)

        graph = DependencyGraph.from_items(all_items)
        existing = {e.fingerprint() for e in report.events}
        new_events = []
        for event in self._detect(items, graph, all_items):
            if event.fingerprint() in existing:
                continue
            parents = [p for p in applied if set(p.affected_items) & set(event.affected_items)]
            event.cascade = True
            event.report_id = report.report_id
            event.target_phase = REVISION_TARGET[CheckpointKind(report.checkpoint)].value
            if parents:
                event.parent_event_id = parents[0].event_id
            for parent in parents:
                parent.decision = Decision.MODIFIED
                parent.follow_up_required = True
            report.events.append(event)
            new_events.append(event)
            logger.warning("Cascade check found %s: %s", event.category, event.description)

        if not new_events:
            logger.info("Cascade check over %d item(s) found no new conflicts", len(items))
        return new_events
