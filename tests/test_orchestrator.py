"""Tests for the Orchestrator."""

import asyncio
from dataclasses import replace

import pytest
import yaml

from conftest import HANG, ScriptedExecutor, make_item, seed_items

from roadmap_cascade.backends.base import SessionResult
from roadmap_cascade.core.errors import ExecutorError, GraphError, LifecycleError
from roadmap_cascade.core.models import Decision, DriftEvent, InterfaceDecl, PhaseStatus, Severity
from roadmap_cascade.core.orchestrator import (
    EXIT_AWAITING_DECISION,
    EXIT_BLOCKED,
    EXIT_OK,
    Orchestrator,
)
from roadmap_cascade.core.phases import ExecutionMode, Phase
from roadmap_cascade.settings.models import CheckpointSettings, DriftScope
from roadmap_cascade.state.state_store import StateStore


def _orchestrator(tmp_path, executor, settings, store=None):
    return Orchestrator(tmp_path, executor, settings=settings, store=store)


def _statuses(store):
    return {i.id: i.phase_status for i in store.load_all()}


def _spec_result(*decls):
    return [SessionResult.success(interfaces=list(decls))]


class TestExecute:
    """Tests for the full phase loop."""

    @pytest.mark.asyncio
    async def test_runs_every_item_to_completion(self, tmp_path, store, fast_settings, scenario_a_items):
        seed_items(store, *scenario_a_items)
        executor = ScriptedExecutor()

        summary = await _orchestrator(tmp_path, executor, fast_settings, store).execute()

        assert summary.exit_code == EXIT_OK
        assert sorted(summary.completed) == ["A", "B", "C", "D", "E"]
        assert set(_statuses(store).values()) == {PhaseStatus.COMPLETED}
        for item_id in "ABCDE":
            assert [c.phase for c in executor.calls_for(item_id)] == [
                "shape", "write-spec", "create-tasks", "implement",
            ]

        implemented = executor.called_items("implement")
        assert implemented.index("A") < implemented.index("B") < implemented.index("C")
        assert implemented.index("D") < implemented.index("C")

    @pytest.mark.asyncio
    async def test_dependency_output_precedes_dependent_dispatch(self, tmp_path, store, fast_settings, scenario_a_items):
        seed_items(store, *scenario_a_items)
        executor = ScriptedExecutor(delay=0.01)

        await _orchestrator(tmp_path, executor, fast_settings, store).execute()

        for dependent, dependency in (("B", "A"), ("C", "B"), ("C", "D")):
            started = executor.calls_for(dependent, "implement")[0]
            assert started.payload["dependencies"]
            dep_end = executor.intervals[dependency][-1][1]
            dependent_start = executor.intervals[dependent][-1][0]
            assert dep_end <= dependent_start

    @pytest.mark.asyncio
    async def test_payload_includes_dependency_findings(self, tmp_path, store, fast_settings):
        seed_items(store, make_item("a"), make_item("b", deps=["a"]))
        executor = ScriptedExecutor({("a", "write-spec"): [SessionResult.success(findings=["a exposes /users"])]})

        await _orchestrator(tmp_path, executor, fast_settings, store).execute(spec_only=True)

        notes = [f["note"] for f in executor.calls_for("b", "shape")[0].payload["dependency_findings"]]
        assert "a exposes /users" in notes

    @pytest.mark.asyncio
    async def test_spec_only_stops_before_implement(self, tmp_path, store, fast_settings, scenario_a_items):
        seed_items(store, *scenario_a_items)
        executor = ScriptedExecutor()

        summary = await _orchestrator(tmp_path, executor, fast_settings, store).execute(spec_only=True)

        assert summary.exit_code == EXIT_OK
        assert set(_statuses(store).values()) == {PhaseStatus.TASKED}
        assert executor.called_items("implement") == []
        assert "implement" not in summary.phases_run

    @pytest.mark.asyncio
    async def test_checkpoint_at_stops_after_phase(self, tmp_path, store, fast_settings, scenario_a_items):
        seed_items(store, *scenario_a_items)
        executor = ScriptedExecutor()

        summary = await _orchestrator(tmp_path, executor, fast_settings, store).execute(checkpoint_at="write-spec")

        statuses = _statuses(store)
        assert summary.stopped_at == "write-spec"
        assert summary.phases_run == ["shape", "write-spec"]
        assert [iid for iid, s in statuses.items() if s == PhaseStatus.SPECCED] == ["A", "D", "E"]
        assert statuses["B"] == PhaseStatus.DRAFTING
        assert executor.called_items("create-tasks") == []

    @pytest.mark.asyncio
    async def test_blocked_item_exits_3_and_resumes_after_unblock(self, tmp_path, store, fast_settings, scenario_a_items):
        seed_items(store, *scenario_a_items)
        executor = ScriptedExecutor({("A", "shape"): [ExecutorError("shape template missing")]})
        orchestrator = _orchestrator(tmp_path, executor, fast_settings, store)

        summary = await orchestrator.execute()

        assert summary.exit_code == EXIT_BLOCKED
        assert summary.blocked == ["A"]
        statuses = _statuses(store)
        assert statuses["D"] == statuses["E"] == PhaseStatus.COMPLETED
        assert statuses["B"] == statuses["C"] == PhaseStatus.DRAFTING
        assert executor.calls_for("B") == []

        item = orchestrator.unblock("A")
        assert item.phase_status == PhaseStatus.DRAFTING
        assert item.latest_record().phase == "unblock"

        summary = await orchestrator.execute()
        assert summary.exit_code == EXIT_OK
        assert set(_statuses(store).values()) == {PhaseStatus.COMPLETED}

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, tmp_path, store, fast_settings):
        seed_items(store, make_item("a"))
        executor = ScriptedExecutor()
        orchestrator = _orchestrator(tmp_path, executor, fast_settings, store)
        orchestrator.cancel()

        summary = await orchestrator.execute()

        assert summary.cancelled
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_run_phases_uses_given_modes(self, tmp_path, store, fast_settings):
        seed_items(store, *[make_item(n) for n in ("a", "b", "c")])
        executor = ScriptedExecutor(delay=0.02)
        orchestrator = _orchestrator(tmp_path, executor, fast_settings, store)

        summary = await orchestrator.run_phases([
            (Phase.SHAPE, ExecutionMode.PARALLEL),
            (Phase.WRITE_SPEC, ExecutionMode.SEQUENTIAL),
        ])

        assert summary.phases_run == ["shape", "write-spec"]
        assert summary.batches[0].max_in_flight == 3
        assert summary.batches[1].max_in_flight == 1
        assert set(_statuses(store).values()) == {PhaseStatus.SPECCED}
        assert summary.reports == []


class TestResumption:
    """Tests for restarting after an interrupted run."""

    @pytest.mark.asyncio
    async def test_restart_runs_only_unfinished_items(self, tmp_path, fast_settings):
        first_store = StateStore(tmp_path, lease_timeout=0.2)
        seed_items(first_store, *[make_item(n, status=PhaseStatus.TASKED) for n in ("a", "b", "c", "d")])
        first = ScriptedExecutor({"c": [HANG], "d": [HANG]})
        orchestrator = _orchestrator(tmp_path, first, fast_settings, first_store)

        task = asyncio.create_task(orchestrator.execute())
        for _ in range(500):
            statuses = _statuses(first_store)
            if len(first.calls) == 4 and statuses["a"] == statuses["b"] == PhaseStatus.COMPLETED:
                break
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        statuses = _statuses(first_store)
        assert statuses["a"] == statuses["b"] == PhaseStatus.COMPLETED
        assert statuses["c"] == statuses["d"] == PhaseStatus.IN_PROGRESS

        second = ScriptedExecutor()
        summary = await Orchestrator(tmp_path, second, settings=fast_settings).execute()

        assert sorted(second.called_items()) == ["c", "d"]
        assert summary.exit_code == EXIT_OK
        assert sorted(summary.completed) == ["a", "b", "c", "d"]


class TestDrift:
    """Tests for drift halting and operator decisions."""

    @pytest.fixture
    def conflicting(self, store):
        seed_items(store, make_item("a"), make_item("b"), make_item("c", deps=["a"]), make_item("e"))
        return ScriptedExecutor({
            ("a", "write-spec"): _spec_result(InterfaceDecl(name="Account", fields={"id": "int"})),
            ("b", "write-spec"): _spec_result(InterfaceDecl(name="Account", fields={"id": "str"})),
        })

    @pytest.mark.asyncio
    async def test_high_drift_halts_only_affected_subgraph(self, tmp_path, store, fast_settings, conflicting):
        orchestrator = _orchestrator(tmp_path, conflicting, fast_settings, store)

        summary = await orchestrator.execute()

        assert summary.exit_code == EXIT_AWAITING_DECISION
        assert len(summary.pending_decisions) == 1
        assert summary.halted == ["a", "b", "c"]
        statuses = _statuses(store)
        assert statuses["e"] == PhaseStatus.COMPLETED
        assert statuses["a"] == statuses["b"] == PhaseStatus.SPECCED
        assert statuses["c"] == PhaseStatus.DRAFTING
        assert len(summary.reports) >= 1

    @pytest.mark.asyncio
    async def test_decision_releases_halt(self, tmp_path, store, fast_settings, conflicting):
        orchestrator = _orchestrator(tmp_path, conflicting, fast_settings, store)
        summary = await orchestrator.execute()
        event_id = summary.pending_decisions[0].event_id

        report = orchestrator.decide(event_id, Decision.APPROVED)
        assert report.event(event_id).decision == Decision.APPROVED
        assert _statuses(store)["b"] == PhaseStatus.NEEDS_REVISION

        summary = await orchestrator.execute()

        assert summary.exit_code == EXIT_OK
        assert set(_statuses(store).values()) == {PhaseStatus.COMPLETED}
        assert store.load("b").interfaces[0].fields == {"id": "int"}
        assert len(conflicting.calls_for("b", "write-spec")) == 2

    @pytest.mark.asyncio
    async def test_conflict_reintroduced_after_approval_halts_again(self, tmp_path, store, fast_settings, conflicting):
        conflicting.script[("b", "write-spec")] = (
            _spec_result(InterfaceDecl(name="Account", fields={"id": "str"}))
            + _spec_result(InterfaceDecl(name="Account", fields={"id": "str"}))
        )
        orchestrator = _orchestrator(tmp_path, conflicting, fast_settings, store)
        summary = await orchestrator.execute()
        first = summary.pending_decisions[0].event_id
        orchestrator.decide(first, Decision.APPROVED)

        summary = await orchestrator.execute()

        assert summary.exit_code == EXIT_AWAITING_DECISION
        assert [e.event_id for e in summary.pending_decisions] != [first]
        statuses = _statuses(store)
        assert statuses["a"] != PhaseStatus.COMPLETED
        assert statuses["b"] != PhaseStatus.COMPLETED
        assert store.load("b").interfaces[0].fields == {"id": "str"}

    @pytest.mark.asyncio
    async def test_rejected_conflict_lets_run_complete(self, tmp_path, store, fast_settings, conflicting):
        orchestrator = _orchestrator(tmp_path, conflicting, fast_settings, store)
        summary = await orchestrator.execute()
        orchestrator.decide(summary.pending_decisions[0].event_id, "rejected")

        summary = await orchestrator.execute()

        assert summary.exit_code == EXIT_OK
        assert summary.pending_decisions == []
        assert set(_statuses(store).values()) == {PhaseStatus.COMPLETED}
        assert store.load("b").interfaces[0].fields == {"id": "str"}

    @pytest.mark.asyncio
    async def test_spelling_variant_is_renamed_without_a_decision(self, tmp_path, store, fast_settings):
        seed_items(store, make_item("a"), make_item("b"), make_item("c"))
        fields = {"id": "int", "email": "str"}
        executor = ScriptedExecutor({
            ("a", "write-spec"): _spec_result(InterfaceDecl(name="UserProfile", fields=fields)),
            ("b", "write-spec"): _spec_result(InterfaceDecl(name="UserProfile", fields=fields)),
            ("c", "write-spec"): _spec_result(InterfaceDecl(name="user_profile", fields=fields)),
        })

        summary = await _orchestrator(tmp_path, executor, fast_settings, store).execute()

        assert summary.exit_code == EXIT_OK
        assert summary.pending_decisions == []
        assert set(_statuses(store).values()) == {PhaseStatus.COMPLETED}
        assert [d.name for d in store.load("c").interfaces] == ["UserProfile"]

    @pytest.mark.asyncio
    async def test_decide_twice_rejected(self, tmp_path, store, fast_settings, conflicting):
        orchestrator = _orchestrator(tmp_path, conflicting, fast_settings, store)
        summary = await orchestrator.execute()
        event_id = summary.pending_decisions[0].event_id

        orchestrator.decide(event_id, "rejected")
        with pytest.raises(LifecycleError):
            orchestrator.decide(event_id, "approved")
        with pytest.raises(KeyError):
            orchestrator.decide("drift-missing", "approved")

    @pytest.mark.asyncio
    async def test_pause_leaves_event_pending(self, tmp_path, store, fast_settings, conflicting):
        orchestrator = _orchestrator(tmp_path, conflicting, fast_settings, store)
        summary = await orchestrator.execute()
        event_id = summary.pending_decisions[0].event_id

        orchestrator.decide(event_id, "pause")

        assert orchestrator.summary().exit_code == EXIT_AWAITING_DECISION

    @pytest.mark.asyncio
    async def test_global_scope_halts_everything_on_critical(self, tmp_path, store, fast_settings):
        settings = replace(fast_settings, critical_drift_scope=DriftScope.GLOBAL)
        seed_items(store, make_item("a"), make_item("b"), make_item("e"))
        executor = ScriptedExecutor({
            ("a", "write-spec"): _spec_result(InterfaceDecl(name="Login", fields={"user": "str"}, scope=["auth"])),
            ("b", "write-spec"): _spec_result(InterfaceDecl(name="Login", fields={"user": "int"})),
        })

        summary = await _orchestrator(tmp_path, executor, settings, store).execute()

        assert summary.pending_decisions[0].severity == Severity.CRITICAL
        assert summary.halted == ["a", "b", "e"]
        assert _statuses(store)["e"] == PhaseStatus.SPECCED

    @pytest.mark.asyncio
    async def test_session_reported_high_drift_halts(self, tmp_path, store, fast_settings):
        seed_items(store, make_item("a"), make_item("b"), make_item("e"))
        reported = DriftEvent(
            category="scope-creep",
            severity=Severity.LOW,
            description="shape grew to cover billing",
            affected_items=["b"],
            recommendation="split the item",
        )
        executor = ScriptedExecutor({("a", "shape"): [SessionResult.success(drift_events=[reported])]})

        summary = await _orchestrator(tmp_path, executor, fast_settings, store).execute()

        assert summary.exit_code == EXIT_AWAITING_DECISION
        assert [e.event_id for e in summary.pending_decisions] == [reported.event_id]
        assert summary.pending_decisions[0].severity == Severity.HIGH
        assert sorted(summary.halted) == ["a", "b"]
        assert _statuses(store)["e"] == PhaseStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_session_drift_deferred_to_findings(self, tmp_path, store, fast_settings):
        settings = replace(fast_settings, checkpoints=CheckpointSettings(on_high_severity_drift=False))
        seed_items(store, make_item("a"), make_item("b"))
        reported = DriftEvent(
            category="scope-creep", severity=Severity.LOW, description="grew",
            affected_items=["b"], recommendation="split",
        )
        executor = ScriptedExecutor({("a", "shape"): [SessionResult.success(drift_events=[reported])]})

        summary = await _orchestrator(tmp_path, executor, settings, store).execute(spec_only=True)

        assert summary.exit_code == EXIT_OK
        a = store.load("a")
        assert a.drift_events == []
        assert any(note.startswith("drift (high) scope-creep") for note in a.latest_record("shape").findings)


class TestGraphChanges:
    """Tests for loading roadmaps and declaring items."""

    def test_load_roadmap(self, tmp_path, store, fast_settings, roadmap_path):
        orchestrator = _orchestrator(tmp_path, ScriptedExecutor(), fast_settings, store)

        created = orchestrator.load_roadmap(roadmap_path)

        assert [i.id for i in created] == ["auth", "profile", "billing", "docs"]
        assert orchestrator.graph.execution_batches() == [["auth", "docs"], ["profile"], ["billing"]]
        assert store.load("auth").related_items == ["profile"]

    def test_reload_keeps_progress_and_adds_new_items(self, tmp_path, store, fast_settings, roadmap_path, sample_roadmap):
        orchestrator = _orchestrator(tmp_path, ScriptedExecutor(), fast_settings, store)
        orchestrator.load_roadmap(roadmap_path)
        store.save("auth", lambda i: i.transition(PhaseStatus.SHAPED))

        sample_roadmap["items"].append({"id": "search", "dependencies": ["docs"]})
        with open(roadmap_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(sample_roadmap, f)

        created = orchestrator.load_roadmap(roadmap_path)

        assert [i.id for i in created] == ["search"]
        assert store.load("auth").phase_status == PhaseStatus.SHAPED
        assert store.load("search").sequence == 4

    def test_invalid_roadmap_writes_nothing(self, tmp_path, store, fast_settings):
        path = tmp_path / "roadmap.yaml"
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump({"items": [
                {"id": "a", "dependencies": ["b"]},
                {"id": "b", "dependencies": ["a"]},
            ]}, f)
        orchestrator = _orchestrator(tmp_path, ScriptedExecutor(), fast_settings, store)

        with pytest.raises(GraphError):
            orchestrator.load_roadmap(path)
        assert store.load_all() == []

    def test_declare_item(self, tmp_path, store, fast_settings):
        seed_items(store, make_item("a"))
        orchestrator = _orchestrator(tmp_path, ScriptedExecutor(), fast_settings, store)

        orchestrator.declare_item(make_item("b", deps=["a"]))
        assert "b" in orchestrator.graph

        with pytest.raises(GraphError):
            orchestrator.declare_item(make_item("c", deps=["missing"]))
        assert not store.exists("c")

    def test_unblock_requires_blocked_item(self, tmp_path, store, fast_settings):
        seed_items(store, make_item("a"))
        orchestrator = _orchestrator(tmp_path, ScriptedExecutor(), fast_settings, store)
        with pytest.raises(LifecycleError):
            orchestrator.unblock("a")

    def test_phase_settings_overrides(self, tmp_path, store, fast_settings):
        settings = replace(
            fast_settings,
            phase_modes={"shape": "parallel"},
            phase_gates={"shape": "shaped"},
        )
        orchestrator = _orchestrator(tmp_path, ScriptedExecutor(), settings, store)

        assert orchestrator.mode_for(Phase.SHAPE) == ExecutionMode.PARALLEL
        assert orchestrator.mode_for(Phase.IMPLEMENT) == ExecutionMode.PARALLEL
        assert orchestrator.gate_for(Phase.SHAPE).dependency_threshold == PhaseStatus.SHAPED
        assert orchestrator.gate_for(Phase.IMPLEMENT).dependency_threshold == PhaseStatus.COMPLETED
