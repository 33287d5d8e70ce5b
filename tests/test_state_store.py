"""Tests for StateStore module."""

import json
import os
import threading
import time

import pytest

from conftest import make_item, seed_items

from roadmap_cascade.core.errors import ItemNotFoundError, StateConflictError, StateStoreUnavailableError
from roadmap_cascade.core.models import AlignmentReport, PhaseStatus
from roadmap_cascade.state.state_store import FileLock, StateStore


class TestFileLock:
    """Tests for FileLock class."""

    def test_acquire_release(self, tmp_path):
        lock = FileLock(tmp_path / "test.lock", timeout=1.0)
        assert lock.acquire()
        lock.release()

    def test_context_manager(self, tmp_path):
        lock_file = tmp_path / "test.lock"
        with FileLock(lock_file):
            assert lock_file.exists()

    def test_second_holder_times_out(self, tmp_path):
        lock_file = tmp_path / "test.lock"
        first = FileLock(lock_file, timeout=1.0)
        second = FileLock(lock_file, timeout=0)
        assert first.acquire()
        try:
            assert not second.acquire()
        finally:
            first.release()
        assert second.acquire()
        second.release()


class TestStateStoreItems:
    """Tests for item persistence."""

    def test_create_and_load(self, store):
        store.create(make_item("a", deps=[], priority=2))
        loaded = store.load("a")

        assert loaded.id == "a"
        assert loaded.priority == 2
        assert loaded.phase_status == PhaseStatus.DRAFTING
        assert loaded.updated_at is not None

    def test_create_assigns_sequence(self, store):
        seed_items(store, make_item("z"), make_item("a"), make_item("m"))
        assert [i.id for i in store.load_all()] == ["z", "a", "m"]
        assert [i.sequence for i in store.load_all()] == [0, 1, 2]

    def test_create_duplicate_rejected(self, store):
        store.create(make_item("a"))
        with pytest.raises(ValueError):
            store.create(make_item("a"))

    def test_load_missing(self, store):
        with pytest.raises(ItemNotFoundError):
            store.load("nope")

    def test_load_corrupt_record(self, store):
        store.create(make_item("a"))
        store._item_path("a").write_text("{not json", encoding="utf-8")
        with pytest.raises(StateStoreUnavailableError):
            store.load("a")

    def test_save_with_callable(self, store):
        store.create(make_item("a"))
        saved = store.save("a", lambda item: item.transition(PhaseStatus.SHAPED))

        assert saved.phase_status == PhaseStatus.SHAPED
        assert store.load("a").phase_status == PhaseStatus.SHAPED

    def test_save_with_mapping(self, store):
        store.create(make_item("a"))
        store.save("a", {"priority": 7, "title": "Alpha"})

        loaded = store.load("a")
        assert loaded.priority == 7
        assert loaded.title == "Alpha"

    def test_save_unknown_field(self, store):
        store.create(make_item("a"))
        with pytest.raises(AttributeError):
            store.save("a", {"colour": "blue"})

    def test_invalid_update_is_not_written(self, store):
        store.create(make_item("a"))
        with pytest.raises(ValueError):
            store.save("a", {"priority": "urgent"})
        assert store.load("a").priority == 0

    def test_mark_inactive(self, store):
        seed_items(store, make_item("a"), make_item("b"))
        store.mark_inactive("a")

        assert [i.id for i in store.load_all(include_inactive=False)] == ["b"]
        assert len(store.load_all()) == 2

    def test_no_temp_files_left_behind(self, store):
        store.create(make_item("a"))
        store.save("a", {"priority": 1})
        assert [p.name for p in store.items_dir.iterdir()] == ["a.json"]

    def test_record_is_plain_json(self, store):
        store.create(make_item("a", deps=[]))
        with open(store._item_path("a"), encoding="utf-8") as f:
            data = json.load(f)
        assert data["id"] == "a"
        assert data["phase_status"] == "drafting"
        assert data["history"] == []
        assert data["drift_events"] == []

    def test_ids_differing_in_special_characters_stay_separate(self, store):
        seed_items(store, make_item("a b"), make_item("a_b"), make_item("a/b"))
        store.save("a/b", {"priority": 7})

        assert sorted(i.id for i in store.load_all()) == ["a b", "a/b", "a_b"]
        assert store.load("a/b").priority == 7
        assert store.load("a b").priority == store.load("a_b").priority != 7
        assert len(list(store.items_dir.glob("*.json"))) == 3
        with store.lease("a b"):
            store.save("a_b", {"priority": 1})


class TestLeases:
    """Tests for the single-writer lease."""

    def test_lease_conflict(self, store):
        store.create(make_item("a"))
        lease = store.acquire_lease("a", holder="worker-1")
        try:
            with pytest.raises(StateConflictError) as exc_info:
                store.acquire_lease("a", holder="worker-2")
            assert exc_info.value.holder == "worker-1"
            assert store.is_leased("a")
        finally:
            store.release_lease(lease)
        assert not store.is_leased("a")

    def test_save_fails_while_leased_elsewhere(self, store):
        store.create(make_item("a"))
        lease = store.acquire_lease("a")
        try:
            with pytest.raises(StateConflictError):
                store.save("a", {"priority": 1})
        finally:
            store.release_lease(lease)

    def test_save_under_held_lease(self, store):
        store.create(make_item("a"))
        with store.lease("a") as lease:
            store.save("a", {"priority": 4}, lease=lease)
        assert store.load("a").priority == 4

    def test_released_lease_rejected(self, store):
        store.create(make_item("a"))
        with store.lease("a") as lease:
            pass
        with pytest.raises(StateConflictError):
            store.save("a", {"priority": 4}, lease=lease)

    def test_lease_across_store_instances(self, tmp_path):
        first = StateStore(tmp_path, lease_timeout=0.1)
        second = StateStore(tmp_path, lease_timeout=0.1)
        first.create(make_item("a"))

        lease = first.acquire_lease("a")
        try:
            with pytest.raises(StateConflictError):
                second.acquire_lease("a")
        finally:
            first.release_lease(lease)
        second.release_lease(second.acquire_lease("a"))

    def test_update_with_retry_absorbs_contention(self, store):
        store.create(make_item("a"))
        lease = store.acquire_lease("a")
        timer = threading.Timer(0.1, store.release_lease, args=(lease,))
        timer.start()
        try:
            saved = store.update_with_retry("a", {"priority": 9}, attempts=8, base_delay=0.05)
        finally:
            timer.join()
        assert saved.priority == 9

    def test_update_with_retry_gives_up(self, store):
        store.create(make_item("a"))
        lease = store.acquire_lease("a")
        try:
            with pytest.raises(StateConflictError):
                store.update_with_retry("a", {"priority": 9}, attempts=2, base_delay=0.01)
        finally:
            store.release_lease(lease)

    def test_concurrent_updates_are_serialized(self, store):
        store.create(make_item("a"))

        def bump(item):
            item.priority += 1

        threads = [
            threading.Thread(target=store.update_with_retry, args=("a", bump), kwargs={"attempts": 50, "base_delay": 0.01})
            for _ in range(5)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert store.load("a").priority == 5


class TestResumption:
    """Tests for restarting from persisted state."""

    def test_new_store_sees_persisted_status(self, tmp_path):
        first = StateStore(tmp_path)
        seed_items(first, make_item("a"), make_item("b", deps=["a"]))
        first.save("a", lambda item: item.transition(PhaseStatus.COMPLETED))

        restarted = StateStore(tmp_path)
        items = {i.id: i for i in restarted.load_all()}
        assert items["a"].phase_status == PhaseStatus.COMPLETED
        assert items["b"].phase_status == PhaseStatus.DRAFTING
        assert items["b"].dependencies == ["a"]

    def test_empty_state_directory(self, tmp_path):
        assert StateStore(tmp_path).load_all() == []


class TestReportsAndFindings:
    """Tests for alignment reports and the findings log."""

    def test_report_round_trip(self, store):
        report = AlignmentReport(checkpoint="specs", reviewed_items=["a"])
        store.save_report(report)

        assert store.load_report(report.report_id).reviewed_items == ["a"]
        assert [r.report_id for r in store.list_reports()] == [report.report_id]

    def test_unknown_report(self, store):
        with pytest.raises(KeyError):
            store.load_report("report-missing")

    def test_findings_log(self, store):
        store.append_findings("a", "shape", ["uses postgres", "needs SSO"])
        store.append_findings("b", "shape", ["reuses auth tables"])
        store.append_findings("c", "shape", [])

        assert len(store.read_findings()) == 3
        notes = [f["note"] for f in store.read_findings({"a"})]
        assert notes == ["uses postgres", "needs SSO"]


class TestLockCleanup:
    """Tests for removing stale lock files."""

    def test_cleanup_removes_only_stale_unheld_locks(self, store):
        seed_items(store, make_item("a"), make_item("b"))
        stale = time.time() - 7200
        for item_id in ("a", "b"):
            os.utime(store._lock_path(item_id), (stale, stale))

        lease = store.acquire_lease("b")
        try:
            assert store.cleanup_locks() == 1
        finally:
            store.release_lease(lease)

        assert not store._lock_path("a").exists()
        assert store._lock_path("b").exists()
