#!/usr/bin/env python3
"""
State Store for Roadmap Cascade

Durable, per-item JSON storage and the single source of truth for resumption.

Layout under the state directory (default ``<project>/.roadmap-cascade``):
- items/<id>.json      one persisted record per work item
- reports/<id>.json    alignment reports
- findings.json        product-level findings log
- .locks/<id>.lock     per-item lease files

Every mutation of an item happens under that item's lease. Writes go to a
temporary file that is renamed over the record, so a crash never leaves a
half-written record behind.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any
from urllib.parse import quote, unquote

from ..core.errors import ItemNotFoundError, StateConflictError, StateStoreUnavailableError
from ..core.models import AlignmentReport, WorkItem, utc_now

logger = logging.getLogger(__name__)

# Platform-specific locking imports
try:
    import fcntl
    HAS_FCNTL = True
except ImportError:
    HAS_FCNTL = False

try:
    import msvcrt
    HAS_MSVCRT = True
except ImportError:
    HAS_MSVCRT = False


STATE_DIR_NAME = ".roadmap-cascade"


class FileLock:
    """Platform-independent, non-reentrant file lock."""

    def __init__(self, lock_file: Path, timeout: float = 30.0):
        """
        Initialize a file lock.

        Args:
            lock_file: Path to the lock file
            timeout: Maximum time to wait for lock (seconds); 0 tries once
        """
        self.lock_file = lock_file
        self.timeout = timeout
        self.lock_fd = None

    def acquire(self) -> bool:
        """
        Acquire the file lock.

        Returns:
            True if lock acquired, False if timeout
        """
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)

        start_time = time.monotonic()
        attempt = 0

        while True:
            try:
                self.lock_fd = open(self.lock_file, "a+")

                if HAS_FCNTL:
                    fcntl.flock(self.lock_fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                elif HAS_MSVCRT:
                    # mode 0 is exclusive lock
                    self.lock_fd.seek(0)
                    msvcrt.locking(self.lock_fd.fileno(), msvcrt.LK_NBLCK, 1)
                return True

            except OSError:
                if self.lock_fd:
                    self.lock_fd.close()
                self.lock_fd = None

                if time.monotonic() - start_time >= self.timeout:
                    return False

                # Exponential backoff
                time.sleep(min(0.01 * (2 ** attempt), 0.5))
                attempt += 1

    def release(self) -> None:
        """Release the file lock. The lock file itself is kept so waiters share one inode."""
        if self.lock_fd:
            try:
                if HAS_FCNTL:
                    fcntl.flock(self.lock_fd.fileno(), fcntl.LOCK_UN)
                elif HAS_MSVCRT:
                    self.lock_fd.seek(0)
                    msvcrt.locking(self.lock_fd.fileno(), msvcrt.LK_UNLCK, 1)
            except OSError as e:
                logger.debug("Unlocking %s failed: %s", self.lock_file, e)
            finally:
                self.lock_fd.close()
                self.lock_fd = None

    def __enter__(self):
        if not self.acquire():
            raise TimeoutError(f"Could not acquire lock on {self.lock_file} within {self.timeout}s")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()


class ItemLease:
    """Exclusive right to mutate one work item, held until released."""

    def __init__(self, item_id: str, holder: str, lock: FileLock):
        self.item_id = item_id
        self.holder = holder
        self.acquired_at = utc_now()
        self._lock = lock
        self.released = False

    def __repr__(self) -> str:
        return f"ItemLease(item_id={self.item_id!r}, holder={self.holder!r})"


ItemUpdate = Callable[[WorkItem], Any] | dict[str, Any]


class StateStore:
    """
    Durable store for work items, alignment reports and findings.

    Leases are enforced both in-process (a registry of held leases) and across
    processes (an exclusive file lock per item).
    """

    def __init__(
        self,
        project_root: Path,
        state_dir: Path | None = None,
        lease_timeout: float = 2.0,
    ):
        """
        Initialize the state store.

        Args:
            project_root: Root directory of the project
            state_dir: Override for the state directory
            lease_timeout: Seconds to wait for a contended lease before failing
        """
        self.project_root = Path(project_root)
        self.state_dir = Path(state_dir) if state_dir else self.project_root / STATE_DIR_NAME
        self.items_dir = self.state_dir / "items"
        self.reports_dir = self.state_dir / "reports"
        self.locks_dir = self.state_dir / ".locks"
        self.findings_path = self.state_dir / "findings.json"
        self.lease_timeout = lease_timeout

        self._leases: dict[str, ItemLease] = {}
        self._registry_lock = threading.Lock()

    def ensure_directories(self) -> None:
        try:
            for directory in (self.items_dir, self.reports_dir, self.locks_dir):
                directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StateStoreUnavailableError(f"Could not create state directory {self.state_dir}: {e}") from e

    @staticmethod
    def _file_stem(key: str) -> str:
        # percent-encoding is reversible, so distinct ids never share a file
        return quote(key, safe="")

    def _item_path(self, item_id: str) -> Path:
        return self.items_dir / f"{self._file_stem(item_id)}.json"

    def _lock_path(self, name: str) -> Path:
        return self.locks_dir / f"{self._file_stem(name)}.lock"

    def _report_path(self, report_id: str) -> Path:
        return self.reports_dir / f"{self._file_stem(report_id)}.json"

    # ========== Leases ==========

    def acquire_lease(self, item_id: str, holder: str = "orchestrator", timeout: float | None = None) -> ItemLease:
        """
        Acquire the single-writer lease for an item.

        Raises:
            StateConflictError: If another writer holds the lease
        """
        with self._registry_lock:
            existing = self._leases.get(item_id)
            if existing is not None:
                raise StateConflictError(item_id, existing.holder)

        # another process may hold the file lock; wait outside the registry lock
        lock = FileLock(self._lock_path(item_id), timeout=self.lease_timeout if timeout is None else timeout)
        if not lock.acquire():
            raise StateConflictError(item_id)

        with self._registry_lock:
            if item_id in self._leases:
                lock.release()
                raise StateConflictError(item_id, self._leases[item_id].holder)
            lease = ItemLease(item_id, holder, lock)
            self._leases[item_id] = lease
            return lease

    def release_lease(self, lease: ItemLease) -> None:
        with self._registry_lock:
            if lease.released:
                return
            if self._leases.get(lease.item_id) is lease:
                del self._leases[lease.item_id]
            lease._lock.release()
            lease.released = True

    @contextmanager
    def lease(self, item_id: str, holder: str = "orchestrator") -> Iterator[ItemLease]:
        """Context manager holding an item lease."""
        held = self.acquire_lease(item_id, holder)
        try:
            yield held
        finally:
            self.release_lease(held)

    def is_leased(self, item_id: str) -> bool:
        with self._registry_lock:
            return item_id in self._leases

    # ========== Item Operations ==========

    def exists(self, item_id: str) -> bool:
        return self._item_path(item_id).exists()

    def load(self, item_id: str) -> WorkItem:
        """
        Load a work item with its full history and drift events.

        Raises:
            ItemNotFoundError: If the item was never created
            StateStoreUnavailableError: If the record cannot be read
        """
        path = self._item_path(item_id)
        if not path.exists():
            raise ItemNotFoundError(item_id)
        try:
            with open(path, encoding="utf-8") as f:
                return WorkItem.from_dict(json.load(f))
        except (OSError, json.JSONDecodeError) as e:
            raise StateStoreUnavailableError(f"Could not read state for '{item_id}': {e}") from e

    def load_all(self, include_inactive: bool = True) -> list[WorkItem]:
        """
        Load every persisted work item in creation order.

        Used on process start to rebuild the dependency graph and ready sets.
        """
        if not self.items_dir.exists():
            return []
        items: list[WorkItem] = []
        try:
            paths = sorted(self.items_dir.glob("*.json"))
        except OSError as e:
            raise StateStoreUnavailableError(f"Could not list {self.items_dir}: {e}") from e
        for path in paths:
            try:
                with open(path, encoding="utf-8") as f:
                    item = WorkItem.from_dict(json.load(f))
            except (OSError, json.JSONDecodeError) as e:
                raise StateStoreUnavailableError(f"Could not read {path.name}: {e}") from e
            if include_inactive or item.active:
                items.append(item)
        items.sort(key=lambda i: i.sequence)
        return items

    def create(self, item: WorkItem) -> WorkItem:
        """
        Persist a new work item, assigning its insertion sequence.

        Raises:
            ValueError: If an item with the same id already exists
        """
        self.ensure_directories()
        with self._file_lock("sequence"):
            if self.exists(item.id):
                raise ValueError(f"Work item '{item.id}' already exists")
            item.sequence = self._next_sequence()
            item.updated_at = utc_now()
            with self.lease(item.id, holder="create"):
                self._write_item(item)
        logger.info("Created work item %s", item.id)
        return item

    def _next_sequence(self) -> int:
        highest = -1
        for item in self.load_all():
            highest = max(highest, item.sequence)
        return highest + 1

    def save(self, item_id: str, update: ItemUpdate, lease: ItemLease | None = None) -> WorkItem:
        """
        Apply an update to one item atomically.

        Args:
            item_id: Item to update
            update: Either a callable mutating the freshly loaded WorkItem, or a
                mapping of field names to new values
            lease: A lease already held by the caller; acquired (and released)
                here when omitted

        Returns:
            The saved WorkItem

        Raises:
            StateConflictError: If the lease is held by another writer
            ItemNotFoundError: If the item does not exist
        """
        if lease is not None:
            if lease.released or lease.item_id != item_id:
                raise StateConflictError(item_id, lease.holder)
            return self._apply(item_id, update)

        with self.lease(item_id, holder="save"):
            return self._apply(item_id, update)

    def _apply(self, item_id: str, update: ItemUpdate) -> WorkItem:
        item = self.load(item_id)
        if callable(update):
            update(item)
        else:
            for key, value in update.items():
                if not hasattr(item, key):
                    raise AttributeError(f"WorkItem has no field '{key}'")
                setattr(item, key, value)
        # round-trip through the validated constructor
        item = WorkItem.from_dict(item.to_dict())
        item.updated_at = utc_now()
        self._write_item(item)
        return item

    def update_with_retry(
        self,
        item_id: str,
        update: ItemUpdate,
        attempts: int = 5,
        base_delay: float = 0.05,
    ) -> WorkItem:
        """
        Save with a fresh reload on every attempt, absorbing lease contention.

        Raises:
            StateConflictError: Only after every attempt found the lease held
        """
        for attempt in range(max(attempts, 1)):
            try:
                return self.save(item_id, update)
            except StateConflictError:
                if attempt + 1 >= attempts:
                    raise
                delay = base_delay * (2 ** attempt)
                logger.debug("Lease contention on %s, retrying in %.2fs", item_id, delay)
                time.sleep(delay)
        raise StateConflictError(item_id)

    def mark_inactive(self, item_id: str) -> WorkItem:
        """Retire an item without deleting its record."""
        return self.update_with_retry(item_id, {"active": False})

    def _write_item(self, item: WorkItem) -> None:
        self._atomic_write(self._item_path(item.id), item.to_dict())

    def _atomic_write(self, path: Path, data: Any) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StateStoreUnavailableError(f"Could not write {path}: {e}") from e

    @contextmanager
    def _file_lock(self, name: str) -> Iterator[None]:
        lock = FileLock(self._lock_path(f"_{name}"), timeout=30.0)
        try:
            with lock:
                yield
        except TimeoutError as e:
            raise StateStoreUnavailableError(str(e)) from e

    # ========== Alignment Reports ==========

    def save_report(self, report: AlignmentReport) -> None:
        self._atomic_write(self._report_path(report.report_id), report.to_dict())

    def load_report(self, report_id: str) -> AlignmentReport:
        path = self._report_path(report_id)
        if not path.exists():
            raise KeyError(f"Unknown alignment report: {report_id}")
        try:
            with open(path, encoding="utf-8") as f:
                return AlignmentReport.from_dict(json.load(f))
        except (OSError, json.JSONDecodeError) as e:
            raise StateStoreUnavailableError(f"Could not read report {report_id}: {e}") from e

    def list_reports(self) -> list[AlignmentReport]:
        if not self.reports_dir.exists():
            return []
        reports = [self.load_report(unquote(p.stem)) for p in self.reports_dir.glob("*.json")]
        reports.sort(key=lambda r: r.created_at)
        return reports

    # ========== Findings ==========

    def append_findings(self, item_id: str, phase: str, notes: list[str]) -> None:
        """Append notes to the product-level findings log."""
        if not notes:
            return
        with self._file_lock("findings"):
            entries = self.read_findings()
            timestamp = utc_now()
            entries.extend(
                {"item_id": item_id, "phase": phase, "note": note, "recorded_at": timestamp}
                for note in notes
            )
            self._atomic_write(self.findings_path, entries)

    def read_findings(self, item_ids: set[str] | None = None) -> list[dict[str, Any]]:
        if not self.findings_path.exists():
            return []
        try:
            with open(self.findings_path, encoding="utf-8") as f:
                entries = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StateStoreUnavailableError(f"Could not read findings: {e}") from e
        if item_ids is None:
            return entries
        return [e for e in entries if e.get("item_id") in item_ids]

    # ========== Utility Methods ==========

    def cleanup_locks(self, max_age_seconds: float = 3600) -> int:
        """Remove stale, unheld lock files. Returns the number removed."""
        removed = 0
        if not self.locks_dir.exists():
            return 0
        for lock_file in self.locks_dir.glob("*.lock"):
            if lock_file.stat().st_mtime >= time.time() - max_age_seconds:
                continue
            probe = FileLock(lock_file, timeout=0)
            if probe.acquire():
                probe.release()
                lock_file.unlink(missing_ok=True)
                removed += 1
        return removed
