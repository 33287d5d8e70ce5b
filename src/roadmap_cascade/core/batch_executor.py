#!/usr/bin/env python3
"""
Batch Executor for Roadmap Cascade

Dispatches one phase for a set of ready work items through a SessionExecutor.

- Sequential and parallel modes share one code path: sequential is a worker
  pool of size one
- Up to ``concurrency_limit`` session calls are in flight; as each finishes
  the next queued item is dispatched
- Transient failures are retried with backoff while the item's lease is held;
  structural failures block the item immediately
- One item's failure never aborts its siblings
- Every outcome is written to the StateStore before ``run_phase`` returns
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from ..backends.base import HumanChannel, SessionExecutor, SessionOptions, SessionRequest, SessionResult
from ..state.state_store import ItemLease, StateStore
from .errors import ExecutorError, StateConflictError, StateStoreUnavailableError
from .models import DriftEvent, ExecutionRecord, InterfaceDecl, Outcome, PhaseStatus, WorkItem, utc_now
from .phases import ExecutionMode, PhaseGate
from .retry_manager import ErrorType, RetryPolicy

logger = logging.getLogger(__name__)

# Builds the opaque payload for one item and phase
PayloadBuilder = Callable[[WorkItem, str], dict[str, Any]]

# Receives drift events reported by a session and returns the ones to store on the item
SessionDriftHandler = Callable[[WorkItem, list[DriftEvent]], list[DriftEvent]]


class ItemState(Enum):
    """Status of a work item during one batch."""
    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    DEFERRED = "deferred"
    SKIPPED = "skipped"


@dataclass
class ItemProgress:
    """Progress information for a single item."""
    item_id: str
    status: ItemState = ItemState.PENDING
    attempts: int = 0
    started_at: str | None = None
    finished_at: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "error": self.error,
        }


@dataclass
class BatchResult:
    """Result of running one phase over a batch of items."""
    phase: str
    mode: ExecutionMode
    started_at: str
    completed_at: str | None = None
    completed: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    retried: list[str] = field(default_factory=list)
    max_in_flight: int = 0
    cancelled: bool = False
    progress: dict[str, ItemProgress] = field(default_factory=dict)

    @property
    def launched(self) -> int:
        return len(self.completed) + len(self.blocked)

    @property
    def success(self) -> bool:
        return not self.blocked and not self.cancelled

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "mode": self.mode.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "completed": list(self.completed),
            "blocked": list(self.blocked),
            "deferred": list(self.deferred),
            "skipped": list(self.skipped),
            "retried": list(self.retried),
            "max_in_flight": self.max_in_flight,
            "cancelled": self.cancelled,
            "progress": {iid: p.to_dict() for iid, p in self.progress.items()},
        }


def build_default_payload(
    item: WorkItem,
    phase: str,
    dependency_findings: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Default payload: phase, item identity, and the findings recorded so far."""
    return {
        "phase": phase,
        "item_id": item.id,
        "title": item.title,
        "description": item.description,
        "tags": list(item.tags),
        "dependencies": list(item.dependencies),
        "artifacts": list(item.artifacts),
        "findings": item.findings(),
        "dependency_findings": list(dependency_findings or []),
    }


def _merge_interfaces(current: list[InterfaceDecl], produced: list[InterfaceDecl]) -> list[InterfaceDecl]:
    merged = {decl.name: decl for decl in current}
    for decl in produced:
        merged[decl.name] = decl
    return list(merged.values())


class BatchExecutor:
    """
    Runs one phase over a batch of ready items.

    Example:
        executor = BatchExecutor(store, CommandSessionExecutor(["claude", "--print"]))
        result = await executor.run_phase(items, gate, ExecutionMode.PARALLEL, concurrency_limit=3)
    """

    def __init__(
        self,
        store: StateStore,
        executor: SessionExecutor,
        retry_policy: RetryPolicy | None = None,
        options: SessionOptions | None = None,
        working_context: Path | None = None,
        payload_builder: PayloadBuilder | None = None,
        human: HumanChannel | None = None,
        session_drift_handler: SessionDriftHandler | None = None,
        on_progress: Callable[[ItemProgress], None] | None = None,
    ):
        """
        Initialize the batch executor.

        Args:
            store: StateStore every outcome is written to
            executor: SessionExecutor performing the work
            retry_policy: Failure classification and backoff
            options: Model, capabilities and timeout for each session
            working_context: Directory sessions run in (defaults to the project root)
            payload_builder: Builds the opaque payload per item
            human: Operator channel handed to sessions
            session_drift_handler: Filters session-reported drift before it is stored
            on_progress: Callback for item progress updates
        """
        self.store = store
        self.executor = executor
        self.retry_policy = retry_policy or RetryPolicy()
        self.options = options or SessionOptions()
        self.working_context = Path(working_context) if working_context else store.project_root
        self.payload_builder = payload_builder or build_default_payload
        self.human = human
        self.session_drift_handler = session_drift_handler
        self.on_progress = on_progress

        self._cancel_event = asyncio.Event()
        self._external_cancel: asyncio.Event | None = None
        self._in_flight = 0
        self._max_in_flight = 0

    def cancel(self) -> None:
        """Stop dispatching new items and ask in-flight sessions to stop."""
        self._cancel_event.set()
        self.executor.request_stop()

    async def run_phase(
        self,
        items: list[WorkItem],
        gate: PhaseGate,
        mode: ExecutionMode = ExecutionMode.PARALLEL,
        concurrency_limit: int = 1,
        cancel_event: asyncio.Event | None = None,
    ) -> BatchResult:
        """
        Run ``gate.phase`` for the given items.

        Args:
            items: Ready items in dispatch order
            gate: Gate of the phase being run
            mode: sequential or parallel
            concurrency_limit: Maximum in-flight session calls (parallel mode)
            cancel_event: External cancellation; observed between dispatches

        Returns:
            BatchResult listing completed, blocked, deferred and skipped items
        """
        mode = ExecutionMode(mode)
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be >= 1")
        limit = 1 if mode == ExecutionMode.SEQUENTIAL else concurrency_limit

        result = BatchResult(phase=gate.phase, mode=mode, started_at=utc_now())
        self._in_flight = 0
        self._max_in_flight = 0
        if self._cancel_event.is_set():
            self._cancel_event = asyncio.Event()
        self._external_cancel = cancel_event

        queue: asyncio.Queue[WorkItem] = asyncio.Queue()
        seen: set[str] = set()
        for item in items:
            if item.id in seen:
                continue
            seen.add(item.id)
            result.progress[item.id] = ItemProgress(item_id=item.id)
            queue.put_nowait(item)

        logger.info(
            "Running phase %s for %d item(s) (%s, limit=%d)",
            gate.phase, queue.qsize(), mode.value, limit,
        )

        watcher = None
        if cancel_event is not None:
            watcher = asyncio.create_task(self._watch_cancel(cancel_event))

        workers = [
            asyncio.create_task(self._worker(queue, gate, result))
            for _ in range(min(limit, max(queue.qsize(), 1)))
        ]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise
        finally:
            if watcher is not None:
                watcher.cancel()

        while not queue.empty():
            leftover = queue.get_nowait()
            result.skipped.append(leftover.id)
            self._update(result.progress[leftover.id], status=ItemState.SKIPPED)

        result.cancelled = self._stopping()
        result.max_in_flight = self._max_in_flight
        result.completed_at = utc_now()
        logger.info(
            "Phase %s finished: %d completed, %d blocked, %d deferred, %d skipped",
            gate.phase, len(result.completed), len(result.blocked),
            len(result.deferred), len(result.skipped),
        )
        return result

    def _stopping(self) -> bool:
        external = self._external_cancel
        return self._cancel_event.is_set() or (external is not None and external.is_set())

    async def _watch_cancel(self, cancel_event: asyncio.Event) -> None:
        await cancel_event.wait()
        logger.warning("Cancellation requested; no new items will be dispatched")
        self.cancel()

    async def _worker(self, queue: asyncio.Queue[WorkItem], gate: PhaseGate, result: BatchResult) -> None:
        while not self._stopping():
            try:
                item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                await self._process_item(item, gate, result)
            except StateStoreUnavailableError:
                raise
            except Exception as e:
                logger.exception("Unexpected failure processing %s in %s", item.id, gate.phase)
                self._record_crash(item.id, gate, result, e)

    async def _acquire_lease(self, item_id: str, holder: str) -> ItemLease | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.store.lease_timeout
        while True:
            try:
                return self.store.acquire_lease(item_id, holder=holder, timeout=0)
            except StateConflictError:
                if loop.time() >= deadline:
                    return None
                await asyncio.sleep(0.05)

    async def _process_item(self, item: WorkItem, gate: PhaseGate, result: BatchResult) -> None:
        progress = result.progress[item.id]
        lease = await self._acquire_lease(item.id, holder=f"batch:{gate.phase}")
        if lease is None:
            logger.info("Lease for %s is held elsewhere; deferring to the next batch", item.id)
            result.deferred.append(item.id)
            self._update(progress, status=ItemState.DEFERRED)
            return

        try:
            current = self.store.load(item.id)
            if not current.active or current.is_blocked or not gate.admits(current.effective_status):
                logger.debug("%s is no longer admitted to %s; skipping", item.id, gate.phase)
                result.skipped.append(item.id)
                self._update(progress, status=ItemState.SKIPPED)
                return

            if gate.dispatch_status is not None and current.phase_status != gate.dispatch_status:
                current = self.store.save(
                    item.id, lambda i: i.transition(gate.dispatch_status), lease=lease,
                )

            started_at = utc_now()
            self._update(progress, status=ItemState.RUNNING, started_at=started_at)
            outcome, session_result, errors, attempts = await self._run_attempts(current, gate.phase, progress)
            if outcome != Outcome.SUCCESS and self._stopping():
                # interrupted sessions resume from the persisted status on the next run
                logger.info("%s stopped in %s; left at %s", item.id, gate.phase, current.phase_status.value)
                result.skipped.append(item.id)
                self._update(progress, status=ItemState.SKIPPED, finished_at=utc_now())
                return

            record = ExecutionRecord(
                item_id=item.id,
                phase=gate.phase,
                attempt_count=attempts,
                outcome=outcome,
                started_at=started_at,
                finished_at=utc_now(),
                artifacts=list(session_result.artifacts) if session_result else [],
                findings=list(session_result.findings) if session_result else [],
                errors=errors,
            )

            if outcome == Outcome.SUCCESS:
                self.store.save(item.id, lambda i: self._apply_success(i, record, session_result, gate), lease=lease)
                result.completed.append(item.id)
                self._update(progress, status=ItemState.COMPLETED, finished_at=record.finished_at)
                logger.info("%s completed %s in %d attempt(s)", item.id, gate.phase, attempts)
            else:
                reason = errors[-1] if errors else "session reported blocked"
                self.store.save(item.id, lambda i: self._apply_block(i, record, reason), lease=lease)
                result.blocked.append(item.id)
                self._update(progress, status=ItemState.BLOCKED, finished_at=record.finished_at, error=reason)
                logger.error("%s blocked in %s: %s", item.id, gate.phase, reason)

            if attempts > 1:
                result.retried.append(item.id)
            self.store.append_findings(item.id, gate.phase, record.findings)
        finally:
            self.store.release_lease(lease)

    async def _run_attempts(
        self,
        item: WorkItem,
        phase: str,
        progress: ItemProgress,
    ) -> tuple[Outcome, SessionResult | None, list[str], int]:
        """
        Call the executor until success, a structural failure, or retries run out.

        Returns:
            (outcome, last session result, error per failed attempt, attempts made)
        """
        errors: list[str] = []
        attempt = 0
        self.retry_policy.clear(item.id)

        while True:
            attempt += 1
            self._update(progress, attempts=attempt)

            session_result: SessionResult | None = None
            try:
                request = SessionRequest(
                    item_id=item.id,
                    phase=phase,
                    payload=self.payload_builder(item, phase),
                    working_context=self.working_context,
                    options=self.options,
                    attempt=attempt,
                    human=self.human,
                    cancel_event=self._cancel_event,
                )
                session_result = await self._call_executor(request)
            except Exception as e:
                error_type = self.retry_policy.classify_exception(e)
                message = str(e) or type(e).__name__
            else:
                if session_result.succeeded:
                    return Outcome.SUCCESS, session_result, errors, attempt
                error_type = self.retry_policy.classify_result(
                    session_result.status, session_result.error, session_result.retryable,
                )
                message = session_result.error or f"session returned {session_result.status.value}"

            record = self.retry_policy.record_failure(item.id, attempt, error_type, message)
            errors.append(record.describe())

            if self._stopping():
                return Outcome.FAILURE, session_result, errors, attempt
            if not self.retry_policy.should_retry(error_type, attempt):
                if error_type == ErrorType.BLOCKED:
                    return Outcome.BLOCKED, session_result, errors, attempt
                return Outcome.FAILURE, session_result, errors, attempt

            delay = self.retry_policy.get_retry_delay(attempt)
            logger.info(
                "%s attempt %d failed (%s); retrying in %.1fs",
                item.id, attempt, error_type.value, delay,
            )
            self._update(progress, status=ItemState.RETRYING, error=message)
            if delay > 0:
                await asyncio.sleep(delay)

    async def _call_executor(self, request: SessionRequest) -> SessionResult:
        self._in_flight += 1
        self._max_in_flight = max(self._max_in_flight, self._in_flight)
        timeout_ms = request.options.timeout_ms
        try:
            return await asyncio.wait_for(self.executor.execute(request), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise ExecutorError.timeout(request.item_id, timeout_ms) from None
        finally:
            self._in_flight -= 1

    def _apply_success(
        self,
        item: WorkItem,
        record: ExecutionRecord,
        session_result: SessionResult | None,
        gate: PhaseGate,
    ) -> None:
        item.history.append(record)
        if session_result is not None:
            item.artifacts = list(dict.fromkeys(item.artifacts + session_result.artifacts))
            item.interfaces = _merge_interfaces(item.interfaces, session_result.interfaces)
            if session_result.drift_events:
                reported = list(session_result.drift_events)
                if self.session_drift_handler is not None:
                    reported = self.session_drift_handler(item, reported)
                for event in reported:
                    item.upsert_drift(event)
        item.transition(gate.target)

    @staticmethod
    def _apply_block(item: WorkItem, record: ExecutionRecord, reason: str) -> None:
        item.history.append(record)
        if item.phase_status != PhaseStatus.COMPLETED:
            item.transition(PhaseStatus.BLOCKED, reason=reason)

    def _record_crash(self, item_id: str, gate: PhaseGate, result: BatchResult, error: Exception) -> None:
        """Turn an unexpected exception into a structural failure of that one item."""
        progress = result.progress[item_id]
        reason = f"{type(error).__name__}: {error}"
        now = utc_now()
        record = ExecutionRecord(
            item_id=item_id,
            phase=gate.phase,
            attempt_count=progress.attempts,
            outcome=Outcome.FAILURE,
            started_at=progress.started_at or now,
            finished_at=now,
            errors=[reason],
        )
        try:
            self.store.update_with_retry(item_id, lambda i: self._apply_block(i, record, reason))
        except StateConflictError:
            logger.error("Could not record the failure of %s; it stays at its persisted status", item_id)

        for bucket in (result.completed, result.skipped):
            if item_id in bucket:
                bucket.remove(item_id)
        if item_id not in result.blocked:
            result.blocked.append(item_id)
        self._update(progress, status=ItemState.BLOCKED, finished_at=now, error=reason)

    def _update(self, progress: ItemProgress, **changes: Any) -> None:
        for key, value in changes.items():
            setattr(progress, key, value)
        if self.on_progress:
            self.on_progress(progress)
