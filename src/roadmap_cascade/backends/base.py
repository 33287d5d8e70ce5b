"""
Session Executor Abstraction for Roadmap Cascade

A SessionExecutor performs the content-producing work for one work item and
phase: shaping, writing a spec, breaking it into tasks, implementing it. The
orchestration core never looks inside the payload it routes; it only reads
the structured SessionResult that comes back.

Implementations:
- CommandSessionExecutor: runs an agent CLI in a subprocess
- test doubles in tests/conftest.py
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..core.errors import ExecutorError
from ..core.models import DriftEvent, InterfaceDecl, Outcome

# Answers a question put to the operator
AskCallback = Callable[[str], Awaitable[str]]


class HumanChannel:
    """
    Synchronous request/response channel to the operator.

    ``ask`` suspends the calling session until an answer arrives; it is the
    only operation allowed to wait indefinitely. Questions from concurrent
    sessions are serialized so prompts never interleave.
    """

    def __init__(self, responder: AskCallback):
        self._responder = responder
        self._lock = asyncio.Lock()
        self.transcript: list[tuple[str, str]] = []

    async def ask(self, question: str) -> str:
        async with self._lock:
            answer = await self._responder(question)
            self.transcript.append((question, answer))
            return answer


@dataclass
class SessionOptions:
    """Execution options passed through to the executor."""
    model: str = ""
    allowed_capabilities: list[str] = field(default_factory=list)
    timeout_ms: int = 1_800_000

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "allowed_capabilities": list(self.allowed_capabilities),
            "timeout_ms": self.timeout_ms,
        }


@dataclass
class SessionRequest:
    """
    One unit of work for a SessionExecutor.

    Attributes:
        item_id: Work item being processed
        phase: Phase name
        payload: Opaque prompt content
        working_context: Directory the session works in
        options: Model, capabilities and timeout
        attempt: 1-based attempt number
        human: Channel for synchronous operator questions (None when unattended)
        cancel_event: Set when the run is cancelled; sessions should stop at
            their next safe checkpoint
    """
    item_id: str
    phase: str
    payload: dict[str, Any]
    working_context: Path
    options: SessionOptions = field(default_factory=SessionOptions)
    attempt: int = 1
    human: HumanChannel | None = None
    cancel_event: asyncio.Event | None = None

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    async def ask(self, question: str) -> str:
        """Ask the operator a question and wait for the answer."""
        if self.human is None:
            raise ExecutorError(
                f"Session for '{self.item_id}' needs operator input but none is attached",
                transient=False,
                item_id=self.item_id,
            )
        return await self.human.ask(question)

    def to_dict(self) -> dict[str, Any]:
        """Serializable form (without the human channel or cancel event)."""
        return {
            "item_id": self.item_id,
            "phase": self.phase,
            "payload": self.payload,
            "working_context": str(self.working_context),
            "options": self.options.to_dict(),
            "attempt": self.attempt,
        }


@dataclass
class SessionResult:
    """
    Structured result of one session.

    Attributes:
        status: success, failure or blocked
        artifacts: Opaque artifact references
        findings: Notes for later phases
        interfaces: Declarations the session produced or changed
        drift_events: Deviations the session noticed itself
        error: Failure reason
        retryable: Marks a failure as transient
    """
    status: Outcome
    artifacts: list[str] = field(default_factory=list)
    findings: list[str] = field(default_factory=list)
    interfaces: list[InterfaceDecl] = field(default_factory=list)
    drift_events: list[DriftEvent] = field(default_factory=list)
    error: str | None = None
    retryable: bool = False

    def __post_init__(self):
        self.status = Outcome(self.status)

    @property
    def succeeded(self) -> bool:
        return self.status == Outcome.SUCCESS

    @classmethod
    def success(cls, artifacts: list[str] | None = None, **kwargs: Any) -> "SessionResult":
        return cls(status=Outcome.SUCCESS, artifacts=artifacts or [], **kwargs)

    @classmethod
    def failure(cls, error: str, retryable: bool = False, **kwargs: Any) -> "SessionResult":
        return cls(status=Outcome.FAILURE, error=error, retryable=retryable, **kwargs)

    @classmethod
    def from_dict(cls, data: Any, item_id: str | None = None) -> "SessionResult":
        """
        Parse and validate a result produced outside the process.

        Raises:
            ExecutorError: structural, when the data is malformed
        """
        if not isinstance(data, dict):
            raise ExecutorError.malformed("result is not an object", item_id)
        try:
            status = Outcome(data.get("status"))
        except ValueError:
            raise ExecutorError.malformed(f"unknown status {data.get('status')!r}", item_id) from None

        for key in ("artifacts", "findings", "interfaces", "drift_events"):
            if not isinstance(data.get(key, []), list):
                raise ExecutorError.malformed(f"'{key}' must be a list", item_id)
        if not all(isinstance(a, str) for a in data.get("artifacts", [])):
            raise ExecutorError.malformed("artifacts must be strings", item_id)
        if not all(isinstance(n, str) for n in data.get("findings", [])):
            raise ExecutorError.malformed("findings must be strings", item_id)

        try:
            interfaces = [InterfaceDecl.from_dict(i) for i in data.get("interfaces", [])]
            drift_events = [DriftEvent.from_dict(e) for e in data.get("drift_events", [])]
        except (KeyError, TypeError, ValueError) as e:
            raise ExecutorError.malformed(str(e), item_id) from e

        return cls(
            status=status,
            artifacts=list(data.get("artifacts", [])),
            findings=list(data.get("findings", [])),
            interfaces=interfaces,
            drift_events=drift_events,
            error=data.get("error"),
            retryable=bool(data.get("retryable", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "artifacts": list(self.artifacts),
            "findings": list(self.findings),
            "interfaces": [i.to_dict() for i in self.interfaces],
            "drift_events": [e.to_dict() for e in self.drift_events],
            "error": self.error,
            "retryable": self.retryable,
        }


class SessionExecutor(ABC):
    """
    Abstract base class for session executors.

    Subclasses must implement:
    - execute(): run one session and return its structured result

    Optional overrides:
    - request_stop(): cooperative cancellation of in-flight sessions
    - get_name(): executor name for records and logs
    """

    @abstractmethod
    async def execute(self, request: SessionRequest) -> SessionResult:
        """
        Execute one session.

        May raise ExecutorError (transient or structural). Timeouts are
        enforced by the caller from ``request.options.timeout_ms``.
        """
        pass

    def request_stop(self) -> None:
        """Ask in-flight sessions to stop at their next safe checkpoint."""
        pass

    def get_name(self) -> str:
        return type(self).__name__
