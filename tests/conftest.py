"""Pytest configuration and fixtures for Roadmap Cascade tests."""

import asyncio
import json
from pathlib import Path

import pytest
import yaml

from roadmap_cascade.backends.base import SessionExecutor, SessionRequest, SessionResult
from roadmap_cascade.core.models import PhaseStatus, WorkItem
from roadmap_cascade.settings.models import Settings
from roadmap_cascade.state.state_store import StateStore

HANG = "hang"


class ScriptedExecutor(SessionExecutor):
    """
    Fake executor returning scripted outcomes.

    ``script`` maps ``(item_id, phase)`` or ``item_id`` to a list of outcomes
    consumed one per call: a SessionResult, an exception instance (raised), a
    coroutine function taking the request, or ``HANG`` (sleeps past any
    timeout). Once a list is used up every further call succeeds.
    """

    def __init__(self, script=None, delay: float = 0.0):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.delay = delay
        self.calls: list[SessionRequest] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.stop_requested = False
        self.intervals: dict[str, list[tuple[float, float]]] = {}

    def _next(self, request: SessionRequest):
        for key in ((request.item_id, request.phase), request.item_id):
            queue = self.script.get(key)
            if queue:
                return queue.pop(0)
        return SessionResult.success([f"{request.item_id}/{request.phase}.md"])

    async def execute(self, request: SessionRequest) -> SessionResult:
        loop = asyncio.get_running_loop()
        started = loop.time()
        self.calls.append(request)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self._next(request)
            if outcome == HANG:
                await asyncio.sleep(30)
                return SessionResult.success()
            if isinstance(outcome, BaseException):
                raise outcome
            if callable(outcome):
                return await outcome(request)
            return outcome
        finally:
            self.in_flight -= 1
            self.intervals.setdefault(request.item_id, []).append((started, loop.time()))

    def request_stop(self) -> None:
        self.stop_requested = True

    def calls_for(self, item_id: str, phase: str | None = None) -> list[SessionRequest]:
        return [c for c in self.calls if c.item_id == item_id and (phase is None or c.phase == phase)]

    def called_items(self, phase: str | None = None) -> list[str]:
        return [c.item_id for c in self.calls if phase is None or c.phase == phase]


def seed_items(store: StateStore, *items: WorkItem) -> list[WorkItem]:
    """Persist items in the given order."""
    return [store.create(item) for item in items]


def make_item(item_id: str, deps=(), status: PhaseStatus = PhaseStatus.DRAFTING, **kwargs) -> WorkItem:
    return WorkItem(id=item_id, title=item_id.title(), dependencies=list(deps), phase_status=status, **kwargs)


@pytest.fixture
def fast_settings():
    """Settings with no retry delay and short lease waits."""
    return Settings(
        max_concurrency=3,
        retry_attempts=3,
        session_timeout_ms=5_000,
        retry_base_delay_seconds=0.0,
        retry_max_delay_seconds=0.0,
        lease_timeout_seconds=0.2,
    )


@pytest.fixture
def store(tmp_path):
    """Create a StateStore in the temp directory."""
    state = StateStore(tmp_path, lease_timeout=0.2)
    state.ensure_directories()
    return state


@pytest.fixture
def executor():
    return ScriptedExecutor()


@pytest.fixture
def scenario_a_items():
    """A -> B -> C, D -> C, E standalone."""
    return [
        make_item("A"),
        make_item("B", deps=["A"]),
        make_item("C", deps=["B", "D"]),
        make_item("D"),
        make_item("E"),
    ]


@pytest.fixture
def sample_roadmap():
    """A small roadmap document."""
    return {
        "items": [
            {"id": "auth", "title": "Authentication", "priority": 2, "tags": ["accounts"]},
            {"id": "profile", "title": "User profile", "dependencies": ["auth"], "tags": ["accounts"]},
            {"id": "billing", "title": "Billing", "dependencies": ["profile"]},
            {"id": "docs", "title": "Public docs"},
        ]
    }


@pytest.fixture
def roadmap_path(tmp_path, sample_roadmap):
    """Write the sample roadmap as roadmap.yaml in the temp directory."""
    path = tmp_path / "roadmap.yaml"
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(sample_roadmap, f)
    return path


@pytest.fixture
def roadmap_json_path(tmp_path, sample_roadmap):
    path = tmp_path / "roadmap.json"
    with open(path, "w", encoding="utf-8") as f:
        json.dump(sample_roadmap, f)
    return path


@pytest.fixture
def config_dir(tmp_path) -> Path:
    directory = tmp_path / ".roadmap-cascade"
    directory.mkdir(parents=True, exist_ok=True)
    return directory
