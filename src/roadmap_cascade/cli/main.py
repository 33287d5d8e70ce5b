#!/usr/bin/env python3
"""
Roadmap Cascade CLI

Command-line interface for driving a roadmap through its lifecycle:
- roadmap-cascade plan: Load and validate the roadmap
- roadmap-cascade spec: Shape and write specs for selected items
- roadmap-cascade align: Run one alignment checkpoint
- roadmap-cascade implement: Run the implement phase
- roadmap-cascade execute: Run the full loop
- roadmap-cascade status / decide / unblock / add-item: operator actions

Exit codes: 0 clean, 1 unrecoverable error, 2 awaiting a drift decision,
3 finished with blocked items.
"""

import asyncio
import logging
import signal
import sys
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import List, Optional, TypeVar

import typer
from rich.console import Console
from rich.prompt import Prompt

from .. import __version__
from ..backends.base import HumanChannel, SessionExecutor
from ..backends.command import CommandSessionExecutor
from ..core.errors import (
    ConfigError,
    GraphError,
    ItemNotFoundError,
    LifecycleError,
    StateStoreUnavailableError,
)
from ..core.models import Decision, WorkItem
from ..core.orchestrator import EXIT_ERROR, EXIT_OK, Orchestrator, RunSummary
from ..core.phases import CheckpointKind, ExecutionMode, Phase
from ..core.roadmap import DEFAULT_ROADMAP_FILES, find_roadmap
from ..settings.models import Settings
from ..settings.storage import SettingsStorage
from ..settings.validation import load_validated
from ..state.state_store import StateStore
from .output import OutputManager

LOG_FILE_NAME = "roadmap-cascade.log"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

T = TypeVar("T")

app = typer.Typer(
    name="roadmap-cascade",
    help="Roadmap Cascade - dependency-ordered orchestration of roadmap work",
    add_completion=False,
    no_args_is_help=True,
)
console = Console()
output = OutputManager(console)

_log_handler: logging.Handler | None = None


def create_executor(settings: Settings) -> SessionExecutor:
    """Build the session executor configured for the project."""
    return CommandSessionExecutor(settings.executor.command, env=settings.executor.env or None)


async def _prompt_operator(question: str) -> str:
    return await asyncio.to_thread(Prompt.ask, f"[bold cyan]?[/bold cyan] {question}")


def _configure_logging(state_dir: Path, level: str, verbose: bool) -> None:
    """Send package log records to ``<state dir>/roadmap-cascade.log``."""
    global _log_handler
    package_logger = logging.getLogger("roadmap_cascade")
    if _log_handler is not None:
        package_logger.removeHandler(_log_handler)
        _log_handler.close()
        _log_handler = None

    try:
        state_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(state_dir / LOG_FILE_NAME, encoding="utf-8")
    except OSError as e:
        raise StateStoreUnavailableError(f"Could not open log file in {state_dir}: {e}") from e

    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO))
    _log_handler = handler


@contextmanager
def _fatal_errors() -> Iterator[None]:
    """Map unrecoverable errors to exit code 1."""
    try:
        yield
    except GraphError as e:
        for problem in e.problems:
            output.print_error(problem)
        raise typer.Exit(EXIT_ERROR) from e
    except ConfigError as e:
        output.print_error(str(e) if not e.errors else "Invalid configuration")
        for error in e.errors:
            output.print_error(f"  {error}")
        raise typer.Exit(EXIT_ERROR) from e
    except (StateStoreUnavailableError, LifecycleError, ItemNotFoundError) as e:
        output.print_error(str(e))
        raise typer.Exit(EXIT_ERROR) from e


def _open_project(project_path: str | None, verbose: bool) -> Orchestrator:
    project = Path(project_path) if project_path else Path.cwd()
    settings = load_validated(SettingsStorage(project))
    store = StateStore(project, lease_timeout=settings.lease_timeout_seconds)
    _configure_logging(store.state_dir, settings.log_level, verbose)
    store.cleanup_locks()

    human = HumanChannel(_prompt_operator) if sys.stdin.isatty() else None
    orchestrator = Orchestrator(
        project,
        create_executor(settings),
        settings=settings,
        store=store,
        human=human,
    )
    orchestrator.rebuild_graph()
    return orchestrator


def _run(orchestrator: Orchestrator, work: Callable[[], Awaitable[T]]) -> T:
    """Run a coroutine with Ctrl+C mapped to a cooperative cancel."""

    async def runner() -> T:
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, orchestrator.cancel)
            installed = True
        except (NotImplementedError, RuntimeError, ValueError):
            # Windows event loops and non-main threads
            installed = False
        try:
            return await work()
        finally:
            if installed:
                loop.remove_signal_handler(signal.SIGINT)

    return asyncio.run(runner())


def _finish(summary: RunSummary, verbose: bool = False) -> None:
    output.run_summary(summary)
    if verbose:
        for event in summary.pending_decisions:
            output.print_info(f"{event.event_id}: {event.description}")
    raise typer.Exit(summary.exit_code)


def _split_ids(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


@app.command()
def plan(
    roadmap: str | None = typer.Option(None, "--roadmap", "-r", help="Roadmap file (YAML or JSON)"),
    project_path: str | None = typer.Option(None, "--project", "-p", help="Project path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """
    Load and validate the dependency graph.

    New roadmap items are persisted; items already tracked keep their progress.

    Examples:
        roadmap-cascade plan
        roadmap-cascade plan --roadmap docs/roadmap.json
    """
    with _fatal_errors():
        orchestrator = _open_project(project_path, verbose)
        path = Path(roadmap) if roadmap else find_roadmap(orchestrator.project_root)
        if path is None:
            output.print_error(f"No roadmap found; expected one of {', '.join(DEFAULT_ROADMAP_FILES)}")
            raise typer.Exit(EXIT_ERROR)

        output.print_header(f"Roadmap Cascade v{__version__}", f"Roadmap: {path}")
        created = orchestrator.load_roadmap(path)
        graph = orchestrator.graph

        output.print_success(f"{len(created)} new item(s), {len(graph)} tracked")
        for index, batch in enumerate(graph.execution_batches(), 1):
            output.print(f"  Batch {index}: {', '.join(batch)}")
        output.items_table(graph.items())


@app.command()
def spec(
    items: str | None = typer.Option(None, "--items", "-i", help="Comma-separated item ids (default: all)"),
    parallel: bool = typer.Option(False, "--parallel", help="Write specs in parallel"),
    project_path: str | None = typer.Option(None, "--project", "-p", help="Project path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """
    Run the shape and write-spec phases.

    Without --parallel both phases run one item at a time. With it, specs
    are written in parallel while shaping keeps its configured mode.
    """
    with _fatal_errors():
        orchestrator = _open_project(project_path, verbose)
        scope = _split_ids(items) if items else None
        if scope:
            unknown = [i for i in scope if i not in orchestrator.graph]
            if unknown:
                output.print_error(f"Unknown item(s): {', '.join(unknown)}")
                raise typer.Exit(EXIT_ERROR)

        shape_mode = orchestrator.mode_for(Phase.SHAPE) if parallel else ExecutionMode.SEQUENTIAL
        spec_mode = ExecutionMode.PARALLEL if parallel else ExecutionMode.SEQUENTIAL
        phases = [(Phase.SHAPE, shape_mode), (Phase.WRITE_SPEC, spec_mode)]
        summary = _run(orchestrator, lambda: orchestrator.run_phases(phases, scope=scope))
    _finish(summary, verbose)


@app.command()
def align(
    specs: bool = typer.Option(False, "--specs", help="Review written specs"),
    tasks: bool = typer.Option(False, "--tasks", help="Review task breakdowns"),
    project_path: str | None = typer.Option(None, "--project", "-p", help="Project path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Run one alignment checkpoint and print its report."""
    if specs == tasks:
        output.print_error("Specify exactly one of --specs or --tasks")
        raise typer.Exit(EXIT_ERROR)

    with _fatal_errors():
        orchestrator = _open_project(project_path, verbose)
        kind = CheckpointKind.SPECS if specs else CheckpointKind.TASKS
        report = orchestrator.run_checkpoint(kind)
        output.report(report)
        summary = orchestrator.summary()
    raise typer.Exit(summary.exit_code)


@app.command()
def implement(
    spec_id: str | None = typer.Option(None, "--spec", "-s", help="Implement one item"),
    all_items: bool = typer.Option(False, "--all", help="Implement every ready item"),
    project_path: str | None = typer.Option(None, "--project", "-p", help="Project path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Run the implement phase for one item or for everything that is ready."""
    if bool(spec_id) == all_items:
        output.print_error("Specify exactly one of --spec ID or --all")
        raise typer.Exit(EXIT_ERROR)

    with _fatal_errors():
        orchestrator = _open_project(project_path, verbose)
        if spec_id and spec_id not in orchestrator.graph:
            output.print_error(f"Unknown item: {spec_id}")
            raise typer.Exit(EXIT_ERROR)
        scope = [spec_id] if spec_id else None

        summary = _run(orchestrator, lambda: orchestrator.run_phases([(Phase.IMPLEMENT, None)], scope=scope))
    _finish(summary, verbose)


@app.command()
def execute(
    spec_only: bool = typer.Option(False, "--spec-only", help="Stop before the implement phase"),
    checkpoint_at: Phase | None = typer.Option(
        None, "--checkpoint-at", help="Stop after this phase and its checkpoint",
    ),
    project_path: str | None = typer.Option(None, "--project", "-p", help="Project path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """
    Run the full loop until no phase makes progress.

    Examples:
        roadmap-cascade execute
        roadmap-cascade execute --spec-only
        roadmap-cascade execute --checkpoint-at write-spec
    """
    with _fatal_errors():
        orchestrator = _open_project(project_path, verbose)
        output.print_header(f"Roadmap Cascade v{__version__}", f"Project: {orchestrator.project_root}")
        summary = _run(
            orchestrator,
            lambda: orchestrator.execute(spec_only=spec_only, checkpoint_at=checkpoint_at),
        )
    _finish(summary, verbose)


@app.command()
def status(
    project_path: str | None = typer.Option(None, "--project", "-p", help="Project path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show items, statuses, blocks and pending decisions."""
    with _fatal_errors():
        orchestrator = _open_project(project_path, verbose)
        summary = orchestrator.summary()
        items = orchestrator.store.load_all(include_inactive=verbose)
        if not items:
            output.print_info("No work items tracked yet. Run 'roadmap-cascade plan' first.")
            raise typer.Exit(EXIT_OK)

        output.items_table(items, halted=set(summary.halted))
        if summary.pending_decisions:
            output.drift_table(summary.pending_decisions, title="Awaiting Decision")
    raise typer.Exit(summary.exit_code)


@app.command()
def decide(
    event_id: str = typer.Argument(..., help="Drift event id"),
    approve: bool = typer.Option(False, "--approve", help="Apply the recommended resolution"),
    reject: bool = typer.Option(False, "--reject", help="Keep the artifacts as they are"),
    modify: str | None = typer.Option(None, "--modify", help="Send items back for revision with this note"),
    project_path: str | None = typer.Option(None, "--project", "-p", help="Project path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Record an operator decision on a drift event and apply it."""
    chosen = [d for d, flag in ((Decision.APPROVED, approve), (Decision.REJECTED, reject),
                                (Decision.MODIFIED, modify is not None)) if flag]
    if len(chosen) != 1:
        output.print_error("Specify exactly one of --approve, --reject or --modify TEXT")
        raise typer.Exit(EXIT_ERROR)

    with _fatal_errors():
        orchestrator = _open_project(project_path, verbose)
        try:
            report = orchestrator.decide(event_id, chosen[0], note=modify)
        except KeyError as e:
            output.print_error(str(e.args[0]) if e.args else f"Unknown drift event: {event_id}")
            raise typer.Exit(EXIT_ERROR) from e

        output.print_success(f"{event_id}: {chosen[0].value}")
        output.report(report)
        summary = orchestrator.summary()
    raise typer.Exit(summary.exit_code)


@app.command()
def unblock(
    item_id: str = typer.Argument(..., help="Blocked item id"),
    project_path: str | None = typer.Option(None, "--project", "-p", help="Project path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Return a blocked item to the status it was blocked from."""
    with _fatal_errors():
        orchestrator = _open_project(project_path, verbose)
        item = orchestrator.unblock(item_id)
        output.print_success(f"{item.id} is back at {item.phase_status.value}")


@app.command()
def retire(
    item_id: str = typer.Argument(..., help="Item id to retire"),
    project_path: str | None = typer.Option(None, "--project", "-p", help="Project path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Drop an item from future runs without deleting its record."""
    with _fatal_errors():
        orchestrator = _open_project(project_path, verbose)
        item = orchestrator.retire(item_id)
        output.print_success(f"Retired {item.id}")


@app.command("add-item")
def add_item(
    item_id: str = typer.Argument(..., help="New item id"),
    depends_on: Optional[List[str]] = typer.Option(None, "--depends-on", "-d", help="Dependency id (repeatable)"),
    title: str = typer.Option("", "--title", "-t", help="Item title"),
    priority: int = typer.Option(0, "--priority", help="Tie-break priority (higher first)"),
    project_path: str | None = typer.Option(None, "--project", "-p", help="Project path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Declare a new work item between runs."""
    with _fatal_errors():
        orchestrator = _open_project(project_path, verbose)
        item = WorkItem(id=item_id, title=title, priority=priority, dependencies=list(depends_on or []))
        created = orchestrator.declare_item(item)
        output.print_success(f"Added {created.id}")


@app.command()
def version():
    """Show version information."""
    output.print(f"Roadmap Cascade v{__version__}")


def main():
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
