"""
Rich Terminal Output for Roadmap Cascade CLI

Provides terminal output with tables, panels, and styled text for work
items, batch results, drift events and run summaries.
Uses the Rich library for all formatting.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from ..core.batch_executor import BatchResult
    from ..core.models import AlignmentReport, DriftEvent, WorkItem
    from ..core.orchestrator import RunSummary


class OutputManager:
    """
    Manages rich terminal output for the Roadmap Cascade CLI.

    Provides consistent styling and formatting for:
    - Tables of work items and drift events
    - Panels for run summaries and alignment reports
    - One-line status messages
    """

    # Phase status styles
    STATUS_STYLES = {
        "drafting": "dim",
        "shaped": "white",
        "specced": "cyan",
        "tasked": "blue",
        "in-progress": "yellow",
        "completed": "green",
        "blocked": "red",
        "needs-revision": "magenta",
    }

    SEVERITY_STYLES = {
        "low": "dim",
        "medium": "yellow",
        "high": "red",
        "critical": "bold red",
    }

    def __init__(self, console: Console | None = None):
        """
        Initialize the output manager.

        Args:
            console: Rich Console instance (creates one if not provided)
        """
        self.console = console or Console()

    # ==================== Basic Output ====================

    def print(self, message: str = "", style: str | None = None) -> None:
        """
        Print a message with optional styling.

        Args:
            message: Message to print (defaults to empty string for blank line)
            style: Optional rich style string
        """
        self.console.print(message, style=style)

    def print_header(self, title: str, subtitle: str | None = None) -> None:
        self.console.print()
        self.console.print(f"[bold blue]{title}[/bold blue]")
        if subtitle:
            self.console.print(f"[dim]{escape(subtitle)}[/dim]")
        self.console.print()

    def print_success(self, message: str) -> None:
        """Print a success message."""
        self.console.print(f"[green]v[/green] {escape(message)}")

    def print_error(self, message: str) -> None:
        """Print an error message."""
        self.console.print(f"[red]x[/red] {escape(message)}")

    def print_warning(self, message: str) -> None:
        """Print a warning message."""
        self.console.print(f"[yellow]![/yellow] {escape(message)}")

    def print_info(self, message: str) -> None:
        """Print an info message."""
        self.console.print(f"[blue]i[/blue] {escape(message)}")

    # ==================== Panels ====================

    def status_panel(self, status: dict[str, Any], title: str = "Status") -> None:
        """
        Display a key/value status panel.

        Args:
            status: Status dictionary
            title: Panel title
        """
        lines = []
        for key, value in status.items():
            if isinstance(value, bool):
                value_str = "[green]Yes[/green]" if value else "[red]No[/red]"
            elif isinstance(value, (list, tuple)):
                value_str = escape(", ".join(str(v) for v in value)) or "-"
            else:
                value_str = escape(str(value))
            lines.append(f"[bold]{key}:[/bold] {value_str}")

        self.console.print(Panel("\n".join(lines), title=title, border_style="cyan"))

    # ==================== Tables ====================

    def items_table(self, items: list["WorkItem"], title: str = "Work Items", halted: set[str] | None = None) -> None:
        """
        Display work items as a table.

        Args:
            items: Work items in display order
            title: Table title
            halted: Items held back by pending drift
        """
        halted = halted or set()
        table = Table(title=title)

        table.add_column("ID", style="cyan")
        table.add_column("Title", style="white")
        table.add_column("Priority", style="yellow", justify="right")
        table.add_column("Status")
        table.add_column("Dependencies", style="dim")
        table.add_column("Notes", style="dim")

        for item in items:
            status = item.phase_status.value
            style = self.STATUS_STYLES.get(status, "white")
            notes = []
            if item.is_blocked and item.block_reason:
                notes.append(item.block_reason.splitlines()[0][:60])
            if item.resume_status is not None:
                notes.append(f"resume at {item.resume_status.value}")
            if item.id in halted:
                notes.append("halted on drift")
            if not item.active:
                notes.append("inactive")

            table.add_row(
                item.id,
                escape(item.title),
                str(item.priority),
                f"[{style}]{status}[/{style}]",
                ", ".join(item.dependencies) or "-",
                escape("; ".join(notes)) or "-",
            )

        self.console.print(table)

    def drift_table(self, events: list["DriftEvent"], title: str = "Drift Events") -> None:
        """Display drift events with severity and decision."""
        table = Table(title=title)

        table.add_column("Event", style="cyan")
        table.add_column("Category")
        table.add_column("Severity")
        table.add_column("Items", style="dim")
        table.add_column("Decision")
        table.add_column("Recommendation", style="white")

        for event in events:
            style = self.SEVERITY_STYLES.get(event.severity.value, "white")
            decision = event.decision.value
            if event.cascade:
                decision += " (cascade)"
            table.add_row(
                event.event_id,
                event.category,
                f"[{style}]{event.severity.value}[/{style}]",
                ", ".join(event.affected_items),
                decision,
                escape(event.recommendation),
            )

        self.console.print(table)

    # ==================== Results ====================

    def batch_result(self, batch: "BatchResult") -> None:
        parts = [f"{len(batch.completed)} completed"]
        if batch.blocked:
            parts.append(f"[red]{len(batch.blocked)} blocked[/red]")
        if batch.deferred:
            parts.append(f"{len(batch.deferred)} deferred")
        if batch.skipped:
            parts.append(f"{len(batch.skipped)} skipped")
        if batch.retried:
            parts.append(f"{len(batch.retried)} retried")
        self.console.print(f"  [bold]{batch.phase}[/bold] ({batch.mode.value}): " + ", ".join(parts))
        for item_id in batch.blocked:
            progress = batch.progress.get(item_id)
            reason = progress.error if progress and progress.error else "blocked"
            self.console.print(f"    [red]x[/red] {item_id}: {escape(reason.splitlines()[0])}")

    def report(self, report: "AlignmentReport") -> None:
        """Display one alignment report."""
        self.console.print(
            f"[bold]Alignment ({report.checkpoint})[/bold] {report.report_id}: "
            f"{len(report.events)} event(s), status {report.status.value}"
        )
        if report.events:
            self.drift_table(report.events, title=f"Report {report.report_id}")
        for notice in report.notifications:
            self.print_warning(notice)
        if report.recommended_order:
            self.console.print(f"[dim]Recommended order: {' -> '.join(report.recommended_order)}[/dim]")

    def run_summary(self, summary: "RunSummary") -> None:
        """
        Display the outcome of a run.

        Args:
            summary: RunSummary from the orchestrator
        """
        for batch in summary.batches:
            self.batch_result(batch)
        for report in summary.reports:
            self.report(report)

        self.status_panel(
            {
                "Completed": summary.completed,
                "Blocked": summary.blocked,
                "Halted": summary.halted,
                "Awaiting decision": [e.event_id for e in summary.pending_decisions],
                "Stopped at": summary.stopped_at or "-",
                "Cancelled": summary.cancelled,
            },
            title="Run Summary",
        )

        if summary.pending_decisions:
            self.print_warning(
                "Decide pending drift with: roadmap-cascade decide <event-id> --approve|--reject|--modify TEXT"
            )
        elif summary.blocked:
            self.print_warning("Blocked items can be resumed with: roadmap-cascade unblock <item-id>")
        else:
            self.print_success("Run finished")
