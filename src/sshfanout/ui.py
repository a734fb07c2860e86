"""Terminal UI with Rich Live display for batch progress and host events."""

from __future__ import annotations

import asyncio
from collections import deque

from rich.console import Console, Group, RenderableType
from rich.live import Live
from rich.markup import escape
from rich.panel import Panel
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TaskID, TextColumn, TimeElapsedColumn
from rich.table import Table
from rich.text import Text

from sshfanout.events import (
    CancelledEvent,
    CompleteEvent,
    ErrorEvent,
    Event,
    ResultEvent,
    StartEvent,
    StatusEvent,
)
from sshfanout.models import HostStatus

__all__ = ["TerminalUI"]

STATUS_STYLES = {
    HostStatus.IDLE: "dim",
    HostStatus.CONNECTING: "cyan",
    HostStatus.EXECUTING: "blue",
    HostStatus.RETRYING: "yellow",
    HostStatus.SUCCESS: "green",
    HostStatus.ERROR: "red",
    HostStatus.CANCELLED: "magenta",
}


class TerminalUI:
    """Rich terminal UI for one batch.

    Shows a counter line (success, error, skipped, in flight), an overall
    progress bar and a scrolling panel with the most recent host events.
    """

    def __init__(self, console: Console, total: int, max_event_lines: int = 12) -> None:
        """Initialize the terminal UI.

        Args:
            console: Rich console for rendering
            total: Number of hosts in the batch
            max_event_lines: Maximum number of event lines kept in the panel
        """
        self._console = console
        self._max_event_lines = max_event_lines

        self._progress = Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            console=console,
            expand=True,
        )
        self._task: TaskID = self._progress.add_task("[cyan]Hosts[/cyan]", total=total)

        self._lines: deque[str] = deque(maxlen=max_event_lines)
        self._active: dict[str, HostStatus] = {}
        self._counts = {"success": 0, "error": 0, "skipped": 0}
        self._cancel_reason: str | None = None

        self._live: Live | None = None

    @property
    def lines(self) -> list[str]:
        """Event lines currently shown in the panel."""
        return list(self._lines)

    @property
    def counts(self) -> dict[str, int]:
        return dict(self._counts)

    def _render(self) -> RenderableType:
        status = Table.grid(padding=(0, 2))
        status.add_column(justify="left")
        status.add_column(justify="right")

        counters = Text()
        counters.append(f"{self._counts['success']} ok", style="green")
        counters.append("  ")
        counters.append(f"{self._counts['error']} failed", style="red")
        if self._counts["skipped"]:
            counters.append("  ")
            counters.append(f"{self._counts['skipped']} skipped", style="magenta")

        state = Text()
        if self._cancel_reason is not None:
            state.append(f"Cancelling: {self._cancel_reason}", style="bold yellow")
        else:
            state.append(f"{len(self._active)} in flight", style="cyan")

        status.add_row(counters, state)

        body = "\n".join(self._lines) if self._lines else "[dim]Waiting for hosts...[/dim]"
        panel = Panel(body, title="Recent Events", border_style="blue", height=self._max_event_lines + 2)

        return Group(status, self._progress, panel)

    def start(self) -> None:
        """Start the live display."""
        self._live = Live(self._render(), console=self._console, refresh_per_second=10, transient=False)
        self._live.start()

    def stop(self) -> None:
        """Stop the live display."""
        if self._live:
            self._live.stop()
            self._live = None

    def handle(self, event: Event) -> None:
        """Apply one batch event to the display."""
        match event:
            case StartEvent():
                self._add_line(f"[dim]Batch {event.execution_id[:8]} started on {event.total} host(s)[/dim]")
            case StatusEvent():
                self._active[event.host_id] = event.status
                self._add_line(self._format_status(event))
            case ResultEvent():
                self._finish(event.host_id, event.progress)
                result = event.result
                if result.success:
                    self._add_line(f"[green]✓[/green] {result.address} [dim]({result.duration_ms}ms)[/dim]")
                else:
                    self._add_line(f"[red]✗[/red] {result.address} exit code {result.exit_code}")
            case ErrorEvent():
                self._finish(event.host_id, event.progress)
                self._add_line(f"[red]✗[/red] {event.address} {escape(event.error)}")
            case CancelledEvent() if event.host_id is None:
                self._cancel_reason = event.reason or "cancelled"
                self._add_line(f"[bold yellow]Batch cancelled: {escape(self._cancel_reason)}[/bold yellow]")
            case CancelledEvent():
                self._finish(event.host_id, event.progress)
                self._add_line(f"[magenta]-[/magenta] {event.address} cancelled")
            case CompleteEvent():
                summary = event.summary
                self._counts = {"success": summary.success, "error": summary.error, "skipped": summary.skipped}
                self._progress.update(self._task, completed=summary.completed + summary.skipped)
        self._refresh()

    async def consume_events(self, queue: asyncio.Queue[Event | None]) -> None:
        """Consume events from an EventBus queue until its shutdown sentinel."""
        while True:
            event = await queue.get()
            if event is None:
                break
            self.handle(event)

    def _finish(self, host_id: str | None, progress: dict[str, int] | None) -> None:
        if host_id is not None:
            self._active.pop(host_id, None)
        if progress:
            self._counts = {key: progress[key] for key in ("success", "error", "skipped")}
            self._progress.update(self._task, completed=progress["completed"] + progress["skipped"])

    def _format_status(self, event: StatusEvent) -> str:
        style = STATUS_STYLES[event.status]
        parts = [f"[{style}]{event.status.value:10}[/{style}]", event.address]
        if event.status is HostStatus.RETRYING:
            bound = "∞" if event.max_attempts is None else str(event.max_attempts)
            parts.append(f"[dim]attempt {event.attempt}/{bound}[/dim]")
            if event.error:
                parts.append(f"[dim]{escape(event.error)}[/dim]")
        elif event.attempt > 1:
            parts.append(f"[dim]attempt {event.attempt}[/dim]")
        return " ".join(parts)

    def _add_line(self, line: str) -> None:
        self._lines.append(line)

    def _refresh(self) -> None:
        if self._live:
            self._live.update(self._render())
