"""Rich progress display for cache requests."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.progress_bar import ProgressBar
from rich.table import Table
from rich.text import Text

from assetcache.types import Stage


@dataclass
class StageInfo:
    """Progress of one request stage."""

    stage: Stage
    status: str = "pending"  # pending, running, complete, error
    percent: int = 0
    started_at: float | None = None
    completed_at: float | None = None

    @property
    def duration_str(self) -> str:
        """Get formatted duration string."""
        if self.started_at is None:
            return ""
        d = (self.completed_at or time.time()) - self.started_at
        if d < 60:
            return f"{d:.1f}s"
        return f"{int(d // 60)}m {int(d % 60)}s"


class FetchProgress:
    """Live progress display for a get-or-fetch request.

    Pass update() as the request's progress callback.
    """

    STAGE_NAMES = {
        Stage.CHECKING: "Checking cache",
        Stage.DOWNLOADING: "Downloading",
        Stage.CACHING: "Caching",
    }

    STATUS_ICONS = {
        "pending": "[dim]...[/dim]",
        "running": "[yellow]...[/yellow]",
        "complete": "[green]OK[/green]",
        "error": "[red]ERR[/red]",
    }

    def __init__(self, console: Console, label: str) -> None:
        """Initialize progress display.

        Args:
            console: Rich console to write to.
            label: Asset being fetched, shown in the panel title.
        """
        self.console = console
        self.label = label
        self.stages: dict[Stage, StageInfo] = {s: StageInfo(stage=s) for s in Stage}
        self.current: Stage | None = None
        self.is_complete = False
        self.error_message: str | None = None
        self._live: Live | None = None

    def _build_display(self) -> Panel:
        table = Table(show_header=False, box=None, padding=(0, 1))
        table.add_column("Status", width=4)
        table.add_column("Stage", width=16)
        table.add_column("Bar", width=32)
        table.add_column("Percent", width=5, justify="right")
        table.add_column("Time", width=8, justify="right", style="dim")

        for stage, info in self.stages.items():
            if info.status == "running":
                name_style = "bold yellow"
            elif info.status == "complete":
                name_style = "green"
            elif info.status == "error":
                name_style = "red"
            else:
                name_style = "dim"

            table.add_row(
                self.STATUS_ICONS.get(info.status, ""),
                Text(self.STAGE_NAMES[stage], style=name_style),
                ProgressBar(total=100, completed=info.percent, width=30),
                f"{info.percent}%",
                info.duration_str,
            )

        if self.is_complete:
            title = f"[bold green]{self.label} ready[/bold green]"
            border_style = "green"
        elif self.error_message:
            title = f"[bold red]{self.label} failed[/bold red]"
            border_style = "red"
        else:
            title = f"[bold cyan]Fetching {self.label}...[/bold cyan]"
            border_style = "cyan"

        content: Any = table
        if self.error_message:
            content = Group(table, Text(""), Text(self.error_message, style="red"))
        return Panel(content, title=title, border_style=border_style)

    def update(self, stage: Stage, percent: int) -> None:
        """Record progress for a stage."""
        if self.current is not None and self.current != stage:
            previous = self.stages[self.current]
            if previous.status == "running":
                previous.status = "complete"
                previous.completed_at = time.time()

        info = self.stages[stage]
        if info.started_at is None:
            info.started_at = time.time()
        info.status = "running"
        info.percent = percent
        self.current = stage

        if self._live:
            self._live.update(self._build_display())

    def mark_complete(self) -> None:
        """Mark the request as complete."""
        if self.current is not None:
            info = self.stages[self.current]
            info.status = "complete"
            info.completed_at = time.time()
        self.is_complete = True
        if self._live:
            self._live.update(self._build_display())

    def mark_error(self, message: str) -> None:
        """Mark the request as failed."""
        self.error_message = message
        if self.current is not None:
            self.stages[self.current].status = "error"
        if self._live:
            self._live.update(self._build_display())

    def __enter__(self) -> FetchProgress:
        """Start the live display."""
        self._live = Live(
            self._build_display(),
            console=self.console,
            refresh_per_second=8,
            transient=False,
            get_renderable=self._build_display,
        )
        self._live.__enter__()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Stop the live display."""
        if self._live:
            self._live.update(self._build_display())
            self._live.__exit__(exc_type, exc_val, exc_tb)
            self._live = None
