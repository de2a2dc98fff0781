"""Operator-facing notices and Rich progress display for sync runs."""

from __future__ import annotations

import logging

from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)

logger = logging.getLogger(__name__)


def progress_percent(low: int, high: int, completed: int, total: int) -> int:
    """Map *completed* of *total* onto the ``low``..``high`` percent band."""
    if total <= 0:
        return high
    return int(low + (high - low) * min(completed, total) / total)


def sync_message(low: int, high: int, completed: int, total: int) -> str:
    """Render a ``Syncing (N%)`` status line for a phase band."""
    return f"Syncing ({progress_percent(low, high, completed, total)}%)"


class Notifier:
    """Sink for human-readable sync notices.

    The base class only logs; subclasses add a display.
    """

    def info(self, message: str) -> None:
        logger.info(message)

    def error(self, message: str) -> None:
        logger.error(message)

    def progress(self, percent: int, message: str) -> None:
        logger.debug("%s (%d%%)", message, percent)


class SyncProgress:
    """Single-bar Rich progress display driven by percentage updates.

    Usage::

        with SyncProgress("Push") as bar:
            bar.update(33, "Syncing (33%)")
    """

    def __init__(self, description: str, console: Console | None = None) -> None:
        self._description = description
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TimeElapsedColumn(),
            TextColumn("{task.fields[status]}", style="dim"),
            console=console,
            transient=True,
        )
        self._task: TaskID | None = None

    def start(self) -> None:
        self._progress.start()
        self._task = self._progress.add_task(
            f"[green]{self._description}", total=100, status="starting..."
        )

    def stop(self) -> None:
        if self._task is not None:
            self._progress.stop()
            self._task = None

    def __enter__(self) -> SyncProgress:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.stop()

    def update(self, percent: int, status: str) -> None:
        if self._task is not None:
            self._progress.update(self._task, completed=percent, status=status)


class ConsoleNotifier(Notifier):
    """Notifier printing to a Rich console, optionally driving a progress bar."""

    def __init__(self, console: Console | None = None, progress: SyncProgress | None = None) -> None:
        self._console = console or Console(stderr=True)
        self._bar = progress

    def attach(self, progress: SyncProgress | None) -> None:
        self._bar = progress

    def info(self, message: str) -> None:
        super().info(message)
        self._console.print(message)

    def error(self, message: str) -> None:
        super().error(message)
        self._console.print(f"[red]{message}[/red]")

    def progress(self, percent: int, message: str) -> None:
        super().progress(percent, message)
        if self._bar is not None:
            self._bar.update(percent, message)
