"""CLI entry point for vaultsync.

Provides commands:
  - scan: Detect local changes and record them in the Operation Log
  - status: Show pending operations and the sync checkpoint
  - push: Push pending local changes (runs a silent pull first)
  - pull: Apply remote changes since the last sync
  - config: Manage the remote refresh token in the system keyring
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated

import httpx
import keyring
import typer
from keyring.errors import KeyringError
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from vaultsync.config import (
    KEY_NAME,
    SERVICE_NAME,
    SettingsStore,
    get_refresh_token,
    load_sync_config,
)
from vaultsync.exceptions import CredentialError
from vaultsync.local.detector import LocalChangeDetector
from vaultsync.local.store import LocalStore
from vaultsync.models import PendingOperation, SyncReport, SyncStatus
from vaultsync.notices import ConsoleNotifier, SyncProgress
from vaultsync.remote.auth import TokenManager
from vaultsync.remote.drive import DriveClient
from vaultsync.sync.context import SyncContext
from vaultsync.sync.oplog import OperationLog
from vaultsync.sync.pull import PullReconciler
from vaultsync.sync.push import PushDecision, PushReconciler

logger = logging.getLogger(__name__)

app = typer.Typer(
    help="vaultsync - keep a local vault and Google Drive in sync",
    rich_markup_mode="rich",
)
config_app = typer.Typer(help="Manage configuration (refresh token)")
app.add_typer(config_app, name="config")
console = Console()


@dataclass
class CliState:
    vault: Path


@app.callback()
def app_callback(
    ctx: typer.Context,
    vault: Annotated[
        Path,
        typer.Option("--vault", "-V", help="Path to the local vault"),
    ] = Path("."),
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show debug logging"),
    ] = False,
) -> None:
    """Configure logging and remember the vault path."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="%H:%M:%S",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    ctx.obj = CliState(vault=vault.expanduser().resolve())


# ---------------------------------------------------------------------------
# Engine wiring
# ---------------------------------------------------------------------------


@asynccontextmanager
async def _open_engine(
    vault: Path, notifier: ConsoleNotifier
) -> AsyncIterator[tuple[SyncContext, LocalChangeDetector]]:
    """Build a reconciliation context with a live Drive client.

    Raises:
        CredentialError: If no refresh token is configured.
    """
    config = load_sync_config(vault)
    settings_store = SettingsStore(config.vault_path / config.settings_path)
    settings = settings_store.load()
    refresh_token = get_refresh_token(settings)

    async with httpx.AsyncClient(timeout=config.request_timeout) as http:
        tokens = TokenManager(refresh_token, config, http)
        drive = DriveClient(config, tokens, http)
        local = LocalStore(config)
        ctx = SyncContext(config, settings, drive, local, settings_store, notifier)
        detector = LocalChangeDetector(local, ctx.oplog, config)
        local.observer = detector
        try:
            yield ctx, detector
        finally:
            detector.save()
            ctx.save()


def _print_report(title: str, report: SyncReport) -> None:
    counts = ", ".join(f"{k.capitalize()}: {v}" for k, v in report.summary.items())
    if report.ok:
        body = f"[green]{report.status.value.replace('_', ' ').capitalize()}.[/green] {counts}"
    else:
        phase = f" during [bold]{report.failed_phase}[/bold]" if report.failed_phase else ""
        body = f"[red]{report.status.value.replace('_', ' ').capitalize()}{phase}.[/red] {counts}"
    console.print(Panel(body, title=title))


def _operations_table(operations: list[PendingOperation]) -> Table:
    table = Table(title="Pending operations")
    table.add_column("Operation", style="bold")
    table.add_column("Path")
    table.add_column("Kind", style="dim")
    for op in operations:
        hidden = " [dim](hidden)[/dim]" if op.path.rsplit("/", 1)[-1].startswith(".") else ""
        table.add_row(op.kind.value.capitalize(), op.path + hidden, "folder" if op.is_directory else "file")
    return table


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def scan(ctx: typer.Context) -> None:
    """Detect local changes since the last scan and record them."""
    state: CliState = ctx.obj
    config = load_sync_config(state.vault)
    settings_store = SettingsStore(config.vault_path / config.settings_path)
    settings = settings_store.load()
    oplog = OperationLog(settings.operations)
    local = LocalStore(config)
    detector = LocalChangeDetector(local, oplog, config)

    result = detector.scan()
    settings_store.save(settings)
    console.print(f"[bold]Local changes:[/bold] {result.summary}")
    console.print(f"[bold]Pending operations:[/bold] {len(oplog)}")


@app.command()
def status(ctx: typer.Context) -> None:
    """Show pending operations and the last successful sync."""
    state: CliState = ctx.obj
    config = load_sync_config(state.vault)
    settings = SettingsStore(config.vault_path / config.settings_path).load()
    local = LocalStore(config)
    oplog = OperationLog(settings.operations)

    operations = oplog.snapshot(local.kind_of)
    if operations:
        console.print(_operations_table(operations))
    else:
        console.print("[green]No pending operations.[/green]")

    last = settings.last_synced_iso if settings.last_synced_at else "never"
    console.print(f"[bold]Vault:[/bold] {config.vault_path} ({config.vault_name})")
    console.print(f"[bold]Last synced:[/bold] {last}")
    console.print(f"[bold]Known remote objects:[/bold] {len(settings.drive_id_to_path)}")


@app.command()
def push(
    ctx: typer.Context,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Push without asking for confirmation"),
    ] = False,
    revert: Annotated[
        list[str] | None,
        typer.Option(
            "--revert",
            "-r",
            help="Undo the pending operation(s) at this path (and below) instead of pushing",
        ),
    ] = None,
) -> None:
    """Push pending local changes to the remote store.

    A silent pull runs first so concurrent remote edits are absorbed before
    this device overwrites them.

    Examples:
      vaultsync push                      # Review and confirm
      vaultsync push --yes                # No prompt
      vaultsync push -r drafts            # Undo everything pending under drafts/
    """
    state: CliState = ctx.obj
    reverts = list(revert or [])
    bar = SyncProgress("Push", console)
    notifier = ConsoleNotifier(console)

    def _confirm(operations: list[PendingOperation]) -> PushDecision | None:
        if operations:
            console.print(_operations_table(operations))
            if reverts:
                console.print(f"[yellow]Reverting:[/yellow] {', '.join(reverts)}")
            if not yes and not typer.confirm("Push these changes?", default=True):
                return None
        bar.start()
        notifier.attach(bar)
        return PushDecision(reverts=reverts)

    async def _run_push() -> SyncReport:
        async with _open_engine(state.vault, notifier) as (sync_ctx, detector):
            detector.scan()
            return await PushReconciler(sync_ctx).run(confirm=_confirm)

    try:
        report = asyncio.run(_run_push())
    except CredentialError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)
    finally:
        bar.stop()

    _print_report("Push Results", report)
    if not report.ok and report.status is not SyncStatus.CANCELLED:
        raise typer.Exit(code=1)


@app.command()
def pull(ctx: typer.Context) -> None:
    """Apply remote changes made since the last sync."""
    state: CliState = ctx.obj
    bar = SyncProgress("Pull", console)
    notifier = ConsoleNotifier(console, bar)

    async def _run_pull() -> SyncReport:
        async with _open_engine(state.vault, notifier) as (sync_ctx, detector):
            detector.scan()
            with bar:
                return await PullReconciler(sync_ctx).run()

    try:
        report = asyncio.run(_run_pull())
    except CredentialError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)

    _print_report("Pull Results", report)
    if not report.ok:
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# Config commands
# ---------------------------------------------------------------------------


@config_app.command("set-refresh-token")
def set_refresh_token(
    token: Annotated[
        str,
        typer.Argument(help="Google OAuth refresh token to store in the system keyring"),
    ],
) -> None:
    """Store the refresh token in the system keyring (service: vaultsync)."""
    if not token or token.strip() == "":
        console.print("[red]Error:[/red] Refresh token cannot be empty")
        raise typer.Exit(code=1)

    try:
        keyring.set_password(SERVICE_NAME, KEY_NAME, token)
    except KeyringError as e:
        console.print(f"[red]Error:[/red] Failed to store refresh token: {e}")
        raise typer.Exit(code=1)
    console.print(
        f"[green]✓[/green] Refresh token stored in system keyring (service: {SERVICE_NAME})"
    )


@config_app.command("get-refresh-token")
def show_refresh_token() -> None:
    """Display the stored refresh token (masked)."""
    token = keyring.get_password(SERVICE_NAME, KEY_NAME)
    if not token:
        console.print(
            "[yellow]No refresh token found in keyring.[/yellow]\n"
            "Set it with: [bold]vaultsync config set-refresh-token YOUR_TOKEN[/bold]"
        )
        raise typer.Exit(code=1)

    if len(token) > 8:
        masked = token[:8] + "*" * (len(token) - 8)
    else:
        masked = token[:2] + "*" * max(1, len(token) - 2)
    console.print(f"[green]Refresh token:[/green] {masked}")
    console.print(f"[dim](stored in service: {SERVICE_NAME})[/dim]")


@config_app.command("remove-refresh-token")
def remove_refresh_token() -> None:
    """Delete the stored refresh token from the system keyring."""
    if not keyring.get_password(SERVICE_NAME, KEY_NAME):
        console.print(
            "[yellow]Warning:[/yellow] No refresh token found in keyring.\n"
            "Nothing to remove."
        )
        return
    try:
        keyring.delete_password(SERVICE_NAME, KEY_NAME)
    except KeyringError as e:
        console.print(f"[red]Error:[/red] Failed to remove refresh token: {e}")
        raise typer.Exit(code=1)
    console.print(
        f"[green]✓[/green] Refresh token removed from system keyring (service: {SERVICE_NAME})"
    )
