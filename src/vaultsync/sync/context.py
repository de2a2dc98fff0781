"""Reconciliation context shared by the push and pull reconcilers.

Bundles the persisted sync state (settings, Operation Log, Remote-ID
Index), the remote and local collaborators, the notifier and the
process-wide syncing flag. Tests build isolated contexts directly.

Only :meth:`SyncContext.end_sync` advances the Sync Checkpoint.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from vaultsync.config import SettingsStore, should_sync_path
from vaultsync.local.store import LocalStore
from vaultsync.models import EntryKind, SyncConfig, SyncSettings, SyncStatus
from vaultsync.notices import Notifier, progress_percent, sync_message
from vaultsync.sync.index import RemoteIdIndex
from vaultsync.sync.oplog import OperationLog

if TYPE_CHECKING:
    from vaultsync.remote.drive import DriveClient

logger = logging.getLogger(__name__)


class SyncContext:
    """Explicit reconciliation state passed to both reconcilers.

    Args:
        config: Sync configuration.
        settings: Loaded settings; its maps back the log and the index.
        remote: Remote store client (``DriveClient`` or a test double).
        local: Local store.
        settings_store: Persistence for *settings*; ``None`` keeps them in memory.
        notifier: Sink for operator-facing notices.
    """

    def __init__(
        self,
        config: SyncConfig,
        settings: SyncSettings,
        remote: DriveClient,
        local: LocalStore,
        settings_store: SettingsStore | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.config = config
        self.settings = settings
        self.remote = remote
        self.local = local
        self.settings_store = settings_store
        self.notifier = notifier or Notifier()
        self.oplog = OperationLog(settings.operations, on_change=self.schedule_save)
        self.index = RemoteIdIndex(settings.drive_id_to_path)
        self.syncing = False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def is_vault_path(self, path: str) -> bool:
        return should_sync_path(path, self.config)

    def kind_of(self, path: str) -> EntryKind | None:
        return self.local.kind_of(path)

    def progress(self, percent: int, message: str) -> None:
        self.notifier.progress(percent, message)

    def phase_progress(self, low: int, high: int, completed: int, total: int) -> None:
        """Report *completed* of *total* within the ``low``..``high`` percent band."""
        self.notifier.progress(
            progress_percent(low, high, completed, total), sync_message(low, high, completed, total)
        )

    def schedule_save(self) -> None:
        if self.settings_store is not None:
            self.settings_store.schedule_save(self.settings)

    def save(self) -> None:
        if self.settings_store is not None:
            self.settings_store.save(self.settings)

    # ------------------------------------------------------------------
    # Sync lifecycle
    # ------------------------------------------------------------------

    async def start_sync(self) -> SyncStatus | None:
        """Take the syncing flag.

        Returns:
            ``None`` when the sync may proceed, otherwise the status that
            prevented it (``BUSY`` or ``OFFLINE``). Nothing is mutated on
            refusal.
        """
        if self.syncing:
            logger.info("Sync already in progress, rejecting")
            return SyncStatus.BUSY
        if not await self.remote.check_connection():
            self.notifier.error("You are not connected to the internet, so you cannot sync right now.")
            return SyncStatus.OFFLINE
        self.syncing = True
        self.progress(0, "Syncing (0%)")
        return None

    async def end_sync(self) -> bool:
        """Advance the Sync Checkpoint and persist settings synchronously.

        The checkpoint timestamp never moves backwards. The timestamp and a
        freshly obtained change token are committed together, or not at all.
        """
        token = await self.remote.get_changes_start_token()
        if not token:
            self.notifier.error("An error occurred fetching the remote change token.")
            return False
        now_ms = int(time.time() * 1000)
        self.settings.last_synced_at = max(self.settings.last_synced_at, now_ms)
        self.settings.changes_token = token
        self.save()
        logger.info("Checkpoint advanced to %s", self.settings.last_synced_iso)
        return True

    def release(self) -> None:
        self.syncing = False
