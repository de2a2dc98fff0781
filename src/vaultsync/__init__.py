"""Bidirectional sync between a local vault and Google Drive."""

__version__ = "0.1.0"

from vaultsync.models import (
    EntryKind,
    OperationKind,
    SyncConfig,
    SyncReport,
    SyncSettings,
    SyncStatus,
)

__all__ = [
    "EntryKind",
    "OperationKind",
    "SyncConfig",
    "SyncReport",
    "SyncSettings",
    "SyncStatus",
    "__version__",
]
