"""Local vault store and change detection."""

from vaultsync.local.store import LocalStore
from vaultsync.local.detector import LocalChangeDetector, ScanResult

__all__ = ["LocalChangeDetector", "LocalStore", "ScanResult"]
