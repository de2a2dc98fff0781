"""Local change detector: snapshot diff feeding the Operation Log.

A CLI process has no live filesystem-watch callbacks, so local mutations
are discovered by diffing the vault tree against the snapshot saved at the
end of the previous scan. Every difference is replayed through the
Operation Log's state machine, exactly as a watch callback would.

The detector is also the :class:`~vaultsync.local.store.LocalStore`
observer: entries the reconcilers write or remove are folded into the
snapshot immediately so they are not reported as local edits later.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from vaultsync.config import should_sync_path
from vaultsync.local.store import LocalStore
from vaultsync.models import EntryKind, SyncConfig
from vaultsync.sync.oplog import OperationLog

logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    """Counts of local events emitted by one scan."""

    created: int = 0
    deleted: int = 0
    modified: int = 0

    @property
    def summary(self) -> str:
        return f"created={self.created}, deleted={self.deleted}, modified={self.modified}"


class LocalChangeDetector:
    """Snapshot-based detector of create / delete / modify events.

    Usage::

        detector = LocalChangeDetector(store, oplog, config)
        store.observer = detector
        result = detector.scan()
        print(result.summary)
    """

    def __init__(self, store: LocalStore, oplog: OperationLog, config: SyncConfig) -> None:
        self.store = store
        self.oplog = oplog
        self.config = config
        self._snapshot_file = store.root / config.snapshot_path
        self._entries: dict[str, dict] | None = None
        self._dirty = False

    # ------------------------------------------------------------------
    # Snapshot persistence
    # ------------------------------------------------------------------

    @property
    def entries(self) -> dict[str, dict]:
        if self._entries is None:
            self._entries = self._load()
        return self._entries

    def _load(self) -> dict[str, dict]:
        if not self._snapshot_file.exists():
            return {}
        try:
            return json.loads(self._snapshot_file.read_text())
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Ignoring unreadable snapshot %s: %s", self._snapshot_file, exc)
            return {}

    def save(self) -> None:
        """Write the snapshot atomically if it changed."""
        if not self._dirty:
            return
        self._snapshot_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._snapshot_file.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(self.entries, indent=2, sort_keys=True))
        tmp_path.replace(self._snapshot_file)
        self._dirty = False

    # ------------------------------------------------------------------
    # Scan
    # ------------------------------------------------------------------

    def current_state(self) -> dict[str, dict]:
        """Describe every tracked entry currently on disk."""
        state: dict[str, dict] = {}
        for ref in self.store.walk():
            if should_sync_path(ref.path, self.config):
                state[ref.path] = _describe(self.store.resolve(ref.path), ref.kind)
        return state

    def scan(self) -> ScanResult:
        """Diff the tree against the snapshot and record local events.

        Creates are replayed shallow-first and deletes deep-first so the
        Operation Log sees the same order a watcher would.
        """
        previous = self.entries
        current = self.current_state()
        result = ScanResult()

        removed = [p for p in previous if p not in current]
        added = [p for p in current if p not in previous]
        for path in set(previous) & set(current):
            before, after = previous[path], current[path]
            if before["kind"] != after["kind"]:
                removed.append(path)
                added.append(path)
            elif after["kind"] == EntryKind.FILE.value and (
                before.get("mtime") != after.get("mtime") or before.get("size") != after.get("size")
            ):
                self.oplog.record_modify(path)
                result.modified += 1

        for path in sorted(removed, key=lambda p: (-p.count("/"), p)):
            self.oplog.record_delete(path, is_directory=previous[path]["kind"] == EntryKind.FOLDER.value)
            result.deleted += 1
        for path in sorted(added, key=lambda p: (p.count("/"), p)):
            self.oplog.record_create(path, is_directory=current[path]["kind"] == EntryKind.FOLDER.value)
            result.created += 1

        if current != previous:
            self._entries = current
            self._dirty = True
        self.save()

        logger.info("Local scan: %s", result.summary)
        return result

    # ------------------------------------------------------------------
    # LocalStore observer
    # ------------------------------------------------------------------

    def observe(self, path: str) -> None:
        """Fold an entry written by the sync engine into the snapshot."""
        if not should_sync_path(path, self.config):
            return
        kind = self.store.kind_of(path)
        if kind is None:
            return
        self.entries[path] = _describe(self.store.resolve(path), kind)
        self._dirty = True

    def forget(self, path: str) -> None:
        """Drop an entry (and its descendants) removed by the sync engine."""
        prefix = path + "/"
        stale = [p for p in self.entries if p == path or p.startswith(prefix)]
        for p in stale:
            del self.entries[p]
        if stale:
            self._dirty = True


def _describe(full: Path, kind: EntryKind) -> dict:
    if kind is EntryKind.FOLDER:
        return {"kind": kind.value}
    stat = full.stat()
    return {"kind": kind.value, "mtime": stat.st_mtime, "size": stat.st_size}
