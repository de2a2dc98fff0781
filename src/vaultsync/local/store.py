"""Local store over a vault directory tree.

All paths are vault-relative with ``/`` separators. Blocking filesystem
work runs in a worker thread so reconcilers can fan out with
``asyncio.gather``.

An optional observer is told about every entry this store writes or
removes, so the change detector's snapshot tracks sync-originated changes
and they never re-enter the Operation Log.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import Protocol

from vaultsync.config import LOCAL_TRASH_DIR
from vaultsync.models import DisposalPolicy, EntryKind, PathRef, SyncConfig

logger = logging.getLogger(__name__)


class StoreObserver(Protocol):
    def observe(self, path: str) -> None: ...

    def forget(self, path: str) -> None: ...


class LocalStore:
    """Hierarchical file store rooted at ``config.vault_path``.

    Args:
        config: Sync configuration (vault root, disposal policy, trash dir).
        observer: Notified after each write (``observe``) and removal
            (``forget``).
    """

    def __init__(self, config: SyncConfig, observer: StoreObserver | None = None) -> None:
        self.config = config
        self.root = Path(config.vault_path).resolve()
        self.observer = observer

    # ------------------------------------------------------------------
    # Path helpers
    # ------------------------------------------------------------------

    def resolve(self, path: str) -> Path:
        """Absolute filesystem path for a vault-relative *path*.

        Raises:
            ValueError: If *path* escapes the vault root.
        """
        full = (self.root / path).resolve()
        if full != self.root and self.root not in full.parents:
            raise ValueError(f"Path escapes vault: {path}")
        return full

    def contains(self, path: str) -> bool:
        """Whether *path* names an entry strictly inside the vault root."""
        try:
            return self.resolve(path) != self.root
        except ValueError:
            return False

    def relative(self, full: Path) -> str:
        return full.relative_to(self.root).as_posix()

    # ------------------------------------------------------------------
    # Queries (synchronous, cheap)
    # ------------------------------------------------------------------

    def exists(self, path: str) -> bool:
        return self.resolve(path).exists()

    def kind_of(self, path: str) -> EntryKind | None:
        full = self.resolve(path)
        if full.is_dir():
            return EntryKind.FOLDER
        if full.is_file():
            return EntryKind.FILE
        return None

    def ref(self, path: str) -> PathRef | None:
        kind = self.kind_of(path)
        return PathRef(path, kind) if kind is not None else None

    def children(self, path: str) -> list[str]:
        """Direct children of folder *path*, sorted."""
        full = self.resolve(path)
        if not full.is_dir():
            return []
        return sorted(self.relative(child) for child in full.iterdir())

    def walk(self) -> list[PathRef]:
        """Every entry under the vault root, parents before children."""
        refs: list[PathRef] = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames.sort()
            base = Path(dirpath)
            for name in dirnames:
                refs.append(PathRef(self.relative(base / name), EntryKind.FOLDER))
            for name in sorted(filenames):
                refs.append(PathRef(self.relative(base / name), EntryKind.FILE))
        return refs

    def config_files_to_sync(self, last_synced_at: int) -> list[str]:
        """Internal config files needing remote sync.

        Files under the config dir modified after *last_synced_at* (epoch
        ms), excluding the change-detection snapshot. The settings file is
        always included.
        """
        config_root = self.resolve(self.config.config_dir)
        paths: set[str] = {self.config.settings_path}
        if config_root.is_dir():
            for full in config_root.rglob("*"):
                if not full.is_file() or full.suffix == ".tmp":
                    continue
                rel = self.relative(full)
                if rel == self.config.snapshot_path:
                    continue
                if full.stat().st_mtime * 1000 > last_synced_at:
                    paths.add(rel)
        return sorted(paths)

    # ------------------------------------------------------------------
    # Content
    # ------------------------------------------------------------------

    async def read(self, path: str) -> bytes:
        return await asyncio.to_thread(self.resolve(path).read_bytes)

    async def write(self, path: str, data: bytes, mtime: datetime | None = None) -> None:
        """Create or overwrite a file, creating missing parents.

        Args:
            path: Vault-relative file path.
            data: Whole-file content.
            mtime: Modification time to stamp on the file (remote value).
        """
        full = self.resolve(path)

        def _write() -> list[str]:
            created = self._make_parents(full.parent)
            full.write_bytes(data)
            if mtime is not None:
                ts = mtime.timestamp()
                os.utime(full, (ts, ts))
            return created

        created = await asyncio.to_thread(_write)
        for folder in created:
            self._observe(folder)
        self._observe(path)
        logger.debug("Wrote %s (%d bytes)", path, len(data))

    async def create_folder(self, path: str) -> None:
        full = self.resolve(path)
        created = await asyncio.to_thread(self._make_parents, full)
        for folder in created:
            self._observe(folder)
        logger.debug("Created folder %s", path)

    def _make_parents(self, full: Path) -> list[str]:
        """mkdir -p returning the vault-relative folders that were created."""
        missing: list[Path] = []
        current = full
        while current != self.root and not current.exists():
            missing.append(current)
            current = current.parent
        for folder in reversed(missing):
            folder.mkdir(exist_ok=True)
        return [self.relative(folder) for folder in reversed(missing)]

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    async def remove(self, path: str) -> None:
        """Permanently remove a file or a folder tree."""
        full = self.resolve(path)

        def _remove() -> None:
            if full.is_dir():
                shutil.rmtree(full)
            else:
                full.unlink()

        await asyncio.to_thread(_remove)
        self._forget(path)
        logger.debug("Removed %s", path)

    async def rmdir(self, path: str) -> bool:
        """Remove folder *path* only if empty; returns whether it was removed."""
        full = self.resolve(path)
        if not full.is_dir() or any(full.iterdir()):
            return False
        await asyncio.to_thread(full.rmdir)
        self._forget(path)
        logger.debug("Removed empty folder %s", path)
        return True

    async def trash(self, path: str, policy: DisposalPolicy | None = None) -> None:
        """Dispose of an entry according to the disposal policy.

        ``local`` moves it under ``<vault>/.trash``, ``system`` moves it into
        the configured system trash directory, ``permanent`` deletes it.
        """
        policy = policy or self.config.disposal_policy
        if policy is DisposalPolicy.PERMANENT:
            await self.remove(path)
            return

        full = self.resolve(path)
        if policy is DisposalPolicy.LOCAL:
            target = self.root / LOCAL_TRASH_DIR / path
        else:
            target = Path(self.config.system_trash_dir) / full.name

        def _move() -> Path:
            destination = _unique_destination(target)
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(full), str(destination))
            return destination

        destination = await asyncio.to_thread(_move)
        self._forget(path)
        logger.debug("Trashed %s -> %s (%s)", path, destination, policy.value)

    # ------------------------------------------------------------------
    # Observer hooks
    # ------------------------------------------------------------------

    def _observe(self, path: str) -> None:
        if self.observer is not None:
            self.observer.observe(path)

    def _forget(self, path: str) -> None:
        if self.observer is not None:
            self.observer.forget(path)


def _unique_destination(target: Path) -> Path:
    """Return *target*, or ``name 2``, ``name 3``... if it is taken."""
    if not target.exists():
        return target
    counter = 2
    while True:
        candidate = target.with_name(f"{target.stem} {counter}{target.suffix}")
        if not candidate.exists():
            return candidate
        counter += 1
