"""Remote-ID Index: remote object id <-> local path.

The forward map (id -> path) is the persisted ``driveIdToPath`` setting.
The inverse (path -> id) is derived lazily. ``record`` keeps it in step;
removals rebuild it on demand. A path maps to at most one live id:
recording a new id for a path drops the previous one.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from vaultsync.models import RemoteObject

logger = logging.getLogger(__name__)


class RemoteIdIndex:
    """Bidirectional id/path index over the settings' ``driveIdToPath`` map.

    Args:
        id_to_path: The settings' mapping (mutated in place).
    """

    def __init__(self, id_to_path: dict[str, str]) -> None:
        self._id_to_path = id_to_path
        self._path_to_id: dict[str, str] | None = None

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def path_for(self, remote_id: str) -> str | None:
        return self._id_to_path.get(remote_id)

    def id_for(self, path: str) -> str | None:
        return self.inverse().get(path)

    def inverse(self) -> dict[str, str]:
        """Path -> id map, rebuilt lazily after removals."""
        if self._path_to_id is None:
            self._path_to_id = {path: rid for rid, path in self._id_to_path.items()}
        return self._path_to_id

    def __contains__(self, remote_id: object) -> bool:
        return remote_id in self._id_to_path

    def __len__(self) -> int:
        return len(self._id_to_path)

    def items(self) -> list[tuple[str, str]]:
        return list(self._id_to_path.items())

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def record(self, remote_id: str, path: str) -> None:
        """Associate *remote_id* with *path*, replacing any other id for that path."""
        inverse = self.inverse()
        stale = inverse.get(path)
        if stale == remote_id:
            return
        if stale is not None:
            del self._id_to_path[stale]
            logger.debug("Replaced id %s for %s with %s", stale, path, remote_id)
        previous = self._id_to_path.get(remote_id)
        if previous is not None and inverse.get(previous) == remote_id:
            del inverse[previous]
        self._id_to_path[remote_id] = path
        inverse[path] = remote_id

    def remove_id(self, remote_id: str) -> str | None:
        """Drop an id; returns the path it mapped to."""
        path = self._id_to_path.pop(remote_id, None)
        if path is not None:
            self._path_to_id = None
        return path

    def remove_path(self, path: str, *, recursive: bool = False) -> list[str]:
        """Drop the id for *path* (and for descendants when *recursive*).

        Returns:
            The removed ids.
        """
        prefix = path + "/"
        removed = [
            rid
            for rid, p in self._id_to_path.items()
            if p == path or (recursive and p.startswith(prefix))
        ]
        for rid in removed:
            del self._id_to_path[rid]
        if removed:
            self._path_to_id = None
        return removed

    def update_from(self, objects: Iterable[RemoteObject]) -> int:
        """Learn or confirm id/path associations from freshly fetched metadata.

        Returns:
            Number of objects that carried a path annotation.
        """
        learned = 0
        for obj in objects:
            if obj.path:
                self.record(obj.id, obj.path)
                learned += 1
        return learned

    def merge(self, id_to_path: dict[str, str]) -> None:
        """Adopt entries from another device's snapshot without clobbering local ones."""
        known_paths = set(self.inverse())
        for rid, path in id_to_path.items():
            if rid not in self._id_to_path and path not in known_paths:
                self._id_to_path[rid] = path
                known_paths.add(path)
        self._path_to_id = None
