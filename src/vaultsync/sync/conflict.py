"""Conflict resolution between pending local operations and remote events.

Pure decision functions consulted by the pull reconciler. They never touch
the Operation Log, the index or the filesystem; the caller applies the
returned action.

Precedence rules:

* A local ``modify`` always beats a remote edit on the same path. There is
  no content merge, so the next push overwrites the remote edit. This is
  last-writer-wins by sync order and is logged as a data-loss risk.
* A local ``create`` meeting an existing remote object converges to
  ``modify`` so the next push updates instead of duplicating.
* A local ``delete`` meeting a remote object edited since the checkpoint
  restores the object locally (the newer remote content wins).
"""

from __future__ import annotations

import logging
from enum import Enum

from vaultsync.models import OperationKind, PathRef

logger = logging.getLogger(__name__)


class RemovalAction(str, Enum):
    """What to do with a local entry whose remote object was removed."""

    DELETE = "delete"
    KEEP = "keep"
    FLIP_TO_CREATE = "flip_to_create"
    DEFER_AS_CREATE = "defer_as_create"
    CLEAR_REDUNDANT = "clear_redundant"
    NOTHING = "nothing"


class UpsertAction(str, Enum):
    """What to do with a remote object modified since the checkpoint."""

    DOWNLOAD = "download"
    SKIP = "skip"
    FLIP_TO_MODIFY = "flip_to_modify"
    RESTORE = "restore"


def resolve_removal(
    ref: PathRef | None,
    pending: OperationKind | None,
    *,
    still_mapped: bool = False,
    has_surviving_children: bool = False,
) -> RemovalAction:
    """Decide the fate of a local entry whose remote object disappeared.

    Args:
        ref: The local entry, or ``None`` when nothing exists at the path.
        pending: The path's Operation Log state.
        still_mapped: Whether the path is mapped to another live remote id
            after the index refresh.
        has_surviving_children: For folders, whether any child is not
            itself being removed.
    """
    if ref is None:
        if pending is OperationKind.DELETE:
            return RemovalAction.CLEAR_REDUNDANT
        return RemovalAction.NOTHING

    if still_mapped:
        return RemovalAction.KEEP

    if ref.is_folder:
        if has_surviving_children:
            return RemovalAction.DEFER_AS_CREATE
        return RemovalAction.DELETE

    if pending is OperationKind.MODIFY:
        return RemovalAction.FLIP_TO_CREATE
    if pending is OperationKind.CREATE:
        return RemovalAction.KEEP
    return RemovalAction.DELETE


def resolve_upsert(path: str, pending: OperationKind | None, *, exists_locally: bool) -> UpsertAction:
    """Decide how a remote file modified since the checkpoint is applied.

    Args:
        path: Vault-relative path of the remote object.
        pending: The path's Operation Log state.
        exists_locally: Whether a local entry exists at the path.
    """
    if not exists_locally:
        if pending is OperationKind.DELETE:
            return UpsertAction.RESTORE
        return UpsertAction.DOWNLOAD

    if pending is OperationKind.MODIFY:
        logger.warning(
            "Remote edit to %s ignored: local modification pending and will overwrite it on push",
            path,
        )
        return UpsertAction.SKIP
    if pending is OperationKind.CREATE:
        return UpsertAction.FLIP_TO_MODIFY
    return UpsertAction.DOWNLOAD
