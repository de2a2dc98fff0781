"""Operation Log: per-path pending local mutations awaiting push.

Each path holds at most one pending kind. Local events move a path through
the four-state machine below; the ``none`` state is never stored, so a
cancelling transition removes the entry outright.

The machine is purely a transition table -- it does NOT touch the log or
the filesystem. :func:`next_state` is the pure function used by the live
change detector, by reconcilers and directly by tests.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from enum import Enum

from statemachine import State, StateMachine

from vaultsync.models import EntryKind, OperationKind, PendingOperation

logger = logging.getLogger(__name__)


class LocalEvent(str, Enum):
    """Local mutation events fed into the state machine."""

    CREATED = "created"
    DELETED = "deleted"
    MODIFIED = "modified"


class PendingOperationSM(StateMachine):
    """Four-state pending-operation machine for a single path.

    States:
        none   -- nothing pending (never persisted).
        create -- path is new locally and unknown remotely.
        modify -- path exists on both sides, local content changed.
        delete -- path was removed locally.
    """

    none = State("none", initial=True, value="none")
    create = State("create", value="create")
    modify = State("modify", value="modify")
    delete = State("delete", value="delete")

    # A file that was pending delete and reappears existed remotely: edit.
    # A folder that reappears simply cancels its delete.
    created = (
        none.to(create)
        | delete.to(modify, cond="is_file")
        | delete.to(none, unless="is_file")
        | create.to.itself()
        | modify.to.itself()
    )
    deleted = (
        create.to(none)
        | none.to(delete)
        | modify.to(delete)
        | delete.to.itself()
    )
    modified = (
        none.to(modify)
        | delete.to(modify)
        | create.to.itself()
        | modify.to.itself()
    )

    def is_file(self, is_directory: bool = False) -> bool:
        return not is_directory


def next_state(
    current: OperationKind | None,
    event: LocalEvent,
    *,
    is_directory: bool = False,
) -> OperationKind | None:
    """Apply one local event to a path's pending state.

    Args:
        current: The path's pending kind, or ``None`` when nothing is pending.
        event: The local mutation.
        is_directory: Whether the path is a folder.

    Returns:
        The new pending kind, or ``None`` when the entry cancels out.
    """
    sm = PendingOperationSM(start_value=current.value if current else "none")
    sm.send(event.value, is_directory=is_directory)
    value = sm.current_state_value
    return None if value == "none" else OperationKind(value)


class OperationLog:
    """Path-keyed pending-mutation log backed by the settings' operations map.

    The mapping is shared with :class:`~vaultsync.models.SyncSettings`, so
    persisting the settings persists the log.

    Args:
        operations: The settings' ``operations`` dict (mutated in place).
        on_change: Optional callback fired after every mutation, used to
            schedule a debounced settings write.
    """

    def __init__(
        self,
        operations: dict[str, OperationKind],
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self._ops = operations
        self._on_change = on_change

    # ------------------------------------------------------------------
    # Mapping access
    # ------------------------------------------------------------------

    def get(self, path: str) -> OperationKind | None:
        return self._ops.get(path)

    def set(self, path: str, kind: OperationKind) -> None:
        self._ops[path] = kind
        self._changed()

    def clear(self, path: str) -> None:
        if self._ops.pop(path, None) is not None:
            self._changed()

    def clear_all(self) -> None:
        self._ops.clear()
        self._changed()

    def __contains__(self, path: object) -> bool:
        return path in self._ops

    def __len__(self) -> int:
        return len(self._ops)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._ops))

    def items(self) -> list[tuple[str, OperationKind]]:
        """Entries sorted by path (stable order for confirmation and tests)."""
        return sorted(self._ops.items())

    def paths_of(self, kind: OperationKind) -> list[str]:
        return [path for path, op in self.items() if op is kind]

    # ------------------------------------------------------------------
    # Local mutation events
    # ------------------------------------------------------------------

    def apply(self, path: str, event: LocalEvent, *, is_directory: bool = False) -> OperationKind | None:
        """Run *event* through the state machine and store the result."""
        before = self._ops.get(path)
        after = next_state(before, event, is_directory=is_directory)
        if after is None:
            self._ops.pop(path, None)
        else:
            self._ops[path] = after
        if before is not after:
            logger.debug(
                "%s %s: %s -> %s",
                event.value,
                path,
                before.value if before else "none",
                after.value if after else "none",
            )
            self._changed()
        return after

    def record_create(self, path: str, *, is_directory: bool = False) -> OperationKind | None:
        return self.apply(path, LocalEvent.CREATED, is_directory=is_directory)

    def record_delete(self, path: str, *, is_directory: bool = False) -> OperationKind | None:
        return self.apply(path, LocalEvent.DELETED, is_directory=is_directory)

    def record_modify(self, path: str) -> OperationKind | None:
        return self.apply(path, LocalEvent.MODIFIED)

    def record_rename(self, old_path: str, new_path: str, *, is_directory: bool = False) -> None:
        """A rename is a delete of the old path followed by a create of the new one."""
        self.record_delete(old_path, is_directory=is_directory)
        self.record_create(new_path, is_directory=is_directory)

    # ------------------------------------------------------------------
    # Snapshots for reconcilers
    # ------------------------------------------------------------------

    def snapshot(self, kind_of: Callable[[str], EntryKind | None]) -> list[PendingOperation]:
        """Sorted, stable list of pending entries tagged with entry kind.

        Args:
            kind_of: Resolves a path to its local entry kind (``None`` when
                the path no longer exists locally, e.g. pending deletes).
        """
        return [
            PendingOperation(path=path, kind=op, is_directory=kind_of(path) is EntryKind.FOLDER)
            for path, op in self.items()
        ]

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()
