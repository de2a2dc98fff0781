"""Hierarchy-aware batch scheduler.

Folders are grouped by depth (number of path segments). Creation consumes
the batches shallow-first so parents exist before children; deletion
consumes them deep-first so children go before parents. Within one batch
work runs with a bounded fan-out (``asyncio.Semaphore``) and the whole
batch settles before the next depth starts.

Files have no descendants and go straight through :func:`run_bounded`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CONCURRENCY = 10


def path_depth(path: str) -> int:
    """Number of ``/``-separated segments in a vault-relative path."""
    return len(path.split("/"))


def parent_path(path: str) -> str:
    """Parent of a vault-relative path (``""`` for top-level entries)."""
    return path.rsplit("/", 1)[0] if "/" in path else ""


def ancestors(path: str) -> list[str]:
    """All proper ancestors of *path*, shallowest first."""
    parts = path.split("/")
    return ["/".join(parts[:i]) for i in range(1, len(parts))]


def folders_to_batches(paths: Iterable[str]) -> list[list[str]]:
    """Group folder paths by depth, shallowest batch first.

    Duplicates are dropped and each batch is sorted so runs are repeatable.
    Depths with no folders produce no batch.
    """
    by_depth: dict[int, set[str]] = {}
    for path in paths:
        if path:
            by_depth.setdefault(path_depth(path), set()).add(path)
    return [sorted(by_depth[depth]) for depth in sorted(by_depth)]


def deletion_batches(paths: Iterable[str]) -> list[list[str]]:
    """Same grouping as :func:`folders_to_batches`, deepest batch first."""
    return list(reversed(folders_to_batches(paths)))


def minimal_delete_roots(paths: Iterable[str]) -> list[str]:
    """Reduce a deletion set to its top-most covering entries.

    Any path whose ancestor is also being deleted is implied by that
    ancestor's removal and is dropped.
    """
    kept: list[str] = []
    kept_set: set[str] = set()
    for path in sorted(set(paths), key=lambda p: (path_depth(p), p)):
        if any(a in kept_set for a in ancestors(path)):
            continue
        kept.append(path)
        kept_set.add(path)
    return kept


@dataclass
class BatchResult(Generic[T]):
    """Settled outcome of a bounded batch."""

    succeeded: list[T] = field(default_factory=list)
    failed: list[T] = field(default_factory=list)
    errors: list[BaseException] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def extend(self, other: BatchResult[T]) -> None:
        self.succeeded.extend(other.succeeded)
        self.failed.extend(other.failed)
        self.errors.extend(other.errors)


async def run_bounded(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[bool]],
    limit: int = DEFAULT_CONCURRENCY,
    on_done: Callable[[T, bool], None] | None = None,
) -> BatchResult[T]:
    """Run *worker* over *items* with at most *limit* in flight.

    A worker reports failure by returning ``False`` or raising; either way
    the remaining items still run to completion.

    Args:
        items: Work items.
        worker: Coroutine function returning ``True`` on success.
        limit: Fan-out cap.
        on_done: Optional callback invoked as each item settles.

    Returns:
        BatchResult partitioning the items.
    """
    result: BatchResult[T] = BatchResult()
    if not items:
        return result

    semaphore = asyncio.Semaphore(max(1, limit))

    async def _run(item: T) -> None:
        async with semaphore:
            try:
                ok = bool(await worker(item))
            except Exception as exc:
                logger.error("Batch item %s failed: %s", item, exc)
                result.errors.append(exc)
                ok = False
        (result.succeeded if ok else result.failed).append(item)
        if on_done is not None:
            on_done(item, ok)

    await asyncio.gather(*(_run(item) for item in items))
    return result


async def run_depth_batches(
    paths: Iterable[str],
    worker: Callable[[str], Awaitable[bool]],
    limit: int = DEFAULT_CONCURRENCY,
    *,
    descending: bool = False,
    on_done: Callable[[str, bool], None] | None = None,
) -> BatchResult[str]:
    """Run *worker* over folder paths one depth at a time.

    Each depth is a hard barrier. If any item of a depth fails, deeper
    (or, when *descending*, shallower) batches are not started.
    """
    batches = deletion_batches(paths) if descending else folders_to_batches(paths)
    total: BatchResult[str] = BatchResult()
    for depth_index, batch in enumerate(batches):
        outcome = await run_bounded(batch, worker, limit, on_done)
        total.extend(outcome)
        if not outcome.ok:
            logger.warning(
                "Stopping depth batches after batch %d: %d failures",
                depth_index + 1,
                len(outcome.failed),
            )
            break
    return total
