"""Push reconciler: drain the Operation Log against the remote store.

A push either fully succeeds (log cleared, checkpoint advanced) or stops at
the failing phase with a surfaced error. Phases already applied stand and
entries of unfinished phases stay in the log; a retry is idempotent
against the Remote-ID Index.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from vaultsync.models import (
    EntryKind,
    OperationKind,
    PendingOperation,
    RemoteObject,
    SyncReport,
    SyncStatus,
    utc_now,
)
from vaultsync.sync.batching import (
    ancestors,
    minimal_delete_roots,
    parent_path,
    run_bounded,
    run_depth_batches,
)
from vaultsync.sync.context import SyncContext
from vaultsync.sync.pull import PullReconciler

logger = logging.getLogger(__name__)


@dataclass
class PushDecision:
    """Outcome of the confirmation step.

    Attributes:
        reverts: Paths whose pending operations (including every pending
            entry below them) are undone locally instead of pushed.
    """

    reverts: list[str] = field(default_factory=list)


# Receives the sorted pending operations; returns None to cancel.
ConfirmCallback = Callable[[list[PendingOperation]], PushDecision | None]


class PushReconciler:
    """Drains the Operation Log against the remote store.

    Usage::

        report = await PushReconciler(ctx).run(confirm=ask_user)
        if not report.ok:
            print(report.failed_phase)
    """

    def __init__(self, ctx: SyncContext) -> None:
        self.ctx = ctx

    async def run(self, confirm: ConfirmCallback | None = None) -> SyncReport:
        """Execute one push.

        Args:
            confirm: Optional confirmation hook. ``None`` pushes without
                asking.
        """
        refused = await self.ctx.start_sync()
        if refused is not None:
            return SyncReport(refused)
        try:
            return await self._push(confirm)
        finally:
            self.ctx.release()

    async def _push(self, confirm: ConfirmCallback | None) -> SyncReport:
        ctx = self.ctx
        report = SyncReport(SyncStatus.COMPLETED)

        if not await ctx.remote.ensure_token():
            ctx.notifier.error("Could not obtain a remote access token. Check your refresh token.")
            return SyncReport(SyncStatus.CREDENTIAL_ERROR, failed_phase="credentials")

        # Step 1: Remote root (lazy, idempotent)
        if await ctx.remote.get_root_folder_id() is None:
            ctx.notifier.error("An error occurred locating the remote root folder.")
            return _failed(report, "root")

        # Step 2: Confirmation and reverts
        if confirm is not None:
            decision = confirm(ctx.oplog.snapshot(ctx.kind_of))
            if decision is None:
                ctx.notifier.info("Push cancelled.")
                return SyncReport(SyncStatus.CANCELLED)
            if decision.reverts and not await self._revert(decision.reverts):
                return _failed(report, "revert")

        # Step 3: Absorb concurrent remote edits first
        pulled = await PullReconciler(ctx).run(silent=True)
        report.downloaded = pulled.downloaded
        if pulled.status is not SyncStatus.COMPLETED:
            report.errors += pulled.errors
            return _failed(report, f"pull:{pulled.failed_phase}")

        # Step 4: Partition the (possibly mutated) log
        deletes = ctx.oplog.paths_of(OperationKind.DELETE)
        creates = ctx.oplog.paths_of(OperationKind.CREATE)
        modifies = ctx.oplog.paths_of(OperationKind.MODIFY)

        # Step 5: Config objects whose local file is gone
        config_on_remote = await ctx.remote.search_files([{"config": "true"}])
        if config_on_remote is None:
            ctx.notifier.error("An error occurred fetching remote files.")
            return _failed(report, "delete")
        deletes.extend(self._orphaned_config(config_on_remote, set(deletes)))

        # Step 6: Deletes
        if deletes and not await self._delete(deletes, report):
            return _failed(report, "delete")
        ctx.progress(33, "Syncing (33%)")

        # Step 7: Creates
        if creates and not await self._create(creates, report):
            return _failed(report, "create")
        ctx.progress(66, "Syncing (66%)")

        # Step 8: Modifies
        if modifies and not await self._modify(modifies, report):
            return _failed(report, "modify")

        # Step 9: Internal config objects
        if not await self._sync_config_files():
            return _failed(report, "config")

        # Step 10: Settings mirror for bootstrapping other devices
        if not await self._upload_settings_mirror():
            return _failed(report, "settings")

        # Step 11: Clear log, advance checkpoint
        ctx.oplog.clear_all()
        if not await ctx.end_sync():
            return _failed(report, "checkpoint")
        ctx.progress(100, "Syncing (100%)")
        ctx.notifier.info("Sync complete!")
        return report

    # ------------------------------------------------------------------
    # Revert
    # ------------------------------------------------------------------

    async def _revert(self, roots: list[str]) -> bool:
        """Undo pending operations locally and drop them from the log."""
        ctx = self.ctx
        pending = ctx.oplog.items()
        targets = {
            path: op
            for path, op in pending
            if any(path == root or path.startswith(root + "/") for root in roots)
        }
        if not targets:
            return True

        ok = True

        # Undo create: delete the local entry (top-most entries only).
        created = [p for p, op in targets.items() if op is OperationKind.CREATE]
        for path in minimal_delete_roots(created):
            if ctx.local.exists(path):
                await ctx.local.trash(path)

        # Undo delete: recreate from the remote copy.
        deleted = [p for p, op in targets.items() if op is OperationKind.DELETE]
        if deleted and not await self._restore(deleted):
            ok = False
            for path in deleted:
                targets.pop(path, None)

        # Undo modify: overwrite with remote content.
        modified = [p for p, op in targets.items() if op is OperationKind.MODIFY]

        async def _refetch(path: str) -> bool:
            remote_id = ctx.index.id_for(path)
            if remote_id is None:
                ctx.notifier.error(f"Cannot revert {path}: no remote copy is known.")
                return False
            content, metadata = await asyncio.gather(
                ctx.remote.get_file(remote_id), ctx.remote.get_file_metadata(remote_id)
            )
            if content is None or metadata is None:
                ctx.notifier.error(f"An error occurred fetching {path} from the remote store.")
                return False
            await ctx.local.write(path, content, metadata.modified_at)
            return True

        result = await run_bounded(modified, _refetch, ctx.config.max_concurrency)
        for path in result.failed:
            targets.pop(path, None)
            ok = False

        for path in targets:
            ctx.oplog.clear(path)
        logger.info("Reverted %d pending operations", len(targets))
        return ok

    async def _restore(self, paths: list[str]) -> bool:
        ctx = self.ctx
        found = await ctx.remote.search_files([{"path": p} for p in paths])
        if found is None:
            ctx.notifier.error("An error occurred fetching remote files.")
            return False
        by_path: dict[str, RemoteObject] = {obj.path: obj for obj in found if obj.path}

        missing = [p for p in paths if p not in by_path]
        if missing:
            ctx.notifier.error(f"Cannot revert deletion of {', '.join(missing)}: not found remotely.")
            return False

        async def _folder(path: str) -> bool:
            await ctx.local.create_folder(path)
            return True

        async def _file(path: str) -> bool:
            obj = by_path[path]
            content = await ctx.remote.get_file(ctx.index.id_for(path) or obj.id)
            if content is None:
                ctx.notifier.error(f"An error occurred fetching {path} from the remote store.")
                return False
            await ctx.local.write(path, content, obj.modified_at)
            return True

        folders = [p for p in paths if by_path[p].is_folder]
        files = [p for p in paths if not by_path[p].is_folder]
        folder_result = await run_depth_batches(folders, _folder, ctx.config.max_concurrency)
        file_result = await run_bounded(files, _file, ctx.config.max_concurrency)
        return folder_result.ok and file_result.ok

    # ------------------------------------------------------------------
    # Deletes
    # ------------------------------------------------------------------

    def _orphaned_config(self, objects: list[RemoteObject], already: set[str]) -> list[str]:
        ctx = self.ctx
        orphaned: list[str] = []
        for obj in objects:
            path = obj.path
            if not path or path in already or path == ctx.config.settings_path:
                continue
            if not ctx.local.contains(path):
                logger.warning("Ignoring remote config object %s: path %r is outside the vault", obj.id, path)
                continue
            if ctx.local.exists(path):
                continue
            ctx.index.record(obj.id, path)
            orphaned.append(path)
        if orphaned:
            logger.info("Removing %d remote config objects with no local file", len(orphaned))
        return orphaned

    async def _delete(self, paths: list[str], report: SyncReport) -> bool:
        ctx = self.ctx
        ids = [rid for rid in (ctx.index.id_for(p) for p in paths) if rid]
        if ids and not await ctx.remote.batch_delete(ids):
            ctx.notifier.error("An error occurred deleting remote files.")
            return False
        for path in paths:
            ctx.index.remove_path(path, recursive=True)
            ctx.oplog.clear(path)
        report.deleted += len(paths)
        return True

    # ------------------------------------------------------------------
    # Creates and modifies
    # ------------------------------------------------------------------

    async def _create(self, paths: list[str], report: SyncReport) -> bool:
        ctx = self.ctx
        folders: list[str] = []
        files: list[str] = []
        for path in paths:
            kind = ctx.local.kind_of(path)
            if kind is None:
                logger.debug("Dropping create for vanished %s", path)
                ctx.oplog.clear(path)
            elif kind is EntryKind.FOLDER:
                folders.append(path)
            else:
                files.append(path)

        total = len(folders) + len(files)
        completed = 0

        def _done(path: str, ok: bool) -> None:
            nonlocal completed
            if ok:
                completed += 1
                ctx.phase_progress(33, 66, completed, total)

        async def _create_folder(path: str) -> bool:
            if ctx.index.id_for(path) is None:
                folder_id = await ctx.remote.create_folder(
                    path.rsplit("/", 1)[-1],
                    ctx.index.id_for(parent_path(path)),
                    {"path": path},
                    utc_now(),
                )
                if folder_id is None:
                    ctx.notifier.error(f"An error occurred creating remote folder {path}.")
                    return False
                ctx.index.record(folder_id, path)
            ctx.oplog.clear(path)
            report.created += 1
            return True

        result = await run_depth_batches(folders, _create_folder, ctx.config.max_concurrency, on_done=_done)
        if not result.ok:
            return False

        async def _create_file(path: str) -> bool:
            if not await self._upload(path):
                return False
            ctx.oplog.clear(path)
            report.created += 1
            return True

        result = await run_bounded(files, _create_file, ctx.config.max_concurrency, _done)
        return result.ok

    async def _modify(self, paths: list[str], report: SyncReport) -> bool:
        ctx = self.ctx
        files = []
        for path in paths:
            if ctx.local.kind_of(path) is EntryKind.FILE:
                files.append(path)
            else:
                ctx.oplog.clear(path)

        completed = 0

        def _done(path: str, ok: bool) -> None:
            nonlocal completed
            if ok:
                completed += 1
                ctx.phase_progress(66, 99, completed, len(files))

        async def _modify_file(path: str) -> bool:
            if not await self._upload(path):
                return False
            ctx.oplog.clear(path)
            report.modified += 1
            return True

        result = await run_bounded(files, _modify_file, ctx.config.max_concurrency, _done)
        return result.ok

    async def _upload(
        self,
        path: str,
        content: bytes | None = None,
        extra_properties: dict[str, str] | None = None,
    ) -> bool:
        """Update the remote object for *path*, or create it when none is indexed."""
        ctx = self.ctx
        if content is None:
            content = await ctx.local.read(path)
        remote_id = ctx.index.id_for(path)
        if remote_id is not None:
            if await ctx.remote.update_file(remote_id, content, utc_now()) is None:
                ctx.notifier.error(f"An error occurred updating remote file {path}.")
                return False
            return True

        properties = {"path": path, **(extra_properties or {})}
        new_id = await ctx.remote.upload_file(
            content,
            path.rsplit("/", 1)[-1],
            ctx.index.id_for(parent_path(path)),
            properties,
            utc_now(),
        )
        if new_id is None:
            ctx.notifier.error(f"An error occurred creating remote file {path}.")
            return False
        ctx.index.record(new_id, path)
        return True

    # ------------------------------------------------------------------
    # Internal config objects
    # ------------------------------------------------------------------

    async def _sync_config_files(self) -> bool:
        ctx = self.ctx
        paths = ctx.local.config_files_to_sync(ctx.settings.last_synced_at)

        folders = {a for path in paths for a in ancestors(path) if ctx.index.id_for(a) is None}

        async def _config_folder(path: str) -> bool:
            folder_id = await ctx.remote.create_folder(
                path.rsplit("/", 1)[-1],
                ctx.index.id_for(parent_path(path)),
                {"path": path, "config": "true"},
                utc_now(),
            )
            if folder_id is None:
                ctx.notifier.error(f"An error occurred creating remote folder {path}.")
                return False
            ctx.index.record(folder_id, path)
            return True

        result = await run_depth_batches(sorted(folders), _config_folder, ctx.config.max_concurrency)
        if not result.ok:
            return False

        async def _config_file(path: str) -> bool:
            return await self._upload(path, extra_properties={"config": "true"})

        files = [p for p in paths if p != ctx.config.settings_path and ctx.local.exists(p)]
        result = await run_bounded(files, _config_file, ctx.config.max_concurrency)
        return result.ok

    async def _upload_settings_mirror(self) -> bool:
        ctx = self.ctx
        content = json.dumps(ctx.settings.to_mirror(), indent=2).encode()
        return await self._upload(ctx.config.settings_path, content, {"config": "true"})


def _failed(report: SyncReport, phase: str) -> SyncReport:
    report.status = SyncStatus.FAILED
    report.failed_phase = phase
    return report
