"""Pull reconciler: apply remote changes since the checkpoint locally.

Runs standalone or silently as the first step of a push. In silent mode it
neither takes the syncing flag nor advances the checkpoint; the caller
owns both.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

from vaultsync.models import (
    EntryKind,
    OperationKind,
    PathRef,
    RemoteObject,
    SyncReport,
    SyncStatus,
)
from vaultsync.sync.batching import (
    BatchResult,
    ancestors,
    deletion_batches,
    minimal_delete_roots,
    run_bounded,
    run_depth_batches,
)
from vaultsync.sync.conflict import RemovalAction, UpsertAction, resolve_removal, resolve_upsert
from vaultsync.sync.context import SyncContext

logger = logging.getLogger(__name__)


@dataclass
class _Removal:
    remote_id: str
    path: str
    ref: PathRef | None


@dataclass
class _PullState:
    report: SyncReport = field(default_factory=lambda: SyncReport(SyncStatus.COMPLETED))

    def fail(self, phase: str, result: BatchResult | None = None) -> None:
        if result is not None:
            self.report.errors += len(result.failed)
        if self.report.failed_phase is None:
            self.report.failed_phase = phase
        self.report.status = SyncStatus.FAILED


class PullReconciler:
    """Merges remote state since the last checkpoint into the local store.

    Usage::

        report = await PullReconciler(ctx).run()
        print(report.status, report.summary)
    """

    def __init__(self, ctx: SyncContext) -> None:
        self.ctx = ctx

    async def run(self, silent: bool = False) -> SyncReport:
        """Execute one pull.

        Args:
            silent: Push pre-step mode: no flag handling, no checkpoint,
                no completion notices.
        """
        if not silent:
            refused = await self.ctx.start_sync()
            if refused is not None:
                return SyncReport(refused)
        try:
            return await self._pull(silent)
        finally:
            if not silent:
                self.ctx.release()

    async def _pull(self, silent: bool) -> SyncReport:
        ctx = self.ctx
        state = _PullState()
        report = state.report

        # Step 1: Credentials
        if not await ctx.remote.ensure_token():
            ctx.notifier.error("Could not obtain a remote access token. Check your refresh token.")
            return SyncReport(SyncStatus.CREDENTIAL_ERROR, failed_phase="credentials")

        fresh_device = len(ctx.index) == 0

        # Step 2: Recently modified objects, including hidden-pattern ones
        recent = await self._fetch_recent()
        if recent is None:
            ctx.notifier.error("An error occurred fetching remote files.")
            return SyncReport(SyncStatus.FAILED, failed_phase="fetch")

        # Step 3: Removals from the change feed
        changes = await ctx.remote.get_changes(ctx.settings.changes_token)
        if changes is None:
            ctx.notifier.error("An error occurred fetching remote changes.")
            return SyncReport(SyncStatus.FAILED, failed_phase="changes")

        # Step 4: Resolve removals through the index
        removals: list[_Removal] = []
        for change in changes:
            if not change.removed:
                continue
            path = ctx.index.remove_id(change.file_id)
            if path is None:
                continue
            if not ctx.local.contains(path):
                logger.warning("Ignoring removal of %s: path is outside the vault", path)
                continue
            ref = ctx.local.ref(path)
            if ref is None and ctx.oplog.get(path) is OperationKind.DELETE:
                ctx.oplog.clear(path)
                logger.debug("Remote removal of %s already applied locally", path)
                continue
            removals.append(_Removal(change.file_id, path, ref))

        if not recent and not removals:
            if silent:
                return report
            if not await ctx.end_sync():
                return SyncReport(SyncStatus.FAILED, failed_phase="checkpoint")
            ctx.notifier.info("You're up to date!")
            return SyncReport(SyncStatus.UP_TO_DATE)

        # Step 5: Learn id/path associations from fresh metadata
        ctx.index.update_from(recent)

        vault_removals = [r for r in removals if ctx.is_vault_path(r.path)]
        internal_removals = [r for r in removals if not ctx.is_vault_path(r.path)]

        # Step 6: Deletion phase
        await self._delete_phase(vault_removals, state)
        ctx.progress(33, "Syncing (33%)")

        # Step 7: Upsert phase
        await self._upsert_phase(recent, state, fresh_device)

        # Step 8: Internal removals under the disposal policy
        await self._internal_removal_phase(internal_removals, state)

        # Step 9: Checkpoint
        if report.status is SyncStatus.FAILED:
            ctx.notifier.error(f"Pull failed during {report.failed_phase}; it will be retried on the next sync.")
            return report
        if silent:
            return report
        if not await ctx.end_sync():
            report.status = SyncStatus.FAILED
            report.failed_phase = "checkpoint"
            return report
        ctx.notifier.info("Files have been synced from the remote store!")
        return report

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    async def _fetch_recent(self) -> list[RemoteObject] | None:
        ctx = self.ctx
        recent = await ctx.remote.search_files(modified_after=ctx.settings.last_synced_iso)
        if recent is None:
            return None
        hidden = await ctx.remote.search_hidden_files()
        if hidden is None:
            return None

        checkpoint = ctx.settings.last_synced_datetime
        merged: dict[str, RemoteObject] = {}
        for obj in recent:
            merged[obj.id] = obj
        for obj in hidden:
            modified = obj.modified_at
            if modified is not None and modified > checkpoint:
                merged.setdefault(obj.id, obj)

        objects = []
        for obj in merged.values():
            if not obj.path:
                continue
            if not ctx.local.contains(obj.path):
                logger.warning("Ignoring remote object %s: path %r is outside the vault", obj.id, obj.path)
                continue
            objects.append(obj)
        logger.info("Found %d remote objects modified since %s", len(objects), ctx.settings.last_synced_iso)
        return objects

    # ------------------------------------------------------------------
    # Deletion phase
    # ------------------------------------------------------------------

    async def _delete_phase(self, removals: list[_Removal], state: _PullState) -> None:
        ctx = self.ctx
        ids_by_path = {r.path: r.remote_id for r in removals}
        to_delete: list[str] = []
        deleting: set[str] = set()

        # Deepest first, so a folder sees the decisions made for its children.
        for removal in sorted(removals, key=lambda r: (-r.path.count("/"), r.path)):
            ref = removal.ref
            surviving = False
            if ref is not None and ref.is_folder:
                surviving = any(
                    child not in deleting
                    for child in ctx.local.children(ref.path)
                    if ctx.is_vault_path(child)
                )
            action = resolve_removal(
                ref,
                ctx.oplog.get(removal.path),
                still_mapped=ctx.index.id_for(removal.path) is not None,
                has_surviving_children=surviving,
            )
            logger.debug("Remote removal of %s -> %s", removal.path, action.value)
            if action is RemovalAction.DELETE:
                to_delete.append(removal.path)
                deleting.add(removal.path)
            elif action in (RemovalAction.FLIP_TO_CREATE, RemovalAction.DEFER_AS_CREATE):
                ctx.oplog.set(removal.path, OperationKind.CREATE)
            elif action is RemovalAction.CLEAR_REDUNDANT:
                ctx.oplog.clear(removal.path)

        roots = minimal_delete_roots(to_delete)
        if not roots:
            return

        completed = 0

        async def _delete(path: str) -> bool:
            await ctx.local.trash(path)
            for pending in [p for p in ctx.oplog if p == path or p.startswith(path + "/")]:
                ctx.oplog.clear(pending)
            return True

        def _done(path: str, ok: bool) -> None:
            nonlocal completed
            completed += 1
            ctx.phase_progress(0, 33, completed, len(roots))

        result = await run_bounded(roots, _delete, ctx.config.max_concurrency, _done)
        state.report.deleted += len(result.succeeded)
        if not result.ok:
            for path in result.failed:
                ctx.notifier.error(f"Could not delete {path} locally.")
                # Keep the id so the replayed change feed retries this removal.
                ctx.index.record(ids_by_path[path], path)
            state.fail("delete", result)

    # ------------------------------------------------------------------
    # Upsert phase
    # ------------------------------------------------------------------

    async def _upsert_phase(
        self, recent: list[RemoteObject], state: _PullState, fresh_device: bool
    ) -> None:
        ctx = self.ctx
        report = state.report

        folders = [obj.path for obj in recent if obj.is_folder and obj.path]

        async def _ensure_folder(path: str) -> bool:
            ctx.oplog.clear(path)
            if ctx.local.kind_of(path) is EntryKind.FOLDER:
                return True
            await ctx.local.create_folder(path)
            self._reclaim_ancestors(path)
            report.downloaded += 1
            return True

        folder_result = await run_depth_batches(folders, _ensure_folder, ctx.config.max_concurrency)
        if not folder_result.ok:
            for path in folder_result.failed:
                ctx.notifier.error(f"Could not create folder {path} locally.")
            state.fail("upsert", folder_result)

        files = [obj for obj in recent if not obj.is_folder and obj.path]
        completed = 0

        async def _apply(obj: RemoteObject) -> bool:
            path = obj.path or ""
            if path == ctx.config.snapshot_path:
                return True
            if path == ctx.config.settings_path:
                return await self._bootstrap(obj, fresh_device)

            pending = ctx.oplog.get(path) if ctx.is_vault_path(path) else None
            action = resolve_upsert(path, pending, exists_locally=ctx.local.exists(path))
            if action is UpsertAction.SKIP:
                report.skipped += 1
                return True
            if action is UpsertAction.FLIP_TO_MODIFY:
                ctx.oplog.set(path, OperationKind.MODIFY)
                return True

            content = await ctx.remote.get_file(obj.id)
            if content is None:
                ctx.notifier.error(f"An error occurred downloading {path}.")
                return False
            await ctx.local.write(path, content, obj.modified_at)
            ctx.oplog.clear(path)
            self._reclaim_ancestors(path)
            report.downloaded += 1
            return True

        def _done(obj: RemoteObject, ok: bool) -> None:
            nonlocal completed
            completed += 1
            ctx.phase_progress(33, 100, completed, len(files))

        file_result = await run_bounded(files, _apply, ctx.config.max_concurrency, _done)
        if not file_result.ok:
            state.fail("upsert", file_result)

    def _reclaim_ancestors(self, path: str) -> None:
        """Cancel pending deletes of folders that a local write just re-created.

        A folder re-created after a local delete is back to ``none``.
        """
        for folder in ancestors(path):
            if self.ctx.oplog.get(folder) is OperationKind.DELETE:
                self.ctx.oplog.clear(folder)
                logger.info("Pending delete of %s cancelled: %s restored from remote", folder, path)

    async def _bootstrap(self, obj: RemoteObject, fresh_device: bool) -> bool:
        """Adopt another device's index from the remote settings mirror.

        The local settings file itself is never overwritten.
        """
        if not fresh_device:
            return True
        content = await self.ctx.remote.get_file(obj.id)
        if content is None:
            self.ctx.notifier.error("An error occurred downloading the remote settings snapshot.")
            return False
        try:
            mirror = json.loads(content)
        except ValueError as exc:
            logger.warning("Ignoring unreadable remote settings snapshot: %s", exc)
            return True
        id_to_path = {
            rid: path
            for rid, path in (mirror.get("driveIdToPath") or {}).items()
            if isinstance(path, str) and self.ctx.local.contains(path)
        }
        self.ctx.index.merge(id_to_path)
        logger.info("Bootstrapped %d index entries from remote settings", len(id_to_path))
        return True

    # ------------------------------------------------------------------
    # Internal removal phase
    # ------------------------------------------------------------------

    async def _internal_removal_phase(self, removals: list[_Removal], state: _PullState) -> None:
        ctx = self.ctx
        protected = {ctx.config.settings_path, ctx.config.snapshot_path}
        targets = [
            r.ref
            for r in removals
            if r.ref is not None
            and r.path not in protected
            and ctx.index.id_for(r.path) is None
            and ctx.local.exists(r.path)
        ]
        if not targets:
            return

        disposed: list[str] = []

        async def _dispose_file(path: str) -> bool:
            await ctx.local.trash(path)
            disposed.append(path)
            return True

        result = await run_bounded(
            [ref.path for ref in targets if not ref.is_folder],
            _dispose_file,
            ctx.config.max_concurrency,
        )

        async def _dispose_folder(path: str) -> bool:
            if ctx.local.children(path):
                logger.debug("Keeping non-empty internal folder %s", path)
                return True
            await ctx.local.trash(path)
            disposed.append(path)
            return True

        # Children before ancestors; a folder still holding entries stays.
        folders = [ref.path for ref in targets if ref.is_folder]
        for batch in deletion_batches(folders):
            result.extend(await run_bounded(batch, _dispose_folder, ctx.config.max_concurrency))

        # Prune now-empty ancestors, stopping at the config dir itself.
        boundary = ctx.config.config_dir
        candidates = {
            a
            for path in disposed
            for a in ancestors(path)
            if a.startswith(boundary + "/")
        }
        for folder in sorted(candidates, key=lambda p: (-p.count("/"), p)):
            try:
                await ctx.local.rmdir(folder)
            except OSError as exc:
                logger.warning("Could not prune %s: %s", folder, exc)

        state.report.deleted += len(disposed)
        if not result.ok:
            for path in result.failed:
                ctx.notifier.error(f"Could not remove internal file {path}.")
            state.fail("internal", result)
