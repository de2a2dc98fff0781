"""Tests for the pull reconciler against the in-memory remote store.

Covers:
  - Fresh pulls, idempotence and the up-to-date short circuit
  - Remote removals under each pending local state
  - Conflict precedence for remote edits
  - Settings-mirror bootstrap and internal config files
  - Refusals and failure handling (checkpoint never advances on failure)
"""

from __future__ import annotations

import json
import shutil

from conftest import later

from vaultsync.models import OperationKind, RemoteChange, SyncStatus
from vaultsync.sync.pull import PullReconciler


async def _pull(ctx):
    return await PullReconciler(ctx).run()


# ======================================================================
# Applying remote state
# ======================================================================


class TestFreshPull:
    """First pull into an empty vault."""

    async def test_downloads_folders_and_files(self, ctx, drive, vault, notifier):
        folder_id = drive.add("notes", is_folder=True)
        file_id = drive.add("notes/a.md", b"hello")

        report = await _pull(ctx)

        assert report.status is SyncStatus.COMPLETED
        assert (vault / "notes" / "a.md").read_bytes() == b"hello"
        assert ctx.index.id_for("notes") == folder_id
        assert ctx.index.id_for("notes/a.md") == file_id
        assert ctx.settings.changes_token == str(len(drive.changes))
        assert ctx.settings.last_synced_at > 0
        assert "Files have been synced from the remote store!" in notifier.infos
        assert not ctx.syncing

    async def test_folder_created_before_child_and_log_cleared(self, ctx, drive, vault, monkeypatch):
        drive.add("X", is_folder=True)
        drive.add("X/y.md", b"y")
        ctx.oplog.set("X", OperationKind.CREATE)
        ctx.oplog.set("X/y.md", OperationKind.MODIFY)
        applied: list[str] = []
        create_folder, write = ctx.local.create_folder, ctx.local.write

        async def _create_folder(path):
            applied.append(path)
            await create_folder(path)

        async def _write(path, data, mtime=None):
            applied.append(path)
            await write(path, data, mtime)

        monkeypatch.setattr(ctx.local, "create_folder", _create_folder)
        monkeypatch.setattr(ctx.local, "write", _write)

        report = await _pull(ctx)

        assert report.status is SyncStatus.COMPLETED
        assert applied == ["X", "X/y.md"]
        assert (vault / "X" / "y.md").read_bytes() == b"y"
        assert len(ctx.oplog) == 0

    async def test_downloaded_entries_are_not_local_changes(self, ctx, drive, detector):
        drive.add("notes", is_folder=True)
        drive.add("notes/a.md", b"hello")

        await _pull(ctx)
        result = detector.scan()

        assert (result.created, result.deleted, result.modified) == (0, 0, 0)
        assert len(ctx.oplog) == 0

    async def test_second_pull_is_up_to_date(self, ctx, drive, vault, notifier):
        drive.add("a.md", b"hello")
        await _pull(ctx)

        report = await _pull(ctx)

        assert report.status is SyncStatus.UP_TO_DATE
        assert "You're up to date!" in notifier.infos
        assert (vault / "a.md").read_bytes() == b"hello"

    async def test_hidden_objects_are_downloaded(self, ctx, drive, vault):
        drive.add(".obsidian/app.json", b"{}")

        await _pull(ctx)

        assert (vault / ".obsidian" / "app.json").read_bytes() == b"{}"


# ======================================================================
# Remote removals
# ======================================================================


class TestRemoteRemovals:
    """Remote objects removed since the checkpoint."""

    async def test_removed_file_is_trashed_locally(self, ctx, drive, vault, detector):
        file_id = drive.add("a.md", b"hello")
        await _pull(ctx)

        drive.remove(file_id)
        report = await _pull(ctx)

        assert report.status is SyncStatus.COMPLETED
        assert report.deleted == 1
        assert not (vault / "a.md").exists()
        assert (vault / ".trash" / "a.md").read_bytes() == b"hello"
        assert ctx.index.id_for("a.md") is None
        assert detector.scan().deleted == 0

    async def test_removed_folder_tree_is_trashed_once(self, ctx, drive, vault):
        folder_id = drive.add("dir", is_folder=True)
        file_id = drive.add("dir/a.md", b"x")
        await _pull(ctx)

        drive.remove(file_id)
        drive.remove(folder_id)
        report = await _pull(ctx)

        assert report.deleted == 1
        assert not (vault / "dir").exists()
        assert (vault / ".trash" / "dir" / "a.md").exists()

    async def test_pending_modify_flips_to_create(self, ctx, drive, vault, detector):
        file_id = drive.add("a.md", b"hello")
        await _pull(ctx)
        (vault / "a.md").write_bytes(b"changed locally")
        detector.scan()
        assert ctx.oplog.get("a.md") is OperationKind.MODIFY

        drive.remove(file_id)
        await _pull(ctx)

        assert (vault / "a.md").read_bytes() == b"changed locally"
        assert ctx.oplog.get("a.md") is OperationKind.CREATE

    async def test_folder_with_new_local_child_is_kept_as_create(self, ctx, drive, vault, detector):
        folder_id = drive.add("dir", is_folder=True)
        file_id = drive.add("dir/a.md", b"x")
        await _pull(ctx)
        (vault / "dir" / "new.md").write_bytes(b"new")
        detector.scan()

        drive.remove(file_id)
        drive.remove(folder_id)
        await _pull(ctx)

        assert not (vault / "dir" / "a.md").exists()
        assert (vault / "dir" / "new.md").exists()
        assert ctx.oplog.get("dir") is OperationKind.CREATE
        assert ctx.oplog.get("dir/new.md") is OperationKind.CREATE

    async def test_pending_delete_is_cleared_as_redundant(self, ctx, drive, vault, detector):
        file_id = drive.add("a.md", b"hello")
        await _pull(ctx)
        (vault / "a.md").unlink()
        detector.scan()
        assert ctx.oplog.get("a.md") is OperationKind.DELETE

        drive.remove(file_id)
        report = await _pull(ctx)

        assert report.status is SyncStatus.UP_TO_DATE
        assert len(ctx.oplog) == 0

    async def test_local_failure_keeps_removal_for_retry(self, ctx, drive, vault, monkeypatch):
        file_id = drive.add("a.md", b"hello")
        await _pull(ctx)
        token_before = ctx.settings.changes_token
        synced_before = ctx.settings.last_synced_at
        drive.remove(file_id)

        async def _broken_trash(path, policy=None):
            raise OSError("disk full")

        monkeypatch.setattr(ctx.local, "trash", _broken_trash)
        report = await _pull(ctx)

        assert report.status is SyncStatus.FAILED
        assert report.failed_phase == "delete"
        assert ctx.index.id_for("a.md") == file_id
        assert ctx.settings.changes_token == token_before
        assert ctx.settings.last_synced_at == synced_before

        monkeypatch.undo()
        report = await _pull(ctx)

        assert report.status is SyncStatus.COMPLETED
        assert not (vault / "a.md").exists()


# ======================================================================
# Remote edits against pending local work
# ======================================================================


class TestConflicts:
    """Precedence between pending local operations and remote edits."""

    async def test_local_modify_beats_remote_edit(self, ctx, drive, vault, detector):
        file_id = drive.add("a.md", b"v1")
        await _pull(ctx)
        (vault / "a.md").write_bytes(b"local edit")
        detector.scan()

        drive.edit(file_id, b"remote edit", later())
        report = await _pull(ctx)

        assert report.skipped == 1
        assert (vault / "a.md").read_bytes() == b"local edit"
        assert ctx.oplog.get("a.md") is OperationKind.MODIFY

    async def test_create_create_converges_to_modify(self, ctx, drive, vault, detector):
        (vault / "a.md").write_bytes(b"mine")
        detector.scan()
        remote_id = drive.add("a.md", b"theirs")

        await _pull(ctx)

        assert ctx.oplog.get("a.md") is OperationKind.MODIFY
        assert ctx.index.id_for("a.md") == remote_id
        assert (vault / "a.md").read_bytes() == b"mine"

    async def test_pending_delete_restored_by_remote_edit(self, ctx, drive, vault, detector):
        file_id = drive.add("a.md", b"v1")
        await _pull(ctx)
        (vault / "a.md").unlink()
        detector.scan()

        drive.edit(file_id, b"v2", later())
        await _pull(ctx)

        assert (vault / "a.md").read_bytes() == b"v2"
        assert ctx.oplog.get("a.md") is None


    async def test_restore_cancels_pending_delete_of_parent_folder(self, ctx, drive, vault, detector):
        drive.add("dir", is_folder=True)
        file_id = drive.add("dir/a.md", b"v1")
        drive.add("dir/b.md", b"b")
        await _pull(ctx)
        shutil.rmtree(vault / "dir")
        detector.scan()

        drive.edit(file_id, b"v2", later())
        await _pull(ctx)

        assert (vault / "dir" / "a.md").read_bytes() == b"v2"
        assert not (vault / "dir" / "b.md").exists()
        assert ctx.oplog.items() == [("dir/b.md", OperationKind.DELETE)]
        result = detector.scan()
        assert (result.created, result.deleted, result.modified) == (0, 0, 0)


# ======================================================================
# Untrusted remote paths
# ======================================================================


class TestPathsOutsideVault:
    """Remote path annotations that do not resolve inside the vault."""

    async def test_objects_outside_vault_are_ignored(self, ctx, drive, vault, tmp_path):
        drive.add("../escape.md", b"x")
        drive.add(str(tmp_path / "abs.md"), b"x")
        drive.add("good.md", b"ok")

        report = await _pull(ctx)

        assert report.status is SyncStatus.COMPLETED
        assert (vault / "good.md").read_bytes() == b"ok"
        assert not (tmp_path / "escape.md").exists()
        assert not (tmp_path / "abs.md").exists()
        assert [path for _, path in ctx.index.items()] == ["good.md"]
        assert ctx.settings.last_synced_at > 0
        assert (await _pull(ctx)).status is SyncStatus.UP_TO_DATE

    async def test_removal_outside_vault_is_ignored(self, ctx, drive):
        drive.add("a.md", b"a")
        await _pull(ctx)
        ctx.index.record("stray", "../escape.md")
        drive.changes.append(RemoteChange("stray", True))

        report = await _pull(ctx)

        assert report.status is SyncStatus.UP_TO_DATE
        assert "stray" not in ctx.index

    async def test_mirror_entries_outside_vault_are_not_adopted(self, ctx, drive):
        mirror = {"driveIdToPath": {"ok": "notes/a.md", "bad": "../../etc/passwd", "odd": 7}}
        drive.add(".vaultsync/data.json", json.dumps(mirror).encode(), config=True)

        await _pull(ctx)

        assert ctx.index.path_for("ok") == "notes/a.md"
        assert "bad" not in ctx.index
        assert "odd" not in ctx.index


# ======================================================================
# Internal config objects
# ======================================================================


class TestInternalObjects:
    """Settings mirror bootstrap and config-dir removals."""

    async def test_fresh_device_bootstraps_index_from_mirror(self, ctx, drive, vault):
        mirror = {
            "refreshToken": "",
            "operations": {},
            "driveIdToPath": {"other-device-id": "old.md"},
            "lastSyncedAt": 1,
            "changesToken": "999",
        }
        drive.add(".vaultsync/data.json", json.dumps(mirror).encode(), config=True)
        drive.add("a.md", b"hello")

        await _pull(ctx)

        assert ctx.index.path_for("other-device-id") == "old.md"
        assert ctx.settings.changes_token != "999"
        saved = json.loads((vault / ".vaultsync" / "data.json").read_text())
        assert saved["changesToken"] == ctx.settings.changes_token

    async def test_known_device_ignores_mirror(self, ctx, drive):
        ctx.index.record("existing", "x.md")
        mirror = {"driveIdToPath": {"other-device-id": "old.md"}}
        drive.add(".vaultsync/data.json", json.dumps(mirror).encode(), config=True)

        await _pull(ctx)

        assert ctx.index.path_for("other-device-id") is None

    async def test_removed_config_file_is_disposed_and_folder_pruned(self, ctx, drive, vault):
        file_id = drive.add(".vaultsync/plugins/p.json", b"{}", config=True)
        await _pull(ctx)
        assert (vault / ".vaultsync" / "plugins" / "p.json").exists()

        drive.remove(file_id)
        await _pull(ctx)

        assert not (vault / ".vaultsync" / "plugins").exists()
        assert (vault / ".trash" / ".vaultsync" / "plugins" / "p.json").exists()
        assert (vault / ".vaultsync" / "data.json").exists()


# ======================================================================
# Refusals and failures
# ======================================================================


class TestRefusals:
    """Runs that never start or stop early."""

    async def test_offline(self, ctx, drive, notifier):
        drive.online = False
        report = await _pull(ctx)
        assert report.status is SyncStatus.OFFLINE
        assert notifier.errors
        assert not ctx.syncing

    async def test_busy(self, ctx):
        ctx.syncing = True
        report = await _pull(ctx)
        assert report.status is SyncStatus.BUSY
        assert ctx.syncing

    async def test_credential_failure_releases_flag(self, ctx, drive):
        drive.fail.add("ensure_token")
        report = await _pull(ctx)
        assert report.status is SyncStatus.CREDENTIAL_ERROR
        assert not ctx.syncing

    async def test_fetch_failure_keeps_checkpoint(self, ctx, drive):
        drive.add("a.md", b"x")
        drive.fail.add("search_files")
        report = await _pull(ctx)
        assert report.status is SyncStatus.FAILED
        assert report.failed_phase == "fetch"
        assert ctx.settings.last_synced_at == 0

    async def test_download_failure_keeps_checkpoint(self, ctx, drive, vault):
        drive.add("a.md", b"x")
        drive.fail.add("get_file")
        report = await _pull(ctx)
        assert report.status is SyncStatus.FAILED
        assert report.failed_phase == "upsert"
        assert ctx.settings.changes_token == ""
        assert not (vault / "a.md").exists()

    async def test_silent_pull_does_not_checkpoint(self, ctx, drive):
        drive.add("a.md", b"x")
        report = await PullReconciler(ctx).run(silent=True)
        assert report.status is SyncStatus.COMPLETED
        assert report.downloaded == 1
        assert ctx.settings.last_synced_at == 0
