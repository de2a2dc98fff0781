"""Tests for conflict resolution between pending local work and remote events."""

from __future__ import annotations

import logging

import pytest

from vaultsync.models import EntryKind, OperationKind, PathRef
from vaultsync.sync.conflict import RemovalAction, UpsertAction, resolve_removal, resolve_upsert

FILE = PathRef("a.md", EntryKind.FILE)
FOLDER = PathRef("dir", EntryKind.FOLDER)


class TestResolveRemoval:
    """Remote object removed; what happens to the local entry."""

    def test_missing_locally_with_pending_delete_is_redundant(self):
        assert resolve_removal(None, OperationKind.DELETE) is RemovalAction.CLEAR_REDUNDANT

    def test_missing_locally_without_pending_is_nothing(self):
        assert resolve_removal(None, None) is RemovalAction.NOTHING

    def test_still_mapped_path_is_kept(self):
        assert resolve_removal(FILE, None, still_mapped=True) is RemovalAction.KEEP

    @pytest.mark.parametrize(
        ("pending", "expected"),
        [
            (None, RemovalAction.DELETE),
            (OperationKind.MODIFY, RemovalAction.FLIP_TO_CREATE),
            (OperationKind.CREATE, RemovalAction.KEEP),
            (OperationKind.DELETE, RemovalAction.DELETE),
        ],
    )
    def test_file_decisions(self, pending, expected):
        assert resolve_removal(FILE, pending) is expected

    def test_folder_with_surviving_children_becomes_create(self):
        action = resolve_removal(FOLDER, None, has_surviving_children=True)
        assert action is RemovalAction.DEFER_AS_CREATE

    def test_empty_folder_is_deleted(self):
        assert resolve_removal(FOLDER, None) is RemovalAction.DELETE


class TestResolveUpsert:
    """Remote object modified since the checkpoint."""

    def test_plain_download(self):
        assert resolve_upsert("a.md", None, exists_locally=True) is UpsertAction.DOWNLOAD
        assert resolve_upsert("a.md", None, exists_locally=False) is UpsertAction.DOWNLOAD

    def test_local_modify_wins_and_is_logged(self, caplog):
        with caplog.at_level(logging.WARNING, logger="vaultsync.sync.conflict"):
            action = resolve_upsert("a.md", OperationKind.MODIFY, exists_locally=True)
        assert action is UpsertAction.SKIP
        assert "a.md" in caplog.text

    def test_local_create_converges_to_modify(self):
        action = resolve_upsert("a.md", OperationKind.CREATE, exists_locally=True)
        assert action is UpsertAction.FLIP_TO_MODIFY

    def test_pending_delete_is_restored(self):
        action = resolve_upsert("a.md", OperationKind.DELETE, exists_locally=False)
        assert action is UpsertAction.RESTORE
