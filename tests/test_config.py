"""Tests for configuration loading, credential lookup and settings persistence."""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest

from vaultsync.config import (
    SAVE_DEBOUNCE_SECONDS,
    SettingsStore,
    get_refresh_token,
    load_sync_config,
    should_sync_path,
)
from vaultsync.exceptions import CredentialError
from vaultsync.models import DisposalPolicy, OperationKind, SyncConfig, SyncSettings


# ---------------------------------------------------------------------------
# get_refresh_token tests
# ---------------------------------------------------------------------------


class TestGetRefreshToken:
    @patch("vaultsync.config.keyring.get_password", return_value="token-from-keyring")
    def test_from_keyring(self, mock_keyring):
        assert get_refresh_token() == "token-from-keyring"
        mock_keyring.assert_called_once_with("vaultsync", "refresh_token")

    @patch("vaultsync.config.keyring.get_password", return_value=None)
    def test_from_env_var(self, mock_keyring):
        with patch.dict(os.environ, {"VAULTSYNC_REFRESH_TOKEN": "token-from-env"}):
            assert get_refresh_token() == "token-from-env"

    @patch("vaultsync.config.keyring.get_password", return_value=None)
    def test_from_settings(self, mock_keyring, monkeypatch):
        monkeypatch.delenv("VAULTSYNC_REFRESH_TOKEN", raising=False)
        assert get_refresh_token(SyncSettings(refresh_token="stored")) == "stored"

    @patch("vaultsync.config.keyring.get_password", return_value=None)
    def test_nowhere_raises(self, mock_keyring, monkeypatch):
        monkeypatch.delenv("VAULTSYNC_REFRESH_TOKEN", raising=False)
        with pytest.raises(CredentialError, match="Refresh token not found"):
            get_refresh_token(SyncSettings())


# ---------------------------------------------------------------------------
# load_sync_config tests
# ---------------------------------------------------------------------------


class TestLoadSyncConfig:
    """Config file parsing on a fake filesystem."""

    def test_defaults_without_file(self, fs):
        fs.create_dir("/vault")
        config = load_sync_config(Path("/vault"))
        assert config.vault_name == "vault"
        assert config.max_concurrency == 10
        assert config.disposal_policy is DisposalPolicy.LOCAL
        assert config.settings_path == ".vaultsync/data.json"

    def test_file_values_override_defaults(self, fs):
        fs.create_file(
            "/vault/.vaultsync/config.json",
            contents=json.dumps(
                {
                    "vault_name": "work",
                    "max_concurrency": 3,
                    "disposal_policy": "permanent",
                    "unknown_key": True,
                }
            ),
        )
        config = load_sync_config(Path("/vault"))
        assert config.vault_name == "work"
        assert config.max_concurrency == 3
        assert config.disposal_policy is DisposalPolicy.PERMANENT

    def test_explicit_path(self, fs):
        fs.create_dir("/vault")
        fs.create_file("/etc/vaultsync.json", contents=json.dumps({"system_trash_dir": "/trash"}))
        config = load_sync_config(Path("/vault"), Path("/etc/vaultsync.json"))
        assert config.system_trash_dir == Path("/trash")


# ---------------------------------------------------------------------------
# should_sync_path tests
# ---------------------------------------------------------------------------


class TestShouldSyncPath:
    @pytest.fixture
    def config(self) -> SyncConfig:
        return SyncConfig(vault_path=Path("/vault"), exclude_patterns=[".DS_Store", "node_modules/"])

    def test_vault_content(self, config):
        assert should_sync_path("notes/a.md", config)
        assert should_sync_path(".obsidian/app.json", config)

    def test_internal_dirs_excluded(self, config):
        assert not should_sync_path(".vaultsync", config)
        assert not should_sync_path(".vaultsync/data.json", config)
        assert not should_sync_path(".trash/a.md", config)
        assert should_sync_path(".vaultsyncx/a.md", config)

    def test_patterns(self, config):
        assert not should_sync_path("dir/.DS_Store", config)
        assert not should_sync_path("node_modules/pkg/index.js", config)
        assert not should_sync_path("node_modules", config)
        assert should_sync_path("src/node_modules_notes.md", config)


# ---------------------------------------------------------------------------
# SettingsStore tests
# ---------------------------------------------------------------------------


class TestSettingsStore:
    """Atomic JSON persistence of the sync state."""

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = SettingsStore(tmp_path / "data.json").load()
        assert settings == SyncSettings()

    def test_save_and_load(self, tmp_path):
        store = SettingsStore(tmp_path / ".vaultsync" / "data.json")
        settings = SyncSettings(
            refresh_token="r",
            operations={"a.md": OperationKind.CREATE},
            drive_id_to_path={"1": "b.md"},
            last_synced_at=1700000000000,
            changes_token="42",
        )
        store.save(settings)

        raw = json.loads(store.path.read_text())
        assert raw["driveIdToPath"] == {"1": "b.md"}
        assert raw["operations"] == {"a.md": "create"}
        assert not store.path.with_suffix(".tmp").exists()
        assert store.load() == settings

    def test_corrupt_file_gives_defaults(self, tmp_path):
        path = tmp_path / "data.json"
        path.write_text("{not json")
        assert SettingsStore(path).load() == SyncSettings()

    def test_unknown_operations_are_dropped(self, tmp_path):
        path = tmp_path / "data.json"
        path.write_text(json.dumps({"operations": {"a.md": "rename", "b.md": "delete"}}))
        assert SettingsStore(path).load().operations == {"b.md": OperationKind.DELETE}

    def test_schedule_save_without_loop_writes_now(self, tmp_path):
        store = SettingsStore(tmp_path / "data.json")
        store.schedule_save(SyncSettings(changes_token="x"))
        assert store.load().changes_token == "x"

    async def test_schedule_save_is_debounced(self, tmp_path):
        store = SettingsStore(tmp_path / "data.json")
        store.schedule_save(SyncSettings(changes_token="first"))
        store.schedule_save(SyncSettings(changes_token="second"))
        assert not store.path.exists()

        await asyncio.sleep(SAVE_DEBOUNCE_SECONDS + 0.2)

        assert store.load().changes_token == "second"

    async def test_save_cancels_pending_write(self, tmp_path):
        store = SettingsStore(tmp_path / "data.json")
        store.schedule_save(SyncSettings(changes_token="stale"))
        store.save(SyncSettings(changes_token="final"))

        await asyncio.sleep(SAVE_DEBOUNCE_SECONDS + 0.2)

        assert store.load().changes_token == "final"

    def test_mirror_strips_secrets_and_log(self):
        settings = SyncSettings(refresh_token="r", operations={"a.md": OperationKind.MODIFY})
        mirror = settings.to_mirror()
        assert mirror["refreshToken"] == ""
        assert mirror["operations"] == {}
