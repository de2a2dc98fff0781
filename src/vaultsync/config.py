"""Configuration loading, credential lookup and settings persistence."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path

import keyring

from vaultsync.exceptions import CredentialError
from vaultsync.models import SyncConfig, SyncSettings

logger = logging.getLogger(__name__)

SERVICE_NAME = "vaultsync"
KEY_NAME = "refresh_token"
ENV_VAR = "VAULTSYNC_REFRESH_TOKEN"

SAVE_DEBOUNCE_SECONDS = 0.5

LOCAL_TRASH_DIR = ".trash"


def get_refresh_token(settings: SyncSettings | None = None) -> str:
    """Get the remote refresh token: keyring, then env var, then settings.

    Returns:
        Refresh token string.

    Raises:
        CredentialError: If no token is found anywhere, with setup instructions.
    """
    token = keyring.get_password(SERVICE_NAME, KEY_NAME)
    if token:
        return token

    token = os.environ.get(ENV_VAR)
    if token:
        return token

    if settings is not None and settings.refresh_token:
        return settings.refresh_token

    raise CredentialError(
        "Refresh token not found.\n"
        "Set it with: vaultsync config set-refresh-token YOUR_TOKEN\n"
        f"Or: export {ENV_VAR}=your-token"
    )


def load_sync_config(vault_path: Path, config_path: Path | None = None) -> SyncConfig:
    """Load sync configuration from JSON, falling back to defaults.

    Reads ``<vault>/.vaultsync/config.json`` when *config_path* is ``None``.
    Only recognised fields are taken from the file.

    Args:
        vault_path: Root of the local vault.
        config_path: Optional explicit path to a config JSON file.

    Returns:
        SyncConfig with file values merged over defaults.
    """
    vault_path = Path(vault_path)
    if config_path is None:
        config_path = vault_path / SyncConfig(vault_path=vault_path).config_dir / "config.json"

    data: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            data = json.load(f)

    field_names = {f.name for f in SyncConfig.__dataclass_fields__.values()}
    kwargs = {k: v for k, v in data.items() if k in field_names and k != "vault_path"}
    ignored = sorted(set(data) - field_names)
    if ignored:
        logger.debug("Ignoring unknown config keys: %s", ", ".join(ignored))

    return SyncConfig(vault_path=vault_path, **kwargs)


def should_sync_path(path: str, config: SyncConfig) -> bool:
    """Return True if *path* is vault content that the Operation Log tracks.

    Patterns ending in ``/`` exclude by prefix, others by substring. The
    internal config directory and the local trash are never vault content.
    """
    for internal in (config.config_dir, LOCAL_TRASH_DIR):
        if path == internal or path.startswith(internal + "/"):
            return False
    for pattern in config.exclude_patterns:
        if pattern.endswith("/"):
            if path.startswith(pattern) or path + "/" == pattern:
                return False
        elif pattern in path:
            return False
    return True


class SettingsStore:
    """Atomic JSON persistence for :class:`SyncSettings`.

    Writes go to a ``.tmp`` sibling first and are renamed into place, so
    the settings file is never left half-written.

    Args:
        path: Absolute path of the settings JSON file.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._pending: asyncio.TimerHandle | None = None
        self._settings: SyncSettings | None = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> SyncSettings:
        """Load settings, returning defaults when the file is missing or corrupt."""
        if not self._path.exists():
            logger.debug("No settings file at %s, using defaults", self._path)
            return SyncSettings()
        try:
            data = json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError) as exc:
            logger.error("Failed to read settings %s: %s", self._path, exc)
            return SyncSettings()
        return SyncSettings.from_dict(data)

    def save(self, settings: SyncSettings) -> None:
        """Write settings immediately, cancelling any pending debounced write."""
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(settings.to_dict(), indent=2))
        tmp_path.replace(self._path)
        logger.debug("Saved settings to %s", self._path)

    def schedule_save(self, settings: SyncSettings) -> None:
        """Debounced save; falls back to an immediate write outside an event loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.save(settings)
            return
        if self._pending is not None:
            self._pending.cancel()
        self._pending = loop.call_later(SAVE_DEBOUNCE_SECONDS, self._flush, settings)

    def _flush(self, settings: SyncSettings) -> None:
        self._pending = None
        try:
            self.save(settings)
        except OSError as exc:
            logger.error("Debounced settings save failed: %s", exc)
