"""Shared pytest fixtures for vaultsync tests.

Provides an in-memory fake of the Drive client, a notifier that records
every notice, and isolated reconciliation contexts on ``tmp_path``.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from vaultsync.config import SettingsStore
from vaultsync.local.detector import LocalChangeDetector
from vaultsync.local.store import LocalStore
from vaultsync.models import RemoteChange, RemoteObject, SyncConfig, SyncSettings, rfc3339, utc_now
from vaultsync.notices import Notifier
from vaultsync.sync.context import SyncContext


def later(seconds: int = 5) -> str:
    """A remote modification time safely after any checkpoint taken now."""
    return rfc3339(datetime.now(timezone.utc) + timedelta(seconds=seconds))


def _parse(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class FakeDrive:
    """In-memory remote store with the same coroutine API as ``DriveClient``.

    ``fail`` holds method names that return their failure sentinel.
    ``calls`` records every mutating call as ``(method, path_or_id)``.
    """

    def __init__(self, vault_name: str = "vault") -> None:
        self.vault_name = vault_name
        self.objects: dict[str, dict] = {}
        self.changes: list[RemoteChange] = []
        self.online = True
        self.fail: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.root_id: str | None = None
        self._counter = 0

    # -- test helpers ---------------------------------------------------

    def _new_id(self) -> str:
        self._counter += 1
        return f"id{self._counter}"

    def _store(
        self,
        name: str,
        parent: str | None,
        properties: dict[str, str] | None,
        modified_time: str | None,
        content: bytes | None,
        is_folder: bool,
    ) -> str:
        object_id = self._new_id()
        props = dict(properties or {})
        props.setdefault("vault", self.vault_name)
        if any(part.startswith(".") for part in props.get("path", "").split("/")):
            props["hidden"] = "true"
        self.objects[object_id] = {
            "name": name,
            "parent": parent,
            "properties": props,
            "modified_time": modified_time or utc_now(),
            "content": content,
            "is_folder": is_folder,
        }
        self.changes.append(RemoteChange(object_id, False))
        return object_id

    def add(
        self,
        path: str,
        content: bytes = b"",
        *,
        is_folder: bool = False,
        modified_time: str | None = None,
        config: bool = False,
    ) -> str:
        """Create an object as another device would."""
        props = {"path": path}
        if config:
            props["config"] = "true"
        return self._store(
            path.rsplit("/", 1)[-1], None, props, modified_time, None if is_folder else content, is_folder
        )

    def remove(self, object_id: str) -> None:
        """Delete an object as another device would."""
        del self.objects[object_id]
        self.changes.append(RemoteChange(object_id, True))

    def edit(self, object_id: str, content: bytes, modified_time: str | None = None) -> None:
        self.objects[object_id]["content"] = content
        self.objects[object_id]["modified_time"] = modified_time or utc_now()
        self.changes.append(RemoteChange(object_id, False))

    def ids_for(self, path: str) -> list[str]:
        return [i for i, o in self.objects.items() if o["properties"].get("path") == path]

    def paths(self, *, include_config: bool = False) -> list[str]:
        return sorted(
            o["properties"]["path"]
            for o in self.objects.values()
            if "path" in o["properties"] and (include_config or "config" not in o["properties"])
        )

    def _object(self, object_id: str) -> RemoteObject:
        obj = self.objects[object_id]
        return RemoteObject(
            id=object_id,
            is_folder=obj["is_folder"],
            properties=dict(obj["properties"]),
            modified_time=obj["modified_time"],
            name=obj["name"],
        )

    # -- DriveClient API ------------------------------------------------

    async def ensure_token(self) -> bool:
        return "ensure_token" not in self.fail

    async def check_connection(self) -> bool:
        return self.online

    async def get_root_folder_id(self) -> str | None:
        if "get_root_folder_id" in self.fail:
            return None
        if self.root_id is None:
            self.root_id = "root"
        return self.root_id

    async def create_folder(self, name, parent=None, properties=None, modified_time=None):
        if "create_folder" in self.fail:
            return None
        self.calls.append(("create_folder", (properties or {}).get("path", name)))
        return self._store(name, parent, properties, modified_time, None, True)

    async def upload_file(self, content, name, parent=None, properties=None, modified_time=None):
        if "upload_file" in self.fail:
            return None
        self.calls.append(("upload_file", (properties or {}).get("path", name)))
        return self._store(name, parent, properties, modified_time, content, False)

    async def update_file(self, file_id, content=None, modified_time=None):
        if "update_file" in self.fail or file_id not in self.objects:
            return None
        self.calls.append(("update_file", self.objects[file_id]["properties"].get("path", file_id)))
        if content is not None:
            self.objects[file_id]["content"] = content
        self.objects[file_id]["modified_time"] = modified_time or utc_now()
        self.changes.append(RemoteChange(file_id, False))
        return file_id

    async def batch_delete(self, ids) -> bool:
        if "batch_delete" in self.fail:
            return False
        for object_id in ids:
            self.calls.append(("delete", object_id))
            if object_id in self.objects:
                self.remove(object_id)
        return True

    async def get_file(self, file_id):
        if "get_file" in self.fail or file_id not in self.objects:
            return None
        return self.objects[file_id]["content"]

    async def get_file_metadata(self, file_id):
        if "get_file_metadata" in self.fail or file_id not in self.objects:
            return None
        return self._object(file_id)

    async def search_files(self, matches=None, modified_after=None):
        if "search_files" in self.fail:
            return None
        found = []
        for object_id, obj in self.objects.items():
            props = obj["properties"]
            if props.get("vault") != self.vault_name:
                continue
            if matches and not any(all(props.get(k) == v for k, v in m.items()) for m in matches):
                continue
            if modified_after and not _parse(obj["modified_time"]) > _parse(modified_after):
                continue
            found.append(self._object(object_id))
        return found

    async def search_hidden_files(self):
        return await self.search_files([{"hidden": "true"}])

    async def get_changes(self, token):
        if "get_changes" in self.fail:
            return None
        if not token:
            return []
        return list(self.changes[int(token):])

    async def get_changes_start_token(self):
        if "get_changes_start_token" in self.fail:
            return None
        return str(len(self.changes))


class RecordingNotifier(Notifier):
    """Notifier that keeps every notice for assertions."""

    def __init__(self) -> None:
        self.infos: list[str] = []
        self.errors: list[str] = []
        self.percents: list[int] = []

    def info(self, message: str) -> None:
        self.infos.append(message)

    def error(self, message: str) -> None:
        self.errors.append(message)

    def progress(self, percent: int, message: str) -> None:
        self.percents.append(percent)


# ======================================================================
# Fixtures
# ======================================================================


@pytest.fixture
def vault(tmp_path: Path) -> Path:
    root = tmp_path / "vault"
    root.mkdir()
    return root


@pytest.fixture
def config(vault: Path, tmp_path: Path) -> SyncConfig:
    return SyncConfig(
        vault_path=vault,
        vault_name="vault",
        system_trash_dir=tmp_path / "system-trash",
        max_concurrency=4,
    )


@pytest.fixture
def drive() -> FakeDrive:
    return FakeDrive("vault")


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def ctx(config: SyncConfig, drive: FakeDrive, notifier: RecordingNotifier) -> SyncContext:
    """Isolated reconciliation context with a tracked local store."""
    local = LocalStore(config)
    context = SyncContext(
        config,
        SyncSettings(),
        drive,
        local,
        settings_store=SettingsStore(config.vault_path / config.settings_path),
        notifier=notifier,
    )
    local.observer = LocalChangeDetector(local, context.oplog, config)
    return context


@pytest.fixture
def detector(ctx: SyncContext) -> LocalChangeDetector:
    return ctx.local.observer
