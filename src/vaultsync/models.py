"""Data models and enums for the vault sync engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any


def rfc3339(moment: datetime) -> str:
    """Format an aware datetime the way the remote store expects (ms, UTC)."""
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def utc_now() -> str:
    return rfc3339(datetime.now(timezone.utc))


class OperationKind(str, Enum):
    """Pending local mutation awaiting push."""

    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"


class EntryKind(str, Enum):
    """Tagged variant carried alongside every path reference."""

    FILE = "file"
    FOLDER = "folder"


class DisposalPolicy(str, Enum):
    """How locally removed internal entries are disposed of."""

    LOCAL = "local"
    SYSTEM = "system"
    PERMANENT = "permanent"


class SyncStatus(str, Enum):
    """Outcome of a push or pull."""

    COMPLETED = "completed"
    UP_TO_DATE = "up_to_date"
    BUSY = "busy"
    OFFLINE = "offline"
    CANCELLED = "cancelled"
    CREDENTIAL_ERROR = "credential_error"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class PathRef:
    """A local path tagged with its entry kind."""

    path: str
    kind: EntryKind

    @property
    def is_folder(self) -> bool:
        return self.kind is EntryKind.FOLDER


@dataclass(frozen=True, slots=True)
class PendingOperation:
    """One Operation Log entry as seen by a reconciler."""

    path: str
    kind: OperationKind
    is_directory: bool = False


@dataclass(slots=True)
class RemoteObject:
    """Metadata of an object in the remote store."""

    id: str
    is_folder: bool
    properties: dict[str, str] = field(default_factory=dict)
    modified_time: str | None = None
    name: str | None = None

    @property
    def path(self) -> str | None:
        return self.properties.get("path")

    @property
    def is_config(self) -> bool:
        return self.properties.get("config") == "true"

    @property
    def kind(self) -> EntryKind:
        return EntryKind.FOLDER if self.is_folder else EntryKind.FILE

    @property
    def modified_at(self) -> datetime | None:
        """``modified_time`` parsed as an aware datetime."""
        if not self.modified_time:
            return None
        return datetime.fromisoformat(self.modified_time.replace("Z", "+00:00"))


@dataclass(frozen=True, slots=True)
class RemoteChange:
    """One entry of the remote change feed."""

    file_id: str
    removed: bool


@dataclass
class SyncSettings:
    """The persisted sync state.

    Serialized with the camelCase keys the remote mirror uses so a second
    device can bootstrap from it.
    """

    refresh_token: str = ""
    operations: dict[str, OperationKind] = field(default_factory=dict)
    drive_id_to_path: dict[str, str] = field(default_factory=dict)
    last_synced_at: int = 0  # epoch milliseconds
    changes_token: str = ""

    def to_dict(self, *, include_secrets: bool = True) -> dict[str, Any]:
        """Convert to the on-disk JSON shape."""
        return {
            "refreshToken": self.refresh_token if include_secrets else "",
            "operations": {path: op.value for path, op in self.operations.items()},
            "driveIdToPath": dict(self.drive_id_to_path),
            "lastSyncedAt": self.last_synced_at,
            "changesToken": self.changes_token,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncSettings:
        """Build settings from JSON, tolerating missing keys and unknown ops."""
        operations: dict[str, OperationKind] = {}
        for path, op in (data.get("operations") or {}).items():
            try:
                operations[path] = OperationKind(op)
            except ValueError:
                continue
        return cls(
            refresh_token=data.get("refreshToken") or "",
            operations=operations,
            drive_id_to_path=dict(data.get("driveIdToPath") or {}),
            last_synced_at=int(data.get("lastSyncedAt") or 0),
            changes_token=data.get("changesToken") or "",
        )

    def to_mirror(self) -> dict[str, Any]:
        """Shape uploaded for other devices: no secrets, no device-local log."""
        data = self.to_dict(include_secrets=False)
        data["operations"] = {}
        return data

    @property
    def last_synced_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.last_synced_at / 1000, tz=timezone.utc)

    @property
    def last_synced_iso(self) -> str:
        """Checkpoint timestamp as an RFC 3339 string for remote queries."""
        return rfc3339(self.last_synced_datetime)


@dataclass
class SyncReport:
    """Result of a reconciler run."""

    status: SyncStatus
    failed_phase: str | None = None
    deleted: int = 0
    created: int = 0
    modified: int = 0
    downloaded: int = 0
    skipped: int = 0
    errors: int = 0

    @property
    def ok(self) -> bool:
        return self.status in (SyncStatus.COMPLETED, SyncStatus.UP_TO_DATE)

    @property
    def summary(self) -> dict[str, int]:
        """Return counts."""
        return {
            "deleted": self.deleted,
            "created": self.created,
            "modified": self.modified,
            "downloaded": self.downloaded,
            "skipped": self.skipped,
            "errors": self.errors,
        }


@dataclass
class SyncConfig:
    """Configuration for one vault's sync engine.

    Controls remote targeting, the fan-out concurrency cap, the disposal
    policy for removed internal files, and the credential endpoint.
    """

    vault_path: Path
    vault_name: str | None = None
    config_dir: str = ".vaultsync"
    max_concurrency: int = 10
    disposal_policy: DisposalPolicy = DisposalPolicy.LOCAL
    system_trash_dir: Path = field(
        default_factory=lambda: Path.home() / ".local" / "share" / "Trash" / "files"
    )
    exclude_patterns: list[str] = field(
        default_factory=lambda: [".DS_Store", ".git/", "node_modules/", ".trash/"]
    )
    token_url: str = "https://oauth2.googleapis.com/token"
    client_id: str = ""
    client_secret: str = ""
    connectivity_url: str = "https://www.googleapis.com/generate_204"
    request_timeout: float = 60.0

    def __post_init__(self) -> None:
        """Normalise paths and enums."""
        if isinstance(self.vault_path, str):
            self.vault_path = Path(self.vault_path)
        if isinstance(self.system_trash_dir, str):
            self.system_trash_dir = Path(self.system_trash_dir)
        if isinstance(self.disposal_policy, str):
            self.disposal_policy = DisposalPolicy(self.disposal_policy)
        if not self.vault_name:
            self.vault_name = self.vault_path.name

    @property
    def settings_path(self) -> str:
        """Vault-relative path of the persisted settings object."""
        return f"{self.config_dir}/data.json"

    @property
    def snapshot_path(self) -> str:
        """Vault-relative path of the local change-detection snapshot."""
        return f"{self.config_dir}/snapshot.json"
