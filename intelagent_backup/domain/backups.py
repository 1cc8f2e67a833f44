from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
import secrets
import time
from typing import Any, Literal


BackupKind = Literal["full", "incremental"]
BackupOrigin = Literal["automatic", "manual"]

ARCHIVE_FORMAT_VERSION = "1.0.0"


class BackupStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


# Allowed status moves; terminal states have none.
_TRANSITIONS: dict[BackupStatus, frozenset[BackupStatus]] = {
    BackupStatus.PENDING: frozenset({BackupStatus.IN_PROGRESS}),
    BackupStatus.IN_PROGRESS: frozenset({BackupStatus.COMPLETED, BackupStatus.FAILED}),
    BackupStatus.COMPLETED: frozenset(),
    BackupStatus.FAILED: frozenset(),
}


class InvalidTransitionError(ValueError):
    """Raised when a record status would move backwards or skip a state."""


def new_backup_id() -> str:
    # Timestamp prefix keeps ids sortable; the suffix avoids same-millisecond collisions.
    return f"backup_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


@dataclass
class BackupRecord:
    id: str
    timestamp: datetime
    kind: BackupKind = "full"
    origin: BackupOrigin = "manual"
    format_version: str = ARCHIVE_FORMAT_VERSION
    size_bytes: int = 0
    table_list: list[str] = field(default_factory=list)
    checksum: str = ""
    content_checksum: str = ""
    encrypted: bool = False
    includes_files: bool = False
    includes_logs: bool = False
    status: BackupStatus = BackupStatus.PENDING
    error: str | None = None

    @classmethod
    def create(
        cls,
        *,
        origin: BackupOrigin = "manual",
        encrypted: bool = False,
        kind: BackupKind = "full",
    ) -> BackupRecord:
        return cls(
            id=new_backup_id(),
            timestamp=datetime.now(timezone.utc),
            kind=kind,
            origin=origin,
            encrypted=encrypted,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in {BackupStatus.COMPLETED, BackupStatus.FAILED}

    def transition(self, target: BackupStatus) -> None:
        if target not in _TRANSITIONS[self.status]:
            raise InvalidTransitionError(f"cannot move backup {self.id} from {self.status.value} to {target.value}")
        self.status = target

    def start(self) -> None:
        self.transition(BackupStatus.IN_PROGRESS)

    def complete(self) -> None:
        self.transition(BackupStatus.COMPLETED)

    def fail(self, message: str) -> None:
        self.transition(BackupStatus.FAILED)
        self.error = message

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["timestamp"] = self.timestamp.isoformat()
        payload["status"] = self.status.value
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> BackupRecord:
        return cls(
            id=payload["id"],
            timestamp=datetime.fromisoformat(payload["timestamp"]),
            kind=payload.get("kind", "full"),
            origin=payload.get("origin", "manual"),
            format_version=payload.get("format_version", ARCHIVE_FORMAT_VERSION),
            size_bytes=int(payload.get("size_bytes", 0)),
            table_list=list(payload.get("table_list", [])),
            checksum=payload.get("checksum", ""),
            content_checksum=payload.get("content_checksum", ""),
            encrypted=bool(payload.get("encrypted", False)),
            includes_files=bool(payload.get("includes_files", False)),
            includes_logs=bool(payload.get("includes_logs", False)),
            status=BackupStatus(payload.get("status", BackupStatus.PENDING.value)),
            error=payload.get("error"),
        )


@dataclass(frozen=True)
class RecoveryPoint:
    backup_id: str
    timestamp: datetime
    description: str
    origin: BackupOrigin

    @classmethod
    def from_record(cls, record: BackupRecord) -> RecoveryPoint:
        tables = ", ".join(record.table_list) or "no tables"
        return cls(
            backup_id=record.id,
            timestamp=record.timestamp,
            description=f"{record.kind} backup ({tables}), {record.size_bytes} bytes",
            origin=record.origin,
        )


@dataclass(frozen=True)
class BackupOptions:
    # None means "use the configured default" for every field.
    include_files: bool | None = None
    include_logs: bool | None = None
    encrypt: bool | None = None
    retention_days: int | None = None
    tables: tuple[str, ...] | None = None


@dataclass(frozen=True)
class RecoveryOptions:
    tables: tuple[str, ...] | None = None
    skip_validation: bool = False


@dataclass(frozen=True)
class RecoveryReport:
    backup_id: str
    restored_tables: dict[str, int]
    missing_tables: list[str]
    files_restored: bool
    started_at: str
    completed_at: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
