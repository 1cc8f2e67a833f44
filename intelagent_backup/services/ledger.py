from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from intelagent_backup.core.errors import ConfigurationError, NotFoundError
from intelagent_backup.domain.backups import BackupRecord
from intelagent_backup.domain.models import BackupRecordRow


METADATA_FILENAME = "metadata.json"


class DuplicateRecordError(ValueError):
    """The ledger already holds a record with this id."""


class MetadataLedger(Protocol):
    # Append-only history of backup attempts, one entry per attempt.
    async def append(self, record: BackupRecord) -> None:
        ...

    async def get(self, backup_id: str) -> BackupRecord:
        ...

    async def list(self) -> list[BackupRecord]:
        ...


class JsonFileLedger:
    """Ledger stored as a JSON array in ``<backup_dir>/metadata.json``."""

    def __init__(self, backup_dir: Path) -> None:
        self.path = backup_dir / METADATA_FILENAME
        self._lock = asyncio.Lock()

    def _read(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        return json.loads(self.path.read_text(encoding="utf-8"))

    def _write(self, entries: list[dict[str, Any]]) -> None:
        # Rewrite through a temp file so readers never see a half-written ledger.
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_name(f".{self.path.name}.tmp")
        temp_path.write_text(json.dumps(entries, indent=2), encoding="utf-8")
        os.replace(temp_path, self.path)

    def _append_sync(self, record: BackupRecord) -> None:
        entries = self._read()
        if any(entry.get("id") == record.id for entry in entries):
            raise DuplicateRecordError(f"backup {record.id} is already recorded")
        entries.append(record.to_dict())
        self._write(entries)

    async def append(self, record: BackupRecord) -> None:
        async with self._lock:
            await asyncio.to_thread(self._append_sync, record)

    async def list(self) -> list[BackupRecord]:
        entries = await asyncio.to_thread(self._read)
        return [BackupRecord.from_dict(entry) for entry in entries]

    async def get(self, backup_id: str) -> BackupRecord:
        for record in await self.list():
            if record.id == backup_id:
                return record
        raise NotFoundError(f"backup metadata not found: {backup_id}")


class SqlMetadataLedger:
    """Ledger stored in the ``backup_records`` table."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def append(self, record: BackupRecord) -> None:
        async with self._sessionmaker() as session:
            existing = (
                await session.execute(select(BackupRecordRow.seq).where(BackupRecordRow.backup_id == record.id))
            ).scalar_one_or_none()
            if existing is not None:
                raise DuplicateRecordError(f"backup {record.id} is already recorded")
            session.add(
                BackupRecordRow(
                    backup_id=record.id,
                    created_at=record.timestamp,
                    kind=record.kind,
                    origin=record.origin,
                    status=record.status.value,
                    size_bytes=record.size_bytes,
                    checksum=record.checksum,
                    encrypted=record.encrypted,
                    payload_json=record.to_dict(),
                )
            )
            await session.commit()

    async def get(self, backup_id: str) -> BackupRecord:
        async with self._sessionmaker() as session:
            row = (
                await session.execute(select(BackupRecordRow).where(BackupRecordRow.backup_id == backup_id))
            ).scalar_one_or_none()
        if row is None:
            raise NotFoundError(f"backup metadata not found: {backup_id}")
        return BackupRecord.from_dict(row.payload_json)

    async def list(self) -> list[BackupRecord]:
        async with self._sessionmaker() as session:
            rows = (await session.execute(select(BackupRecordRow).order_by(BackupRecordRow.seq))).scalars().all()
        return [BackupRecord.from_dict(row.payload_json) for row in rows]


def build_ledger(
    backend: str,
    *,
    backup_dir: Path,
    sessionmaker: async_sessionmaker[AsyncSession] | None = None,
) -> MetadataLedger:
    if backend == "file":
        return JsonFileLedger(backup_dir)
    if backend == "database":
        if sessionmaker is None:
            raise ConfigurationError("database ledger requires a session factory")
        return SqlMetadataLedger(sessionmaker)
    raise ConfigurationError(f"unknown ledger backend: {backend}")
