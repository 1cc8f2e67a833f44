from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from pathlib import Path, PurePosixPath
from typing import Callable, Iterable

from intelagent_backup.services.blob_store import BlobStore


logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".zip"


@dataclass(frozen=True)
class RetentionResult:
    deleted_local: list[str] = field(default_factory=list)
    deleted_remote: list[str] = field(default_factory=list)

    @property
    def deleted(self) -> list[str]:
        return [*self.deleted_local, *self.deleted_remote]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RetentionEnforcer:
    """Delete archives older than a retention window, locally and remotely."""

    def __init__(
        self,
        backup_dir: Path,
        *,
        blob_store: BlobStore | None = None,
        remote_prefix: str = "backups/",
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._backup_dir = backup_dir
        self._blob_store = blob_store
        self._remote_prefix = remote_prefix
        self._clock = clock

    def _sweep_local(self, cutoff: datetime, exclude: set[str]) -> list[str]:
        deleted: list[str] = []
        if not self._backup_dir.exists():
            return deleted
        cutoff_ts = cutoff.timestamp()
        for path in sorted(self._backup_dir.glob(f"*{ARCHIVE_SUFFIX}")):
            if path.name in exclude or not path.is_file():
                continue
            if path.stat().st_mtime < cutoff_ts:
                path.unlink(missing_ok=True)
                deleted.append(path.name)
                logger.info("backup_archive_pruned name=%s", path.name)
        return deleted

    async def enforce(self, retention_days: int, *, exclude: Iterable[str] = ()) -> RetentionResult:
        # Callers must pass the archive they just stored in `exclude`.
        if retention_days <= 0:
            raise ValueError("retention_days must be > 0")
        cutoff = self._clock() - timedelta(days=retention_days)
        excluded = set(exclude)
        deleted_local = await asyncio.to_thread(self._sweep_local, cutoff, excluded)

        deleted_remote: list[str] = []
        if self._blob_store is not None:
            for item in await self._blob_store.list(self._remote_prefix):
                if PurePosixPath(item.key).name in excluded:
                    continue
                if item.last_modified < cutoff:
                    await self._blob_store.delete(item.key)
                    deleted_remote.append(item.key)
        return RetentionResult(deleted_local=deleted_local, deleted_remote=deleted_remote)
