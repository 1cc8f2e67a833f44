from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from enum import Enum
import logging
import os
from pathlib import Path
import re
import secrets
import shutil
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from intelagent_backup.core.config import Settings, get_settings
from intelagent_backup.core.errors import (
    BackupInProgressError,
    BackupNotFoundError,
    ConfigurationError,
    IntegrityError,
    NotFoundError,
)
from intelagent_backup.domain.backups import (
    BackupOptions,
    BackupOrigin,
    BackupRecord,
    BackupStatus,
    RecoveryOptions,
    RecoveryPoint,
    RecoveryReport,
)
from intelagent_backup.persistence.db import get_sessionmaker
from intelagent_backup.persistence.tables import TableRegistry, build_table_registry
from intelagent_backup.services import archive, integrity, transfer
from intelagent_backup.services.audit import AuditLogEventSink, EventSink
from intelagent_backup.services.blob_store import BlobStore, archive_key, get_blob_store
from intelagent_backup.services.ledger import MetadataLedger, build_ledger
from intelagent_backup.services.retention import RetentionEnforcer


logger = logging.getLogger(__name__)

STAGING_DIRNAME = ".staging"
RESTORED_FILES_DIRNAME = "restored_files"
AUDIT_LOG_TABLE = "audit_logs"

_BACKUP_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class OperationStage(str, Enum):
    IDLE = "idle"
    EXPORTING = "exporting"
    ARCHIVING = "archiving"
    CHECKSUMMING = "checksumming"
    ENCRYPTING = "encrypting"
    UPLOADING = "uploading"
    CLEANING_UP = "cleaning_up"
    RETENTION = "retention"
    RESOLVING = "resolving"
    VERIFYING = "verifying"
    DECRYPTING = "decrypting"
    UNPACKING = "unpacking"
    RESTORING = "restoring"
    COMPLETED = "completed"
    FAILED = "failed"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _error_payload(exc: BaseException) -> dict[str, Any]:
    return {"error": str(exc), "error_code": getattr(exc, "code", type(exc).__name__)}


def _validate_backup_id(backup_id: str) -> None:
    # Ids become file names, so anything that could leave the backup dir is rejected.
    if not _BACKUP_ID_PATTERN.match(backup_id):
        raise BackupNotFoundError(f"invalid backup id: {backup_id!r}")


class BackupRecoveryService:
    """Run full backups and restores against the platform database.

    One instance owns one backup directory. At most one backup or recovery
    runs at a time per instance; the current stage is exposed for status
    endpoints and the scheduler.
    """

    def __init__(
        self,
        settings: Settings,
        registry: TableRegistry,
        ledger: MetadataLedger,
        events: EventSink,
        *,
        blob_store: BlobStore | None = None,
        retention: RetentionEnforcer | None = None,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._ledger = ledger
        self._events = events
        self._blob_store = blob_store
        self._retention = retention or RetentionEnforcer(
            settings.backup_dir,
            blob_store=blob_store,
            remote_prefix=settings.backup_bucket_prefix,
        )
        self._stage = OperationStage.IDLE

    @property
    def stage(self) -> OperationStage:
        return self._stage

    @property
    def is_busy(self) -> bool:
        return self._stage is not OperationStage.IDLE

    @property
    def backup_dir(self) -> Path:
        return self._settings.backup_dir

    @property
    def staging_dir(self) -> Path:
        return self.backup_dir / STAGING_DIRNAME

    def archive_path(self, backup_id: str) -> Path:
        return self.backup_dir / f"{backup_id}.zip"

    def _claim(self, stage: OperationStage) -> None:
        # No await between the check and the assignment, so the claim is atomic on the loop.
        if self._stage is not OperationStage.IDLE:
            raise BackupInProgressError(f"another operation is running (stage={self._stage.value})")
        self._stage = stage

    def _resolve_backup_options(self, options: BackupOptions | None) -> BackupOptions:
        options = options or BackupOptions()
        settings = self._settings
        tables = options.tables if options.tables is not None else tuple(settings.table_names)
        return BackupOptions(
            include_files=settings.backup_include_files if options.include_files is None else options.include_files,
            include_logs=settings.backup_include_logs if options.include_logs is None else options.include_logs,
            encrypt=settings.backup_encryption_enabled if options.encrypt is None else options.encrypt,
            retention_days=(
                settings.backup_retention_days if options.retention_days is None else options.retention_days
            ),
            tables=tables,
        )

    async def perform_backup(
        self,
        options: BackupOptions | None = None,
        *,
        origin: BackupOrigin = "manual",
    ) -> BackupRecord:
        resolved = self._resolve_backup_options(options)
        if resolved.encrypt and not self._settings.backup_encryption_key:
            raise ConfigurationError("BACKUP_ENCRYPTION_KEY is required when encryption is enabled")
        if resolved.retention_days is not None and resolved.retention_days <= 0:
            raise ConfigurationError("retention_days must be > 0")
        self._claim(OperationStage.EXPORTING)

        record = BackupRecord.create(origin=origin, encrypted=bool(resolved.encrypt))
        record.start()
        workdir = self.staging_dir / record.id
        staged_archive = self.staging_dir / f"{record.id}.zip"
        stored_archive: Path | None = None
        uploaded_key: str | None = None
        logger.info("backup_started backup_id=%s origin=%s", record.id, origin)
        try:
            try:
                await asyncio.to_thread(workdir.mkdir, parents=True)
                record.table_list = await transfer.export_tables(
                    self._registry,
                    resolved.tables or (),
                    workdir,
                    skip_failed=self._settings.backup_skip_failed_tables,
                )
                if resolved.include_files:
                    await asyncio.to_thread(
                        transfer.copy_file_trees,
                        self._settings.file_paths,
                        Path(self._settings.backup_files_root),
                        workdir,
                    )
                    record.includes_files = True
                if resolved.include_logs:
                    await transfer.export_recent_logs(
                        self._registry.get(AUDIT_LOG_TABLE),
                        workdir,
                        self._settings.backup_log_window_days,
                    )
                    record.includes_logs = True

                self._stage = OperationStage.ARCHIVING
                await asyncio.to_thread(archive.pack, workdir, staged_archive)

                self._stage = OperationStage.CHECKSUMMING
                record.content_checksum = await asyncio.to_thread(integrity.compute_digest, staged_archive)
                if record.encrypted:
                    self._stage = OperationStage.ENCRYPTING
                    await asyncio.to_thread(
                        integrity.encrypt_file,
                        staged_archive,
                        self._settings.backup_encryption_key,
                        iterations=self._settings.backup_kdf_iterations,
                    )
                    self._stage = OperationStage.CHECKSUMMING
                # The stored checksum covers the bytes on disk, so restores verify before decrypting.
                record.checksum = await asyncio.to_thread(integrity.compute_digest, staged_archive)
                record.size_bytes = staged_archive.stat().st_size

                stored_archive = self.archive_path(record.id)
                await asyncio.to_thread(os.replace, staged_archive, stored_archive)

                if self._blob_store is not None:
                    self._stage = OperationStage.UPLOADING
                    key = archive_key(self._settings.backup_bucket_prefix, record.id)
                    await self._blob_store.upload(stored_archive, key)
                    uploaded_key = key
            finally:
                self._stage = OperationStage.CLEANING_UP
                await asyncio.to_thread(shutil.rmtree, workdir, True)
                await asyncio.to_thread(staged_archive.unlink, True)

            if resolved.retention_days:
                self._stage = OperationStage.RETENTION
                result = await self._retention.enforce(
                    resolved.retention_days,
                    exclude={stored_archive.name},
                )
                if result.deleted:
                    logger.info("backup_retention_applied backup_id=%s deleted=%s", record.id, len(result.deleted))
            completed = replace(record)
            completed.complete()
            await self._ledger.append(completed)
            record = completed
        except Exception as exc:  # noqa: BLE001 - failures are recorded then re-raised
            self._stage = OperationStage.FAILED
            await self._discard_artifacts(record.id, stored_archive, uploaded_key)
            record.fail(str(exc))
            logger.error("backup_failed backup_id=%s", record.id, exc_info=exc)
            try:
                await self._ledger.append(record)
            except Exception as ledger_exc:  # noqa: BLE001 - the backup error is re-raised below
                logger.error("backup_ledger_write_failed backup_id=%s", record.id, exc_info=ledger_exc)
            await self._events.record("backup.failed", {**record.to_dict(), **_error_payload(exc)})
            raise
        else:
            self._stage = OperationStage.COMPLETED
            await self._events.record("backup.completed", record.to_dict())
            logger.info(
                "backup_completed backup_id=%s size_bytes=%s tables=%s encrypted=%s",
                record.id,
                record.size_bytes,
                len(record.table_list),
                record.encrypted,
            )
            return record
        finally:
            self._stage = OperationStage.IDLE

    async def _discard_artifacts(self, backup_id: str, stored_archive: Path | None, uploaded_key: str | None) -> None:
        # Best effort: a failed attempt must not leave an archive that looks restorable.
        if stored_archive is not None:
            try:
                await asyncio.to_thread(stored_archive.unlink, True)
            except OSError as exc:
                logger.warning("backup_archive_cleanup_failed backup_id=%s", backup_id, exc_info=exc)
        if uploaded_key is not None and self._blob_store is not None:
            try:
                await self._blob_store.delete(uploaded_key)
            except Exception as exc:  # noqa: BLE001 - the backup error is re-raised by the caller
                logger.warning("backup_remote_cleanup_failed backup_id=%s key=%s", backup_id, uploaded_key, exc_info=exc)

    async def _resolve_archive(self, backup_id: str, workdir: Path) -> Path:
        local = self.archive_path(backup_id)
        if local.exists():
            return local
        if self._blob_store is None:
            raise BackupNotFoundError(f"backup {backup_id} not found")
        downloaded = workdir / "download" / local.name
        await self._blob_store.download(archive_key(self._settings.backup_bucket_prefix, backup_id), downloaded)
        logger.info("backup_archive_downloaded backup_id=%s", backup_id)
        return downloaded

    async def _load_record(self, backup_id: str, *, required: bool) -> BackupRecord | None:
        try:
            record = await self._ledger.get(backup_id)
        except NotFoundError as exc:
            if required:
                raise BackupNotFoundError(f"backup {backup_id} has no metadata record") from exc
            return None
        if required and record.status is not BackupStatus.COMPLETED:
            raise BackupNotFoundError(f"backup {backup_id} did not complete (status={record.status.value})")
        return record

    def _discover_tables(self, contents_dir: Path) -> list[str]:
        # Without a ledger record the archive itself says which tables it holds.
        return sorted(path.stem for path in contents_dir.glob("*.json") if path.stem in self._registry)

    def _restore_files_dir(self, backup_id: str) -> Path:
        base = self._settings.backup_restore_files_dir
        root = Path(base) if base else self.backup_dir / RESTORED_FILES_DIRNAME
        return root / backup_id

    async def perform_recovery(
        self,
        backup_id: str,
        options: RecoveryOptions | None = None,
    ) -> RecoveryReport:
        """Restore the database (and archived file trees) from one backup.

        Destructive: every restored table is emptied before its rows are
        reloaded. Checksum verification happens before any data is touched
        unless ``skip_validation`` is set.
        """
        options = options or RecoveryOptions()
        _validate_backup_id(backup_id)
        self._claim(OperationStage.RESOLVING)

        started_at = _utc_now().isoformat()
        workdir = self.staging_dir / f"{backup_id}.restore-{secrets.token_hex(4)}"
        logger.info("recovery_started backup_id=%s skip_validation=%s", backup_id, options.skip_validation)
        try:
            try:
                await asyncio.to_thread(workdir.mkdir, parents=True)
                record = await self._load_record(backup_id, required=not options.skip_validation)
                source = await self._resolve_archive(backup_id, workdir)

                if not options.skip_validation and record is not None:
                    self._stage = OperationStage.VERIFYING
                    if not record.checksum:
                        raise IntegrityError(f"backup {backup_id} has no recorded checksum")
                    actual = await asyncio.to_thread(integrity.compute_digest, source)
                    if actual != record.checksum:
                        raise IntegrityError(f"checksum mismatch for backup {backup_id}")

                if await asyncio.to_thread(integrity.is_encrypted, source):
                    self._stage = OperationStage.DECRYPTING
                    working_copy = workdir / f"{backup_id}.zip"
                    # Decrypt a copy; the stored archive stays encrypted.
                    await asyncio.to_thread(shutil.copyfile, source, working_copy)
                    await asyncio.to_thread(
                        integrity.decrypt_file,
                        working_copy,
                        self._settings.backup_encryption_key,
                    )
                    source = working_copy
                    if not options.skip_validation and record is not None and record.content_checksum:
                        plaintext = await asyncio.to_thread(integrity.compute_digest, source)
                        if plaintext != record.content_checksum:
                            raise IntegrityError(f"decrypted content mismatch for backup {backup_id}")

                self._stage = OperationStage.UNPACKING
                contents_dir = workdir / "contents"
                await asyncio.to_thread(archive.unpack, source, contents_dir)

                self._stage = OperationStage.RESTORING
                if options.tables is not None:
                    tables = list(options.tables)
                elif record is not None:
                    tables = list(record.table_list)
                else:
                    tables = await asyncio.to_thread(self._discover_tables, contents_dir)
                missing = [name for name in tables if not transfer.table_file(contents_dir, name).exists()]
                restored = await transfer.import_tables(
                    self._registry,
                    tables,
                    contents_dir,
                    strict=self._settings.restore_strict_tables,
                )
                files_restored = await asyncio.to_thread(
                    transfer.restore_file_trees,
                    contents_dir / transfer.FILES_DIRNAME,
                    self._restore_files_dir(backup_id),
                )
            finally:
                self._stage = OperationStage.CLEANING_UP
                await asyncio.to_thread(shutil.rmtree, workdir, True)
            report = RecoveryReport(
                backup_id=backup_id,
                restored_tables=restored,
                missing_tables=missing,
                files_restored=files_restored,
                started_at=started_at,
                completed_at=_utc_now().isoformat(),
            )
        except Exception as exc:  # noqa: BLE001 - failures are recorded then re-raised
            self._stage = OperationStage.FAILED
            logger.error("recovery_failed backup_id=%s", backup_id, exc_info=exc)
            await self._events.record("recovery.failed", {"backup_id": backup_id, **_error_payload(exc)})
            raise
        else:
            self._stage = OperationStage.COMPLETED
            await self._events.record("recovery.completed", report.to_dict())
            logger.info(
                "recovery_completed backup_id=%s tables=%s missing=%s",
                backup_id,
                len(restored),
                len(missing),
            )
            return report
        finally:
            self._stage = OperationStage.IDLE

    async def list_backups(self) -> list[BackupRecord]:
        return await self._ledger.list()

    async def get_backup(self, backup_id: str) -> BackupRecord:
        return await self._ledger.get(backup_id)

    async def list_recovery_points(self) -> list[RecoveryPoint]:
        # Newest first; only completed backups can be restored.
        records = [record for record in await self._ledger.list() if record.status is BackupStatus.COMPLETED]
        records.sort(key=lambda record: record.timestamp, reverse=True)
        return [RecoveryPoint.from_record(record) for record in records]


def build_backup_service(
    settings: Settings | None = None,
    *,
    sessionmaker: async_sessionmaker[AsyncSession] | None = None,
    blob_client: Any | None = None,
) -> BackupRecoveryService:
    # Wire the service from settings; tests pass their own session factory and S3 client.
    settings = settings or get_settings()
    sessionmaker = sessionmaker or get_sessionmaker()
    blob_store = get_blob_store(settings, client=blob_client)
    return BackupRecoveryService(
        settings,
        build_table_registry(sessionmaker),
        build_ledger(settings.backup_ledger_backend, backup_dir=settings.backup_dir, sessionmaker=sessionmaker),
        AuditLogEventSink(sessionmaker),
        blob_store=blob_store,
    )
