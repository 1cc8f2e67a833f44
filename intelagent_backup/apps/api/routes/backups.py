from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from intelagent_backup.apps.api.deps import get_backup_service
from intelagent_backup.apps.api.response import Envelope, success_response
from intelagent_backup.domain.backups import BackupOptions, BackupRecord, RecoveryOptions
from intelagent_backup.services.backup import BackupRecoveryService


router = APIRouter(prefix="/backups", tags=["backups"])


class BackupCreateRequest(BaseModel):
    # Unset fields fall back to the service configuration.
    include_files: bool | None = None
    include_logs: bool | None = None
    encrypt: bool | None = None
    retention_days: int | None = Field(default=None, ge=1)
    tables: list[str] | None = None


class BackupRecordResponse(BaseModel):
    id: str
    timestamp: datetime
    kind: str
    origin: str
    format_version: str
    size_bytes: int
    table_list: list[str]
    checksum: str
    content_checksum: str
    encrypted: bool
    includes_files: bool
    includes_logs: bool
    status: str
    error: str | None = None


class BackupListResponse(BaseModel):
    items: list[BackupRecordResponse]
    busy: bool
    stage: str


class RecoveryPointResponse(BaseModel):
    backup_id: str
    timestamp: datetime
    description: str
    origin: str


class RecoveryPointListResponse(BaseModel):
    items: list[RecoveryPointResponse]


class RestoreRequest(BaseModel):
    # Restores replace table contents, so callers must opt in explicitly.
    allow_destructive: bool = False
    tables: list[str] | None = None
    skip_validation: bool = False


class RestoreResponse(BaseModel):
    backup_id: str
    restored_tables: dict[str, int]
    missing_tables: list[str]
    files_restored: bool
    started_at: datetime
    completed_at: datetime


def _record_response(record: BackupRecord) -> BackupRecordResponse:
    return BackupRecordResponse(**record.to_dict())


@router.post("", response_model=Envelope[BackupRecordResponse])
async def create_backup(
    request: Request,
    payload: BackupCreateRequest | None = None,
    service: BackupRecoveryService = Depends(get_backup_service),
) -> dict[str, Any]:
    payload = payload or BackupCreateRequest()
    options = BackupOptions(
        include_files=payload.include_files,
        include_logs=payload.include_logs,
        encrypt=payload.encrypt,
        retention_days=payload.retention_days,
        tables=tuple(payload.tables) if payload.tables is not None else None,
    )
    record = await service.perform_backup(options, origin="manual")
    return success_response(request=request, data=_record_response(record))


@router.get("", response_model=Envelope[BackupListResponse])
async def list_backups(
    request: Request,
    service: BackupRecoveryService = Depends(get_backup_service),
) -> dict[str, Any]:
    records = await service.list_backups()
    data = BackupListResponse(
        items=[_record_response(record) for record in records],
        busy=service.is_busy,
        stage=service.stage.value,
    )
    return success_response(request=request, data=data)


@router.get("/recovery-points", response_model=Envelope[RecoveryPointListResponse])
async def list_recovery_points(
    request: Request,
    service: BackupRecoveryService = Depends(get_backup_service),
) -> dict[str, Any]:
    points = await service.list_recovery_points()
    data = RecoveryPointListResponse(
        items=[
            RecoveryPointResponse(
                backup_id=point.backup_id,
                timestamp=point.timestamp,
                description=point.description,
                origin=point.origin,
            )
            for point in points
        ]
    )
    return success_response(request=request, data=data)


@router.get("/{backup_id}", response_model=Envelope[BackupRecordResponse])
async def get_backup(
    backup_id: str,
    request: Request,
    service: BackupRecoveryService = Depends(get_backup_service),
) -> dict[str, Any]:
    record = await service.get_backup(backup_id)
    return success_response(request=request, data=_record_response(record))


@router.post("/{backup_id}/restore", response_model=Envelope[RestoreResponse])
async def restore_backup(
    backup_id: str,
    payload: RestoreRequest,
    request: Request,
    service: BackupRecoveryService = Depends(get_backup_service),
) -> dict[str, Any]:
    if not payload.allow_destructive:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "DESTRUCTIVE_RESTORE_NOT_CONFIRMED",
                "message": "Restore replaces table contents; set allow_destructive=true to proceed",
            },
        )
    options = RecoveryOptions(
        tables=tuple(payload.tables) if payload.tables is not None else None,
        skip_validation=payload.skip_validation,
    )
    report = await service.perform_recovery(backup_id, options)
    return success_response(request=request, data=RestoreResponse(**report.to_dict()))
