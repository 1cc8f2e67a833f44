from __future__ import annotations

from fastapi import HTTPException, Request

from intelagent_backup.services.backup import BackupRecoveryService


def get_backup_service(request: Request) -> BackupRecoveryService:
    # The lifespan hook owns the service; one instance per process keeps single-flight meaningful.
    service = getattr(request.app.state, "backup_service", None)
    if service is None:
        raise HTTPException(
            status_code=503,
            detail={"code": "SERVICE_UNAVAILABLE", "message": "Backup service is not initialized"},
        )
    return service
