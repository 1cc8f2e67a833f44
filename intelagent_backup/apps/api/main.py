from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn

from intelagent_backup.apps.api.errors import (
    backup_error_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from intelagent_backup.apps.api.response import API_VERSION
from intelagent_backup.apps.api.routes.backups import router as backups_router
from intelagent_backup.core.config import Settings, get_settings
from intelagent_backup.core.errors import BackupError
from intelagent_backup.core.logging import configure_logging
from intelagent_backup.services.backup import BackupRecoveryService, build_backup_service
from intelagent_backup.services.scheduler import BackupScheduler


logger = logging.getLogger(__name__)


def create_app(
    *,
    service: BackupRecoveryService | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        backup_service = service or build_backup_service(settings)
        app.state.backup_service = backup_service
        scheduler: BackupScheduler | None = None
        if settings.backup_schedule:
            scheduler = BackupScheduler(
                backup_service,
                settings.backup_schedule,
                hour=settings.backup_schedule_hour,
                tz=settings.backup_schedule_timezone,
            )
            scheduler.start()
            logger.info("backup_scheduler_started schedule=%s", settings.backup_schedule)
        app.state.backup_scheduler = scheduler
        try:
            yield
        finally:
            if scheduler is not None:
                await scheduler.stop()

    app = FastAPI(title="IntelAgent Backup API", lifespan=lifespan)
    if service is not None:
        # Injected services are usable even when the ASGI lifespan is not run (tests).
        app.state.backup_service = service

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(BackupError, backup_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(backups_router, prefix=f"/{API_VERSION}")
    return app


def run() -> None:
    # Serve the API with the backup scheduler attached to its lifespan.
    settings = get_settings()
    uvicorn.run(create_app(settings=settings), host=settings.api_host, port=settings.api_port)
