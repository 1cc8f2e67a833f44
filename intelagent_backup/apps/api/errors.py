from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from intelagent_backup.apps.api.response import error_response
from intelagent_backup.core.errors import (
    BackupError,
    BackupInProgressError,
    BlobStoreError,
    ConfigurationError,
    CorruptArchiveError,
    IntegrityError,
    MissingTableDataError,
    NotFoundError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific classes first; lookup walks the exception's MRO.
_STATUS_BY_ERROR: dict[type[BackupError], int] = {
    BackupInProgressError: 409,
    ConfigurationError: 503,
    IntegrityError: 422,
    CorruptArchiveError: 422,
    NotFoundError: 404,
    MissingTableDataError: 422,
    BlobStoreError: 502,
}


def status_for_error(exc: BackupError) -> int:
    for cls in type(exc).__mro__:
        status_code = _STATUS_BY_ERROR.get(cls)
        if status_code is not None:
            return status_code
    return 500


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def backup_error_handler(request: Request, exc: BackupError) -> JSONResponse:
    status_code = status_for_error(exc)
    if status_code >= 500:
        logger.warning("backup_request_failed path=%s code=%s", request.url.path, exc.code, exc_info=exc)
    payload = error_response(request=request, code=exc.code, message=str(exc))
    return JSONResponse(content=payload, status_code=status_code)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Surface validation errors with structured details for SDK parsing.
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.error("unhandled_request_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
