from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"

DataT = TypeVar("DataT")


class EnvelopeMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class Envelope(BaseModel, Generic[DataT]):
    """Body of every successful backup API response; errors carry ``error`` instead of ``data``."""

    data: DataT
    meta: EnvelopeMeta


def _meta(request: Request) -> dict[str, str]:
    # The request-context middleware sets the id; a fresh one covers handlers that run outside it.
    request_id = getattr(request.state, "request_id", None) or str(uuid4())
    return {"request_id": request_id, "api_version": API_VERSION}


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    return {"data": data, "meta": _meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details
    return {"error": error, "meta": _meta(request)}
