from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from intelagent_backup.domain.models import AuditLog


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["key", "secret", "token", "password"]
_REDACTED_VALUE = "[REDACTED]"

SYSTEM_LICENSE_KEY = "SYSTEM"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


class EventSink(Protocol):
    async def record(self, event_name: str, payload: dict[str, Any]) -> None:
        ...


class AuditLogEventSink:
    """Write backup lifecycle events to the platform's ``audit_logs`` table."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession], *, best_effort: bool = True) -> None:
        self._sessionmaker = sessionmaker
        self._best_effort = best_effort

    async def record(self, event_name: str, payload: dict[str, Any]) -> None:
        # Audit writes never mask the backup outcome; failures are logged instead.
        event = AuditLog(
            organization_id=None,
            license_key=SYSTEM_LICENSE_KEY,
            user_id=None,
            action=event_name,
            resource_type="backup",
            resource_id=payload.get("id") or payload.get("backup_id"),
            changes=sanitize_metadata(payload),
            created_at=datetime.now(timezone.utc),
        )
        async with self._sessionmaker() as session:
            try:
                session.add(event)
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                level = logger.warning if self._best_effort else logger.error
                level("audit_event_write_failed event=%s", event_name, exc_info=exc)
                if not self._best_effort:
                    raise
