from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
from typing import Awaitable, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from intelagent_backup.core.errors import BackupInProgressError, ConfigurationError
from intelagent_backup.domain.backups import BackupRecord
from intelagent_backup.services.backup import BackupRecoveryService


logger = logging.getLogger(__name__)

SCHEDULES = ("hourly", "daily", "weekly")
# datetime.weekday() numbering: Monday is 0, Sunday is 6.
SUNDAY = 6


def load_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigurationError(f"unknown backup schedule timezone: {name}") from exc


def _normalize(moment: datetime) -> datetime:
    # Wall-clock arithmetic can land on a skipped or doubled hour; a UTC round trip fixes the offset.
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).astimezone(moment.tzinfo)


def seconds_until(due: datetime, now: datetime) -> float:
    # Same-zone subtraction ignores DST offsets, so compare absolute instants.
    if due.tzinfo is not None and now.tzinfo is not None:
        due, now = due.astimezone(timezone.utc), now.astimezone(timezone.utc)
    return max((due - now).total_seconds(), 0.0)


def next_run_at(schedule: str, now: datetime, *, hour: int = 2, weekday: int = SUNDAY) -> datetime:
    """Return the first run strictly after ``now`` for a named schedule.

    Daily and weekly runs are pinned to ``hour`` on the wall clock of
    ``now``'s zone, including across DST changes.
    """
    if schedule == "hourly":
        return _normalize(now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1))
    if schedule not in SCHEDULES:
        raise ConfigurationError(f"unknown backup schedule: {schedule}")
    candidate = now.replace(hour=hour, minute=0, second=0, microsecond=0, fold=0)
    if schedule == "daily":
        if candidate <= now:
            candidate += timedelta(days=1)
        return _normalize(candidate)
    candidate += timedelta(days=(weekday - now.weekday()) % 7)
    if candidate <= now:
        candidate += timedelta(days=7)
    return _normalize(candidate)


class BackupScheduler:
    """Trigger automatic backups on a recurring schedule inside the event loop."""

    def __init__(
        self,
        service: BackupRecoveryService,
        schedule: str,
        *,
        hour: int = 2,
        tz: str = "UTC",
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if schedule not in SCHEDULES:
            raise ConfigurationError(f"unknown backup schedule: {schedule}")
        self._service = service
        self._schedule = schedule
        self._hour = hour
        self._zone = load_zone(tz)
        self._clock = clock or self._now
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None

    def _now(self) -> datetime:
        return datetime.now(self._zone)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def next_run(self) -> datetime:
        return next_run_at(self._schedule, self._clock(), hour=self._hour)

    async def trigger(self) -> BackupRecord | None:
        # One scheduled tick; errors are logged so the next tick stays armed.
        try:
            return await self._service.perform_backup(origin="automatic")
        except BackupInProgressError:
            logger.warning("scheduled_backup_skipped reason=in_progress schedule=%s", self._schedule)
        except Exception as exc:  # noqa: BLE001 - scheduled failures must not stop the loop
            logger.error("scheduled_backup_failed schedule=%s", self._schedule, exc_info=exc)
        return None

    async def run(self, *, max_runs: int | None = None) -> None:
        runs = 0
        while max_runs is None or runs < max_runs:
            due = self.next_run()
            delay = seconds_until(due, self._clock())
            logger.info("scheduled_backup_armed schedule=%s next_run=%s", self._schedule, due.isoformat())
            await self._sleep(delay)
            await self.trigger()
            runs += 1

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self.run(), name=f"backup-scheduler-{self._schedule}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
