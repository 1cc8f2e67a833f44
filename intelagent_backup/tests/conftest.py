from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from intelagent_backup.core.config import Settings
from intelagent_backup.persistence.db import build_engine, create_schema
from intelagent_backup.persistence.tables import TableRegistry, build_table_registry
from intelagent_backup.services.backup import BackupRecoveryService
from intelagent_backup.services.ledger import JsonFileLedger
from intelagent_backup.tests.utils.fakes import RecordingEventSink
from intelagent_backup.tests.utils.settings import make_settings


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
async def engine(settings: Settings) -> AsyncEngine:
    # Fresh SQLite database per test; the schema comes straight from the ORM models.
    engine = build_engine(settings.database_url)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def registry(sessionmaker: async_sessionmaker[AsyncSession]) -> TableRegistry:
    return build_table_registry(sessionmaker)


@pytest.fixture
def events() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def ledger(settings: Settings) -> JsonFileLedger:
    return JsonFileLedger(settings.backup_dir)


@pytest.fixture
def service(
    settings: Settings,
    registry: TableRegistry,
    ledger: JsonFileLedger,
    events: RecordingEventSink,
) -> BackupRecoveryService:
    return BackupRecoveryService(settings, registry, ledger, events)
