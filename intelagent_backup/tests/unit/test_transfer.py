from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, timezone
from decimal import Decimal
import json
from pathlib import Path
from uuid import UUID

import pytest
from sqlalchemy import Date, DateTime, LargeBinary, Numeric, Uuid
from sqlalchemy.exc import OperationalError

from intelagent_backup.core.errors import ConfigurationError, CorruptArchiveError, MissingTableDataError
from intelagent_backup.persistence.tables import TableRegistry, decode_value, encode_value
from intelagent_backup.services import transfer
from intelagent_backup.tests.utils.seed import seed_platform, snapshot


def test_values_survive_json_encoding() -> None:
    stamp = datetime(2026, 10, 1, 8, 30, tzinfo=timezone.utc)
    ident = UUID("12345678-1234-5678-1234-567812345678")
    assert decode_value(DateTime(timezone=True), encode_value(stamp)) == stamp
    assert decode_value(Date(), encode_value(date(2026, 9, 1))) == date(2026, 9, 1)
    assert decode_value(Numeric(12, 4), encode_value(Decimal("1.2500"))) == Decimal("1.2500")
    assert decode_value(Uuid(), encode_value(ident)) == ident
    assert decode_value(LargeBinary(), encode_value(b"\x00\xff")) == b"\x00\xff"
    assert decode_value(DateTime(), None) is None
    json.dumps([encode_value(value) for value in (stamp, ident, Decimal("2"), b"x")])


@pytest.mark.asyncio
async def test_export_then_import_restores_every_row(registry: TableRegistry, sessionmaker, tmp_path: Path) -> None:
    await seed_platform(sessionmaker)
    names = ["licenses", "usage_metrics", "notifications", "ai_insights"]
    before = await snapshot(registry, names)

    exported = await transfer.export_tables(registry, names, tmp_path)
    assert exported == names
    assert sorted(path.name for path in tmp_path.glob("*.json")) == sorted(f"{name}.json" for name in names)
    notifications = json.loads((tmp_path / "notifications.json").read_text(encoding="utf-8"))
    assert notifications[0]["metadata_json"] == {"invoice": "INV-9", "lines": [1, 2]}

    for name in names:
        await registry.get(name).delete_all()
    counts = await transfer.import_tables(registry, names, tmp_path)
    assert counts == {name: len(before[name]) for name in names}
    assert await snapshot(registry, names) == before


@pytest.mark.asyncio
async def test_destructive_import_replaces_rather_than_merges(registry: TableRegistry, sessionmaker, tmp_path: Path) -> None:
    await seed_platform(sessionmaker)
    await transfer.export_tables(registry, ["licenses"], tmp_path)
    await registry.get("licenses").insert_many([{"license_key": "LIC-NEW", "status": "active"}])

    await transfer.import_tables(registry, ["licenses"], tmp_path)
    keys = [row["license_key"] for row in await registry.get("licenses").fetch_all()]
    assert keys == ["LIC-001", "LIC-002"]


@pytest.mark.asyncio
async def test_empty_snapshot_clears_table(registry: TableRegistry, sessionmaker, tmp_path: Path) -> None:
    await seed_platform(sessionmaker)
    transfer.table_file(tmp_path, "teams").write_text("[]", encoding="utf-8")
    assert await transfer.import_tables(registry, ["teams"], tmp_path) == {"teams": 0}
    assert await registry.get("teams").fetch_all() == []


@pytest.mark.asyncio
async def test_missing_data_file_skips_or_raises(registry: TableRegistry, sessionmaker, tmp_path: Path) -> None:
    await seed_platform(sessionmaker)
    await transfer.export_tables(registry, ["licenses"], tmp_path)
    assert await transfer.import_tables(registry, ["licenses", "teams"], tmp_path) == {"licenses": 2}
    with pytest.raises(MissingTableDataError):
        await transfer.import_tables(registry, ["licenses", "teams"], tmp_path, strict=True)


@pytest.mark.asyncio
async def test_corrupt_snapshot_aborts_before_any_table_changes(
    registry: TableRegistry, sessionmaker, tmp_path: Path
) -> None:
    await seed_platform(sessionmaker)
    await transfer.export_tables(registry, ["licenses"], tmp_path)
    await registry.get("licenses").insert_many([{"license_key": "LIC-NEW", "status": "active"}])
    before = await snapshot(registry, ["licenses"])
    transfer.table_file(tmp_path, "teams").write_text("{not json", encoding="utf-8")

    with pytest.raises(CorruptArchiveError):
        await transfer.import_tables(registry, ["licenses", "teams"], tmp_path)
    assert await snapshot(registry, ["licenses"]) == before


@pytest.mark.asyncio
async def test_unknown_table_is_a_configuration_error(registry: TableRegistry, tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        await transfer.export_tables(registry, ["invoices"], tmp_path)


@pytest.mark.asyncio
async def test_export_failure_policy(registry: TableRegistry, sessionmaker, tmp_path: Path) -> None:
    await seed_platform(sessionmaker)

    async def _broken_fetch(*, since=None):
        raise OperationalError("SELECT", {}, Exception("relation does not exist"))

    broken = TableRegistry(
        replace(registry.get(name), fetch_all=_broken_fetch) if name == "teams" else registry.get(name)
        for name in registry.names
    )
    with pytest.raises(OperationalError):
        await transfer.export_tables(broken, ["licenses", "teams"], tmp_path / "strict")

    exported = await transfer.export_tables(broken, ["licenses", "teams", "organizations"], tmp_path / "lenient", skip_failed=True)
    assert exported == ["licenses", "organizations"]
    assert not transfer.table_file(tmp_path / "lenient", "teams").exists()


def test_file_trees_copy_and_restore(tmp_path: Path) -> None:
    root = tmp_path / "app"
    (root / "packages" / "core").mkdir(parents=True)
    (root / "packages" / "core" / "index.txt").write_text("core", encoding="utf-8")

    staging = tmp_path / "staging"
    copied = transfer.copy_file_trees(["packages", "apps/missing/public"], root, staging)
    assert copied == ["packages"]
    assert (staging / "files" / "packages" / "core" / "index.txt").exists()

    restore_dir = tmp_path / "restored" / "backup_1"
    assert transfer.restore_file_trees(staging / "files", restore_dir)
    assert (restore_dir / "packages" / "core" / "index.txt").read_text(encoding="utf-8") == "core"
    assert not transfer.restore_file_trees(tmp_path / "nothing", restore_dir)


def test_trees_sharing_a_basename_keep_their_own_paths(tmp_path: Path) -> None:
    root = tmp_path / "app"
    for portal in ("admin-portal", "customer-portal"):
        public = root / "apps" / portal / "public"
        public.mkdir(parents=True)
        (public / "index.html").write_text(portal, encoding="utf-8")

    staging = tmp_path / "staging"
    paths = ["apps/admin-portal/public", "apps/customer-portal/public"]
    assert transfer.copy_file_trees(paths, root, staging) == paths
    files_dir = staging / "files"
    assert (files_dir / "apps" / "admin-portal" / "public" / "index.html").read_text(encoding="utf-8") == "admin-portal"
    assert (files_dir / "apps" / "customer-portal" / "public" / "index.html").read_text(encoding="utf-8") == (
        "customer-portal"
    )
    assert not (files_dir / "public").exists()


@pytest.mark.parametrize("raw_path", ["/etc", "../outside", "apps/../../outside", "."])
def test_file_paths_outside_the_root_are_rejected(tmp_path: Path, raw_path: str) -> None:
    with pytest.raises(ConfigurationError):
        transfer.copy_file_trees([raw_path], tmp_path / "app", tmp_path / "staging")


@pytest.mark.asyncio
async def test_recent_logs_respect_window(registry: TableRegistry, sessionmaker, tmp_path: Path) -> None:
    await seed_platform(sessionmaker)
    count = await transfer.export_recent_logs(registry.get("audit_logs"), tmp_path, window_days=30)
    assert count == 1
    rows = json.loads((tmp_path / "logs" / "audit_logs.json").read_text(encoding="utf-8"))
    assert [row["action"] for row in rows] == ["license.created"]
