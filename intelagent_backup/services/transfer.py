from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import json
import logging
from pathlib import Path
import shutil
from typing import Any, Iterable

from sqlalchemy.exc import SQLAlchemyError

from intelagent_backup.core.errors import ConfigurationError, CorruptArchiveError, MissingTableDataError
from intelagent_backup.persistence.tables import TableAccessor, TableRegistry


logger = logging.getLogger(__name__)

FILES_DIRNAME = "files"
LOGS_DIRNAME = "logs"
AUDIT_LOG_FILENAME = "audit_logs.json"


def table_file(directory: Path, table: str) -> Path:
    return directory / f"{table}.json"


def _write_rows(path: Path, rows: list[dict[str, Any]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(rows, indent=2, ensure_ascii=False), encoding="utf-8")


def _read_rows(path: Path) -> list[dict[str, Any]]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise CorruptArchiveError(f"{path.name} is not valid JSON") from exc
    if not isinstance(payload, list):
        raise CorruptArchiveError(f"{path.name} must hold a JSON array of rows")
    return payload


async def export_tables(
    registry: TableRegistry,
    table_names: Iterable[str],
    dest_dir: Path,
    *,
    skip_failed: bool = False,
) -> list[str]:
    """Write ``<table>.json`` for every table into ``dest_dir``.

    All rows are loaded at once; there is no pagination, which caps practical
    table size at what fits in memory. A data-access failure aborts the export
    unless ``skip_failed`` is set, in which case the table is left out of the
    returned list and no file is written for it.
    """
    accessors = registry.resolve(table_names)
    exported: list[str] = []
    for accessor in accessors:
        try:
            rows = await accessor.fetch_all()
        except SQLAlchemyError as exc:
            if not skip_failed:
                raise
            logger.warning("table_export_skipped table=%s", accessor.name, exc_info=exc)
            continue
        await asyncio.to_thread(_write_rows, table_file(dest_dir, accessor.name), rows)
        logger.info("table_exported table=%s rows=%s", accessor.name, len(rows))
        exported.append(accessor.name)
    return exported


async def import_tables(
    registry: TableRegistry,
    table_names: Iterable[str],
    source_dir: Path,
    *,
    destructive: bool = True,
    strict: bool = False,
) -> dict[str, int]:
    """Load table snapshots from ``source_dir`` back into the database.

    Destructive mode deletes every existing row before inserting, per table in
    one transaction; it is a replacement, not a merge. Tables without a data
    file are skipped with a warning (or raise ``MissingTableDataError`` when
    ``strict``). Every file is parsed before the first table is touched.
    """
    accessors = registry.resolve(table_names)
    pending: list[tuple[TableAccessor, list[dict[str, Any]]]] = []
    for accessor in accessors:
        path = table_file(source_dir, accessor.name)
        if not path.exists():
            if strict:
                raise MissingTableDataError(f"no data file for table {accessor.name}")
            logger.warning("table_restore_missing_data table=%s", accessor.name)
            continue
        pending.append((accessor, await asyncio.to_thread(_read_rows, path)))

    counts: dict[str, int] = {}
    for accessor, rows in pending:
        if not destructive:
            counts[accessor.name] = await accessor.insert_many(rows)
        elif rows:
            counts[accessor.name] = await accessor.replace_all(rows)
        else:
            await accessor.delete_all()
            counts[accessor.name] = 0
        logger.info("table_restored table=%s rows=%s destructive=%s", accessor.name, counts[accessor.name], destructive)
    return counts


def _tree_target(files_dir: Path, raw_path: str) -> Path:
    relative = Path(raw_path)
    if relative.is_absolute() or ".." in relative.parts or not relative.parts:
        raise ConfigurationError(f"backup file path must be relative to the files root: {raw_path!r}")
    return files_dir / relative


def copy_file_trees(paths: Iterable[str], root: Path, dest_dir: Path) -> list[str]:
    # Trees keep their root-relative path under files/.
    files_dir = dest_dir / FILES_DIRNAME
    files_dir.mkdir(parents=True, exist_ok=True)
    copied: list[str] = []
    for raw_path in paths:
        target = _tree_target(files_dir, raw_path)
        try:
            shutil.copytree(root / raw_path, target, dirs_exist_ok=True)
        except (OSError, shutil.Error) as exc:
            logger.warning("file_tree_backup_failed path=%s", raw_path, exc_info=exc)
            continue
        copied.append(raw_path)
    return copied


async def export_recent_logs(accessor: TableAccessor, dest_dir: Path, window_days: int) -> int:
    since = datetime.now(timezone.utc) - timedelta(days=window_days)
    rows = await accessor.fetch_all(since=since)
    await asyncio.to_thread(_write_rows, dest_dir / LOGS_DIRNAME / AUDIT_LOG_FILENAME, rows)
    logger.info("audit_logs_exported rows=%s window_days=%s", len(rows), window_days)
    return len(rows)


def restore_file_trees(files_dir: Path, restore_dir: Path) -> bool:
    # Restored trees land beside the live ones; operators promote them manually.
    if not files_dir.is_dir():
        return False
    restore_dir.mkdir(parents=True, exist_ok=True)
    shutil.copytree(files_dir, restore_dir, dirs_exist_ok=True)
    return True
