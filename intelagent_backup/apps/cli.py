from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Sequence

from intelagent_backup.core.config import get_settings
from intelagent_backup.core.errors import (
    BackupError,
    BackupInProgressError,
    ConfigurationError,
    IntegrityError,
    NotFoundError,
)
from intelagent_backup.core.logging import configure_logging
from intelagent_backup.domain.backups import BackupOptions, RecoveryOptions
from intelagent_backup.services.backup import BackupRecoveryService, build_backup_service


EXIT_OK = 0
EXIT_FAILED = 1
EXIT_IN_PROGRESS = 3
EXIT_NOT_FOUND = 4
EXIT_INTEGRITY = 5
EXIT_CONFIGURATION = 6

_EXIT_CODES: tuple[tuple[type[BackupError], int], ...] = (
    (BackupInProgressError, EXIT_IN_PROGRESS),
    (NotFoundError, EXIT_NOT_FOUND),
    (IntegrityError, EXIT_INTEGRITY),
    (ConfigurationError, EXIT_CONFIGURATION),
)


def exit_code_for(exc: BackupError) -> int:
    for error_type, code in _EXIT_CODES:
        if isinstance(exc, error_type):
            return code
    return EXIT_FAILED


def _split_tables(raw: str | None) -> tuple[str, ...] | None:
    if raw is None:
        return None
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="intelagent-backup", description="Back up and restore platform data")
    parser.add_argument("--log-level", default=None)
    commands = parser.add_subparsers(dest="command", required=True)

    backup = commands.add_parser("backup", help="Backup operations")
    actions = backup.add_subparsers(dest="action", required=True)

    create = actions.add_parser("create", help="Create a full backup now")
    create.add_argument("--include-files", action="store_true", default=None)
    create.add_argument("--include-logs", action="store_true", default=None)
    create.add_argument("--encrypt", action="store_true", default=None)
    create.add_argument("--retention", type=int, default=None, metavar="DAYS")
    create.add_argument("--tables", default=None, help="Comma-delimited logical tables")

    actions.add_parser("list", help="List recorded backups")

    restore = actions.add_parser("restore", help="Restore a backup (replaces table contents)")
    restore.add_argument("backup_id")
    restore.add_argument("--tables", default=None, help="Comma-delimited logical tables")
    restore.add_argument("--skip-validation", action="store_true")
    return parser


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def run_command(args: argparse.Namespace, service: BackupRecoveryService) -> int:
    if args.action == "create":
        options = BackupOptions(
            include_files=args.include_files,
            include_logs=args.include_logs,
            encrypt=args.encrypt,
            retention_days=args.retention,
            tables=_split_tables(args.tables),
        )
        record = await service.perform_backup(options, origin="manual")
        _emit(record.to_dict())
        return EXIT_OK
    if args.action == "list":
        _emit([record.to_dict() for record in await service.list_backups()])
        return EXIT_OK
    if args.action == "restore":
        print(
            f"WARNING: restoring {args.backup_id} replaces the contents of every restored table",
            file=sys.stderr,
        )
        options = RecoveryOptions(tables=_split_tables(args.tables), skip_validation=args.skip_validation)
        report = await service.perform_recovery(args.backup_id, options)
        _emit(report.to_dict())
        return EXIT_OK
    raise ValueError(f"unknown action: {args.action}")


def main(argv: Sequence[str] | None = None, *, service: BackupRecoveryService | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    try:
        return asyncio.run(run_command(args, service or build_backup_service(get_settings())))
    except BackupError as exc:
        print(json.dumps({"error": {"code": exc.code, "message": str(exc)}}), file=sys.stderr)
        return exit_code_for(exc)


if __name__ == "__main__":
    sys.exit(main())
