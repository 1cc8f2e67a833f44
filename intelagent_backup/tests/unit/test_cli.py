from __future__ import annotations

import json

import pytest

from intelagent_backup.apps import cli
from intelagent_backup.core.errors import (
    BackupInProgressError,
    BackupNotFoundError,
    ConfigurationError,
    CorruptArchiveError,
    DecryptionError,
    IntegrityError,
)
from intelagent_backup.domain.backups import BackupRecord, RecoveryReport


class _StubService:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[tuple[str, object]] = []

    async def perform_backup(self, options=None, *, origin="manual"):
        self.calls.append(("backup", options))
        if self.error:
            raise self.error
        record = BackupRecord.create(origin=origin)
        record.start()
        record.complete()
        return record

    async def list_backups(self):
        self.calls.append(("list", None))
        return [BackupRecord.create()]

    async def perform_recovery(self, backup_id, options=None):
        self.calls.append(("restore", (backup_id, options)))
        if self.error:
            raise self.error
        return RecoveryReport(
            backup_id=backup_id,
            restored_tables={"licenses": 2},
            missing_tables=[],
            files_restored=False,
            started_at="2026-10-01T00:00:00+00:00",
            completed_at="2026-10-01T00:00:01+00:00",
        )


def test_create_passes_flags_as_options(capsys) -> None:
    service = _StubService()
    code = cli.main(
        ["backup", "create", "--include-logs", "--encrypt", "--retention", "7", "--tables", "licenses, teams"],
        service=service,  # type: ignore[arg-type]
    )
    assert code == cli.EXIT_OK
    _name, options = service.calls[0]
    assert options.include_logs is True
    assert options.include_files is None
    assert options.encrypt is True
    assert options.retention_days == 7
    assert options.tables == ("licenses", "teams")
    assert json.loads(capsys.readouterr().out)["status"] == "completed"


def test_list_prints_json_array(capsys) -> None:
    assert cli.main(["backup", "list"], service=_StubService()) == cli.EXIT_OK  # type: ignore[arg-type]
    payload = json.loads(capsys.readouterr().out)
    assert isinstance(payload, list) and payload[0]["status"] == "pending"


def test_restore_warns_on_stderr(capsys) -> None:
    service = _StubService()
    code = cli.main(["backup", "restore", "backup_1_abcd1234", "--skip-validation"], service=service)  # type: ignore[arg-type]
    assert code == cli.EXIT_OK
    captured = capsys.readouterr()
    assert "WARNING" in captured.err
    assert json.loads(captured.out)["restored_tables"] == {"licenses": 2}
    _name, (backup_id, options) = service.calls[0]
    assert backup_id == "backup_1_abcd1234"
    assert options.skip_validation is True
    assert options.tables is None


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (BackupInProgressError("busy"), cli.EXIT_IN_PROGRESS),
        (BackupNotFoundError("gone"), cli.EXIT_NOT_FOUND),
        (IntegrityError("mismatch"), cli.EXIT_INTEGRITY),
        (DecryptionError("wrong key"), cli.EXIT_INTEGRITY),
        (ConfigurationError("no key"), cli.EXIT_CONFIGURATION),
        (CorruptArchiveError("bad zip"), cli.EXIT_FAILED),
    ],
)
def test_backup_errors_map_to_exit_codes(capsys, error: Exception, expected: int) -> None:
    code = cli.main(["backup", "restore", "backup_1_abcd1234"], service=_StubService(error))  # type: ignore[arg-type]
    assert code == expected
    payload = json.loads(capsys.readouterr().err.splitlines()[-1])
    assert payload["error"]["code"] == error.code
