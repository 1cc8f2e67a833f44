from __future__ import annotations

import re

import pytest

from intelagent_backup.domain.backups import (
    BackupRecord,
    BackupStatus,
    InvalidTransitionError,
    RecoveryPoint,
    new_backup_id,
)


def test_backup_ids_are_unique_and_well_formed() -> None:
    ids = {new_backup_id() for _ in range(200)}
    assert len(ids) == 200
    assert all(re.fullmatch(r"backup_\d{13}_[0-9a-f]{8}", backup_id) for backup_id in ids)


def test_status_moves_forward_only() -> None:
    record = BackupRecord.create(origin="automatic")
    assert record.status is BackupStatus.PENDING
    with pytest.raises(InvalidTransitionError):
        record.complete()
    record.start()
    record.complete()
    assert record.is_terminal
    with pytest.raises(InvalidTransitionError):
        record.fail("late")
    with pytest.raises(InvalidTransitionError):
        record.start()


def test_failed_records_keep_the_error() -> None:
    record = BackupRecord.create()
    record.start()
    record.fail("disk full")
    assert record.status is BackupStatus.FAILED
    assert record.error == "disk full"


def test_dict_round_trip_preserves_fields() -> None:
    record = BackupRecord.create(origin="automatic", encrypted=True)
    record.start()
    record.table_list = ["licenses", "teams"]
    record.checksum = "ab" * 32
    record.size_bytes = 1024
    record.complete()
    restored = BackupRecord.from_dict(record.to_dict())
    assert restored == record
    assert record.to_dict()["status"] == "completed"


def test_recovery_point_describes_the_backup() -> None:
    record = BackupRecord.create(origin="manual")
    record.table_list = ["licenses"]
    record.size_bytes = 10
    point = RecoveryPoint.from_record(record)
    assert point.backup_id == record.id
    assert point.origin == "manual"
    assert "licenses" in point.description
