from __future__ import annotations


class BackupError(Exception):
    """Base error for the backup engine."""

    code = "BACKUP_FAILED"


class BackupInProgressError(BackupError):
    """A backup or recovery is already running in this process."""

    code = "BACKUP_IN_PROGRESS"


class ConfigurationError(BackupError):
    """Missing or invalid configuration (encryption key, credentials, tables)."""

    code = "CONFIGURATION_ERROR"


class IntegrityError(BackupError):
    """Archive failed checksum verification or carries malformed ciphertext."""

    code = "INTEGRITY_CHECK_FAILED"


class DecryptionError(IntegrityError):
    """Ciphertext failed authentication; usually a wrong key."""

    code = "DECRYPTION_FAILED"


class CorruptArchiveError(BackupError):
    """Archive cannot be parsed or unpacked safely."""

    code = "CORRUPT_ARCHIVE"


class NotFoundError(BackupError):
    """Ledger lookup miss."""

    code = "NOT_FOUND"


class BackupNotFoundError(NotFoundError):
    """No local or remote archive exists for the requested backup id."""

    code = "BACKUP_NOT_FOUND"


class MissingTableDataError(BackupError):
    """A requested restore table has no data file in the archive."""

    code = "MISSING_TABLE_DATA"


class BlobStoreError(BackupError):
    """Object storage request failure."""

    code = "BLOB_STORE_ERROR"
