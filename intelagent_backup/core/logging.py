from __future__ import annotations

import logging

from intelagent_backup.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_NOISY_LOGGERS = ("botocore", "boto3", "urllib3", "s3transfer", "aiosqlite")


def configure_logging(level: str | None = None) -> None:
    # Configure root logging once per process; entrypoints call this before work starts.
    resolved = (level or get_settings().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, resolved, logging.INFO),
        format=_LOG_FORMAT,
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
