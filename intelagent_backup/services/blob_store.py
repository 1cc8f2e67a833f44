from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
import logging
from pathlib import Path
from typing import Any, Protocol

from botocore.exceptions import BotoCoreError, ClientError

from intelagent_backup.core.config import Settings
from intelagent_backup.core.errors import BackupNotFoundError, BlobStoreError


logger = logging.getLogger(__name__)

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


@dataclass(frozen=True)
class BlobObject:
    key: str
    last_modified: datetime
    size: int


class BlobStore(Protocol):
    # Remote copy of backup archives; absent entirely in local-only mode.
    async def upload(self, local_path: Path, key: str) -> None:
        ...

    async def download(self, key: str, local_path: Path) -> None:
        ...

    async def list(self, prefix: str) -> list[BlobObject]:
        ...

    async def delete(self, key: str) -> None:
        ...


def archive_key(prefix: str, backup_id: str) -> str:
    return f"{prefix}{backup_id}.zip"


def _is_missing(exc: ClientError) -> bool:
    code = str(exc.response.get("Error", {}).get("Code", ""))
    return code in _MISSING_CODES


class S3BlobStore:
    def __init__(
        self,
        bucket: str,
        *,
        region: str,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        client: Any | None = None,
    ) -> None:
        self._bucket = bucket
        self._region = region
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._client = client

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        import boto3

        self._client = boto3.client(
            "s3",
            region_name=self._region,
            aws_access_key_id=self._access_key_id,
            aws_secret_access_key=self._secret_access_key,
        )
        return self._client

    async def upload(self, local_path: Path, key: str) -> None:
        client = self._get_client()
        # Cost/compliance policy: encrypted at rest and on the infrequent-access tier.
        extra_args = {"ServerSideEncryption": "AES256", "StorageClass": "STANDARD_IA"}
        try:
            await asyncio.to_thread(
                client.upload_file,
                str(local_path),
                self._bucket,
                key,
                ExtraArgs=extra_args,
            )
        except (BotoCoreError, ClientError) as exc:
            raise BlobStoreError(f"upload of {key} failed") from exc
        logger.info("blob_uploaded bucket=%s key=%s", self._bucket, key)

    async def download(self, key: str, local_path: Path) -> None:
        client = self._get_client()
        local_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            await asyncio.to_thread(client.download_file, self._bucket, key, str(local_path))
        except ClientError as exc:
            local_path.unlink(missing_ok=True)
            if _is_missing(exc):
                raise BackupNotFoundError(f"no remote archive at {key}") from exc
            raise BlobStoreError(f"download of {key} failed") from exc
        except BotoCoreError as exc:
            local_path.unlink(missing_ok=True)
            raise BlobStoreError(f"download of {key} failed") from exc

    async def list(self, prefix: str) -> list[BlobObject]:
        client = self._get_client()

        def _list_all() -> list[BlobObject]:
            paginator = client.get_paginator("list_objects_v2")
            objects: list[BlobObject] = []
            for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
                for item in page.get("Contents", []):
                    objects.append(
                        BlobObject(
                            key=item["Key"],
                            last_modified=item["LastModified"],
                            size=int(item.get("Size", 0)),
                        )
                    )
            return objects

        try:
            return await asyncio.to_thread(_list_all)
        except (BotoCoreError, ClientError) as exc:
            raise BlobStoreError(f"listing {prefix} failed") from exc

    async def delete(self, key: str) -> None:
        client = self._get_client()
        try:
            await asyncio.to_thread(client.delete_object, Bucket=self._bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            raise BlobStoreError(f"delete of {key} failed") from exc
        logger.info("blob_deleted bucket=%s key=%s", self._bucket, key)


def get_blob_store(settings: Settings, *, client: Any | None = None) -> BlobStore | None:
    # Local-only mode when credentials are absent; callers must treat None as supported.
    if not settings.cloud_enabled:
        return None
    return S3BlobStore(
        settings.backup_bucket,
        region=settings.aws_region,
        access_key_id=settings.aws_access_key_id,
        secret_access_key=settings.aws_secret_access_key,
        client=client,
    )
