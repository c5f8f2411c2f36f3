# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
stackops Object Store - Streaming S3 access for backup archives.

Archives can be large, so uploads and downloads move fixed-size chunks
between a local file and S3 and never hold a whole object in memory.
Uploads larger than one chunk use multipart upload; an interrupted
multipart upload is aborted, so a failed or cancelled transfer never
leaves a partial object behind.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, List

import aiofiles
import structlog
from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from stackops.config import StackOpsConfig
from stackops.exceptions import (
    ObjectNotFound,
    StoreUnavailable,
    TransferFailed,
    UploadFailed,
)

logger = structlog.get_logger()

# S3 requires parts of at least 5 MiB except the last one
DEFAULT_CHUNK_SIZE = 8 * 1024 * 1024
MIN_PART_SIZE = 5 * 1024 * 1024

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


@dataclass
class ObjectInfo:
    """One listed object."""

    key: str
    size: int
    last_modified: datetime


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


def human_size(size: int) -> str:
    """Format a byte count the way ``aws s3 ls --human-readable`` does."""
    value = float(size)
    for unit in ("Bytes", "KiB", "MiB", "GiB", "TiB"):
        if value < 1024 or unit == "TiB":
            if unit == "Bytes":
                return f"{int(value)} {unit}"
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} Bytes"


class ObjectStore:
    """A bucket behind one open aiobotocore S3 client."""

    def __init__(self, client: Any, bucket: str, chunk_size: int = DEFAULT_CHUNK_SIZE):
        if chunk_size < MIN_PART_SIZE:
            raise ValueError(f"chunk_size must be >= {MIN_PART_SIZE}, got {chunk_size}")
        self.client = client
        self.bucket = bucket
        self.chunk_size = chunk_size

    def url(self, key: str) -> str:
        return f"s3://{self.bucket}/{key}"

    async def list(self, prefix: str) -> List[ObjectInfo]:
        """
        List every object under a prefix.

        Returns an empty list when nothing matches.

        Raises:
            StoreUnavailable: On credential, network or bucket errors
        """
        objects: List[ObjectInfo] = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            async for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    objects.append(
                        ObjectInfo(
                            key=obj["Key"],
                            size=int(obj["Size"]),
                            last_modified=obj["LastModified"],
                        )
                    )
        except (ClientError, BotoCoreError) as e:
            raise StoreUnavailable(
                f"Failed to list {self.url(prefix)}: {e}",
                details={"bucket": self.bucket, "prefix": prefix},
            ) from e
        return objects

    async def head(self, key: str) -> int:
        """
        Size of an object.

        Raises:
            ObjectNotFound: If the key does not exist
            StoreUnavailable: On any other error
        """
        try:
            response = await self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                raise ObjectNotFound(
                    f"Backup not found: {self.url(key)}",
                    details={"key": key},
                ) from e
            raise StoreUnavailable(f"Failed to inspect {self.url(key)}: {e}") from e
        except BotoCoreError as e:
            raise StoreUnavailable(f"Failed to inspect {self.url(key)}: {e}") from e
        return int(response["ContentLength"])

    async def upload(self, path: Path, key: str) -> int:
        """
        Stream a local file to key.

        Args:
            path: Local file to upload
            key: Destination key

        Returns:
            Number of bytes committed

        Raises:
            UploadFailed: On any error; nothing is retried
        """
        try:
            size = path.stat().st_size
        except OSError as e:
            raise UploadFailed(f"Cannot read {path}: {e}", details={"key": key}) from e

        try:
            if size <= self.chunk_size:
                async with aiofiles.open(path, "rb") as f:
                    body = await f.read()
                await self.client.put_object(Bucket=self.bucket, Key=key, Body=body)
                committed = len(body)
            else:
                committed = await self._multipart_upload(path, key)
        except (ClientError, BotoCoreError, OSError) as e:
            raise UploadFailed(
                f"Failed to upload {path.name} to {self.url(key)}: {e}",
                details={"key": key, "size": size},
            ) from e

        logger.debug("object_uploaded", key=key, size=committed)
        return committed

    async def _multipart_upload(self, path: Path, key: str) -> int:
        created = await self.client.create_multipart_upload(Bucket=self.bucket, Key=key)
        upload_id = created["UploadId"]
        parts = []
        committed = 0
        try:
            async with aiofiles.open(path, "rb") as f:
                part_number = 1
                while True:
                    chunk = await f.read(self.chunk_size)
                    if not chunk:
                        break
                    response = await self.client.upload_part(
                        Bucket=self.bucket,
                        Key=key,
                        UploadId=upload_id,
                        PartNumber=part_number,
                        Body=chunk,
                    )
                    parts.append({"ETag": response["ETag"], "PartNumber": part_number})
                    committed += len(chunk)
                    part_number += 1

            await self.client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts},
            )
        except BaseException:
            try:
                await self.client.abort_multipart_upload(
                    Bucket=self.bucket, Key=key, UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning("multipart_abort_failed", key=key, error=str(abort_error))
            raise
        return committed

    async def download(self, key: str, dest: Path) -> int:
        """
        Stream key into a local file.

        Returns:
            Number of bytes written

        Raises:
            ObjectNotFound: If the key does not exist
            TransferFailed: On any other error
        """
        written = 0
        try:
            response = await self.client.get_object(Bucket=self.bucket, Key=key)
            async with response["Body"] as stream:
                async with aiofiles.open(dest, "wb") as f:
                    while True:
                        chunk = await stream.read(self.chunk_size)
                        if not chunk:
                            break
                        await f.write(chunk)
                        written += len(chunk)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                raise ObjectNotFound(
                    f"Backup not found: {self.url(key)}",
                    details={"key": key},
                ) from e
            raise TransferFailed(f"Failed to download {self.url(key)}: {e}") from e
        except (BotoCoreError, OSError) as e:
            raise TransferFailed(f"Failed to download {self.url(key)}: {e}") from e

        logger.debug("object_downloaded", key=key, size=written)
        return written

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise StoreUnavailable(f"Failed to delete {self.url(key)}: {e}") from e


@asynccontextmanager
async def open_store(
    bucket: str,
    *,
    region: str,
    endpoint_url: str | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> AsyncIterator[ObjectStore]:
    """Open an S3 client for one run and wrap it as an ObjectStore."""
    session = get_session()
    async with session.create_client(
        "s3",
        region_name=region,
        endpoint_url=endpoint_url,
    ) as client:
        yield ObjectStore(client, bucket, chunk_size=chunk_size)


def open_store_for(config: StackOpsConfig, bucket: str):
    """open_store() with region and endpoint taken from config."""
    return open_store(bucket, region=config.region, endpoint_url=config.endpoint_url)
