# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
S3 destination - Amazon S3 or any S3-compatible service (MinIO, Wasabi,
R2) via aiobotocore.

Keys are stored exactly as given; the destination base path is resolved
by the caller. Every transport failure (service errors, botocore errors
such as missing credentials or an unreachable endpoint, and aiohttp
connection errors) surfaces as StorageError.
"""

import os
from contextlib import AsyncExitStack
from pathlib import Path
from typing import Any, Dict, List

import aiofiles
import aiohttp
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from dbbackupman.exceptions import StorageError

logger = structlog.get_logger()

# Batch size for S3 listing
LIST_BATCH_SIZE = 1000

# Files above this size are sent with a multipart upload
MULTIPART_THRESHOLD = 64 * 1024 * 1024

# S3 requires parts of at least 5 MiB (except the last)
PART_SIZE = 16 * 1024 * 1024

S3_ERRORS = (ClientError, BotoCoreError, aiohttp.ClientError)


class S3Destination:
    """Storage destination backed by one S3 bucket."""

    def __init__(
        self,
        name: str,
        *,
        bucket: str,
        region: str = "us-east-1",
        endpoint_url: str | None = None,
        client: Any = None,
        multipart_threshold: int = MULTIPART_THRESHOLD,
        part_size: int = PART_SIZE,
    ):
        self.name = name
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url
        self.multipart_threshold = multipart_threshold
        self.part_size = part_size
        self._client = client
        self._stack: AsyncExitStack | None = None

    async def __aenter__(self) -> "S3Destination":
        if self._client is None:
            from aiobotocore.session import get_session

            self._stack = AsyncExitStack()
            session = get_session()
            try:
                self._client = await self._stack.enter_async_context(
                    session.create_client(
                        "s3",
                        region_name=self.region,
                        endpoint_url=self.endpoint_url,
                    )
                )
            except S3_ERRORS as e:
                await self._stack.aclose()
                self._stack = None
                raise self._error(f"Failed to open S3 client: {e}", e) from e
        return self

    async def __aexit__(self, *exc_info) -> None:
        if self._stack is not None:
            await self._stack.aclose()
            self._stack = None
            self._client = None

    @property
    def client(self) -> Any:
        if self._client is None:
            raise StorageError(
                f"S3 destination {self.name!r} is not open",
                details={"bucket": self.bucket},
            )
        return self._client

    def _error(self, message: str, error: Exception, key: str | None = None) -> StorageError:
        details: Dict[str, Any] = {"destination": self.name, "bucket": self.bucket}
        if key is not None:
            details["key"] = key
        if isinstance(error, ClientError):
            details["code"] = error.response.get("Error", {}).get("Code", "Unknown")
        return StorageError(message, details=details)

    async def exists(self, key: str) -> bool:
        try:
            await self.client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("404", "NoSuchKey", "NotFound"):
                return False
            raise self._error(f"Failed to check {key}: {e}", e, key) from e
        except S3_ERRORS as e:
            raise self._error(f"Failed to check {key}: {e}", e, key) from e

    async def get(self, key: str) -> bytes:
        try:
            response = await self.client.get_object(Bucket=self.bucket, Key=key)
            async with response["Body"] as stream:
                return await stream.read()
        except S3_ERRORS as e:
            raise self._error(f"Failed to read {key}: {e}", e, key) from e

    async def put(self, key: str, data: bytes) -> None:
        try:
            await self.client.put_object(Bucket=self.bucket, Key=key, Body=data)
        except S3_ERRORS as e:
            raise self._error(f"Failed to write {key}: {e}", e, key) from e

        logger.debug("s3_object_written", destination=self.name, key=key, size=len(data))

    async def put_file(self, key: str, path: Path) -> int:
        """
        Upload a local file without holding more than one part in memory.

        Returns:
            Number of bytes uploaded
        """
        try:
            size = os.path.getsize(path)
        except OSError as e:
            raise StorageError(
                f"Cannot read {path}: {e}",
                details={"destination": self.name, "key": key, "path": str(path)},
            ) from e

        if size <= self.multipart_threshold:
            try:
                async with aiofiles.open(path, "rb") as f:
                    data = await f.read()
            except OSError as e:
                raise StorageError(
                    f"Cannot read {path}: {e}",
                    details={"destination": self.name, "key": key, "path": str(path)},
                ) from e
            await self.put(key, data)
            return size

        await self._multipart_upload(key, Path(path))
        logger.debug("s3_object_written", destination=self.name, key=key, size=size, multipart=True)
        return size

    async def _multipart_upload(self, key: str, path: Path) -> None:
        try:
            response = await self.client.create_multipart_upload(Bucket=self.bucket, Key=key)
        except S3_ERRORS as e:
            raise self._error(f"Failed to start upload of {key}: {e}", e, key) from e
        upload_id = response["UploadId"]

        parts: List[Dict[str, Any]] = []
        try:
            async with aiofiles.open(path, "rb") as f:
                part_number = 1
                while True:
                    chunk = await f.read(self.part_size)
                    if not chunk:
                        break
                    part = await self.client.upload_part(
                        Bucket=self.bucket,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=chunk,
                    )
                    parts.append({"PartNumber": part_number, "ETag": part["ETag"]})
                    part_number += 1

            await self.client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts},
            )
        except (OSError, *S3_ERRORS) as e:
            await self._abort_multipart(key, upload_id)
            raise self._error(f"Failed to write {key}: {e}", e, key) from e

    async def _abort_multipart(self, key: str, upload_id: str) -> None:
        try:
            await self.client.abort_multipart_upload(Bucket=self.bucket, Key=key, UploadId=upload_id)
        except S3_ERRORS as e:
            logger.warning(
                "s3_multipart_abort_failed",
                destination=self.name,
                key=key,
                upload_id=upload_id,
                error=str(e),
            )

    async def list(self, prefix: str = "") -> List[str]:
        keys: List[str] = []

        try:
            paginator = self.client.get_paginator("list_objects_v2")
            async for page in paginator.paginate(
                Bucket=self.bucket,
                Prefix=prefix,
                MaxKeys=LIST_BATCH_SIZE,
            ):
                for obj in page.get("Contents", []):
                    keys.append(obj["Key"])
        except S3_ERRORS as e:
            raise self._error(f"Failed to list {prefix!r}: {e}", e) from e

        return sorted(keys)

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete_object(Bucket=self.bucket, Key=key)
        except S3_ERRORS as e:
            raise self._error(f"Failed to delete {key}: {e}", e, key) from e

        logger.debug("s3_object_deleted", destination=self.name, key=key)
