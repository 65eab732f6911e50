# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Volback Remote Store - Archive transfers to and from an S3-compatible bucket.

Objects live in one flat namespace: key = remote_prefix + archive name.
Every transfer is bounded by an overall deadline (transfer_timeout_seconds),
not only by the connection timeout.
"""

import asyncio
import os
from pathlib import Path
from typing import Any, List

import aiofiles
import structlog
from aiobotocore.config import AioConfig
from botocore.exceptions import BotoCoreError, ClientError

from volback.archive.naming import ArchiveEntry, is_archive_name, parse_archive_name
from volback.config import VolbackConfig
from volback.exceptions import (
    EmptyObject,
    IntegrityMismatch,
    InvalidArchiveName,
    NotFound,
    TransferFailure,
)

logger = structlog.get_logger()

DOWNLOAD_CHUNK_SIZE = 1024 * 1024
MULTIPART_CHUNK_SIZE = 8 * 1024 * 1024

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


def _error_code(e: ClientError) -> str:
    return str(e.response.get("Error", {}).get("Code", ""))


class RemoteStore:
    """Gateway to the archive bucket."""

    def __init__(self, config: VolbackConfig, session: Any = None):
        if session is None:
            from aiobotocore.session import get_session

            session = get_session()

        self.config = config
        self.session = session
        self.bucket = config.bucket
        self.prefix = config.remote_prefix

    def _client(self):
        return self.session.create_client(
            "s3",
            region_name=self.config.region,
            endpoint_url=self.config.endpoint_url,
            aws_access_key_id=self.config.access_key_id,
            aws_secret_access_key=self.config.secret_access_key,
            config=AioConfig(
                connect_timeout=self.config.connect_timeout_seconds,
                retries={"max_attempts": 2, "mode": "standard"},
            ),
        )

    def key_for(self, name: str) -> str:
        return f"{self.prefix}{name}"

    async def _bounded(self, operation: str, name: str, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.config.transfer_timeout_seconds)
        except asyncio.TimeoutError:
            raise TransferFailure(
                f"{operation} of {name} exceeded {self.config.transfer_timeout_seconds}s",
                details={"operation": operation, "name": name, "bucket": self.bucket},
            )

    # ------------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------------

    async def upload(self, local_path: Path, name: str) -> None:
        """
        Upload a local archive and verify the stored size.

        Raises:
            TransferFailure: Network, auth or timeout error
            IntegrityMismatch: Remote size differs from the local file
        """
        await self._bounded("upload", name, self._upload(Path(local_path), name))

    async def _upload(self, local_path: Path, name: str) -> None:
        key = self.key_for(name)

        try:
            local_size = local_path.stat().st_size

            async with self._client() as s3_client:
                if local_size <= MULTIPART_CHUNK_SIZE:
                    async with aiofiles.open(local_path, "rb") as f:
                        content = await f.read()
                    await s3_client.put_object(Bucket=self.bucket, Key=key, Body=content)
                else:
                    await self._upload_multipart(s3_client, local_path, key)
                response = await s3_client.head_object(Bucket=self.bucket, Key=key)

        except (ClientError, BotoCoreError, OSError) as e:
            raise TransferFailure(
                f"Upload of {name} failed: {e}",
                details={"bucket": self.bucket, "key": key},
            )

        remote_size = response["ContentLength"]
        if remote_size != local_size:
            raise IntegrityMismatch(
                f"Uploaded size of {name} does not match local file",
                details={"key": key, "local_size": local_size, "remote_size": remote_size},
            )

        logger.info("archive_uploaded", archive=name, key=key, size=remote_size)

    async def _upload_multipart(self, s3_client, local_path: Path, key: str) -> None:
        """Upload in MULTIPART_CHUNK_SIZE parts; only one part is held in memory."""
        created = await s3_client.create_multipart_upload(Bucket=self.bucket, Key=key)
        upload_id = created["UploadId"]
        parts = []

        try:
            async with aiofiles.open(local_path, "rb") as f:
                part_number = 1
                while True:
                    chunk = await f.read(MULTIPART_CHUNK_SIZE)
                    if not chunk:
                        break
                    response = await s3_client.upload_part(
                        Bucket=self.bucket,
                        Key=key,
                        UploadId=upload_id,
                        PartNumber=part_number,
                        Body=chunk,
                    )
                    parts.append({"ETag": response["ETag"], "PartNumber": part_number})
                    part_number += 1

            await s3_client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts},
            )
        except (ClientError, BotoCoreError, OSError):
            try:
                await s3_client.abort_multipart_upload(
                    Bucket=self.bucket, Key=key, UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(
                    "multipart_abort_failed", key=key, upload_id=upload_id, error=str(abort_error)
                )
            raise

        logger.debug("multipart_upload_completed", key=key, parts=len(parts))

    # ------------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------------

    async def download(self, name: str, local_path: Path) -> None:
        """
        Download an archive to a local path.

        The object is streamed to a temporary file and renamed into place.

        Raises:
            NotFound: The object does not exist
            EmptyObject: The object has zero bytes
            TransferFailure: Any other transfer error
        """
        await self._bounded("download", name, self._download(name, Path(local_path)))

    async def _download(self, name: str, local_path: Path) -> None:
        key = self.key_for(name)
        temp_path = local_path.with_name(f".{local_path.name}.part")
        written = 0

        try:
            local_path.parent.mkdir(parents=True, exist_ok=True)

            async with self._client() as s3_client:
                response = await s3_client.get_object(Bucket=self.bucket, Key=key)
                async with response["Body"] as stream:
                    async with aiofiles.open(temp_path, "wb") as f:
                        while True:
                            chunk = await stream.read(DOWNLOAD_CHUNK_SIZE)
                            if not chunk:
                                break
                            await f.write(chunk)
                            written += len(chunk)

        except ClientError as e:
            temp_path.unlink(missing_ok=True)
            if _error_code(e) in _NOT_FOUND_CODES:
                raise NotFound(
                    f"Archive not found in bucket: {name}",
                    details={"bucket": self.bucket, "key": key},
                )
            raise TransferFailure(
                f"Download of {name} failed: {e}",
                details={"bucket": self.bucket, "key": key},
            )
        except (BotoCoreError, OSError) as e:
            temp_path.unlink(missing_ok=True)
            raise TransferFailure(
                f"Download of {name} failed: {e}",
                details={"bucket": self.bucket, "key": key},
            )
        except asyncio.CancelledError:
            temp_path.unlink(missing_ok=True)
            raise

        if written == 0:
            temp_path.unlink(missing_ok=True)
            raise EmptyObject(
                f"Downloaded archive is empty: {name}",
                details={"bucket": self.bucket, "key": key},
            )

        os.replace(temp_path, local_path)
        logger.info("archive_downloaded", archive=name, path=str(local_path), size=written)

    # ------------------------------------------------------------------------
    # Listing and deletion
    # ------------------------------------------------------------------------

    async def list(self, invalid: List[str] | None = None) -> List[ArchiveEntry]:
        """
        List archives under the prefix, oldest first.

        Objects whose name does not match the archive pattern, including
        anything in a "subdirectory" of the prefix, are ignored.

        Args:
            invalid: When given, names that match the pattern but encode an
                invalid timestamp are appended here and skipped instead of
                raising

        Raises:
            TransferFailure: The listing could not be retrieved
            InvalidArchiveName: A matching name encodes an invalid timestamp
        """
        return await self._bounded("list", self.prefix or "/", self._list(invalid))

    async def _list(self, invalid: List[str] | None) -> List[ArchiveEntry]:
        entries: List[ArchiveEntry] = []

        try:
            async with self._client() as s3_client:
                paginator = s3_client.get_paginator("list_objects_v2")
                async for page in paginator.paginate(Bucket=self.bucket, Prefix=self.prefix):
                    for obj in page.get("Contents", []):
                        name = obj["Key"][len(self.prefix):]
                        if not is_archive_name(name, self.config.archive_prefix):
                            continue
                        try:
                            created_at = parse_archive_name(name, self.config.archive_prefix)
                        except InvalidArchiveName:
                            if invalid is None:
                                raise
                            logger.warning("archive_name_invalid", archive=name, location="remote")
                            invalid.append(name)
                            continue
                        entries.append(
                            ArchiveEntry(name=name, created_at=created_at, size=obj.get("Size"))
                        )
        except (ClientError, BotoCoreError) as e:
            raise TransferFailure(
                f"Listing bucket {self.bucket} failed: {e}",
                details={"bucket": self.bucket, "prefix": self.prefix},
            )

        return sorted(entries, key=lambda e: e.name)

    async def delete(self, name: str) -> None:
        """
        Delete an archive. Deleting a missing archive is not an error.

        Raises:
            TransferFailure: The delete request failed
        """
        await self._bounded("delete", name, self._delete(name))

    async def _delete(self, name: str) -> None:
        key = self.key_for(name)
        try:
            async with self._client() as s3_client:
                await s3_client.delete_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return
            raise TransferFailure(
                f"Delete of {name} failed: {e}",
                details={"bucket": self.bucket, "key": key},
            )
        except BotoCoreError as e:
            raise TransferFailure(
                f"Delete of {name} failed: {e}",
                details={"bucket": self.bucket, "key": key},
            )

        logger.info("remote_archive_deleted", archive=name, key=key)

    async def is_reachable(self) -> bool:
        """Lightweight probe: can we see the bucket right now?"""
        try:
            async with self._client() as s3_client:
                await asyncio.wait_for(
                    s3_client.head_bucket(Bucket=self.bucket),
                    timeout=self.config.connect_timeout_seconds,
                )
            return True
        except (ClientError, BotoCoreError, OSError, asyncio.TimeoutError) as e:
            logger.warning("remote_unreachable", bucket=self.bucket, error=str(e))
            return False
