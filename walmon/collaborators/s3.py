# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
S3 collaborator - Remote sync straight to an S3 bucket with aiobotocore.

Sync mirrors the repository like ``rclone sync``: an object whose ETag
already matches the local file's MD5 is skipped, changed or new files are
uploaded, and objects whose local file is gone (expired by pgBackRest) are
deleted. Excluded lock and temp files are neither uploaded nor deleted.
"""

import asyncio
import fnmatch
import hashlib
from pathlib import Path
from typing import Any, Dict, List

import aiofiles
import structlog

from walmon.collaborators import SyncResult
from walmon.collaborators.rclone import SYNC_EXCLUDES

logger = structlog.get_logger()


def _excluded(name: str) -> bool:
    return any(fnmatch.fnmatch(name, pattern) for pattern in SYNC_EXCLUDES)


class S3Remote:
    """Remote sync collaborator for S3-compatible storage."""

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        endpoint_url: str | None = None,
        session: Any = None,
        max_concurrent: int = 10,
    ):
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url
        self.max_concurrent = max_concurrent
        self._session = session

    def _client(self) -> Any:
        if self._session is None:
            from aiobotocore.session import get_session

            self._session = get_session()
        return self._session.create_client(
            "s3",
            region_name=self.region,
            endpoint_url=self.endpoint_url,
        )

    @staticmethod
    def _prefix(remote_path: str) -> str:
        return remote_path.strip("/") + "/"

    async def _remote_etags(self, s3_client: Any, prefix: str) -> Dict[str, str]:
        etags: Dict[str, str] = {}
        paginator = s3_client.get_paginator("list_objects_v2")
        async for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for obj in page.get("Contents", []):
                etags[obj["Key"]] = obj.get("ETag", "").strip('"')
        return etags

    async def sync_repository(self, local_path: Path, remote_path: str) -> SyncResult:
        """Mirror the local repository under ``remote_path``."""
        prefix = self._prefix(remote_path)
        files = {
            f"{prefix}{p.relative_to(local_path).as_posix()}": p
            for p in local_path.rglob("*")
            if p.is_file() and not _excluded(p.name)
        }
        errors: List[str] = []
        transferred = 0
        deleted = 0
        semaphore = asyncio.Semaphore(self.max_concurrent)

        try:
            async with self._client() as s3_client:
                remote = await self._remote_etags(s3_client, prefix)

                async def upload_file(key: str, path: Path) -> None:
                    nonlocal transferred
                    async with semaphore:
                        try:
                            async with aiofiles.open(path, "rb") as f:
                                content = await f.read()
                            # Single-part uploads carry the MD5 as ETag
                            if remote.get(key) == hashlib.md5(content).hexdigest():
                                return
                            await s3_client.put_object(Bucket=self.bucket, Key=key, Body=content)
                            transferred += 1
                        except Exception as e:
                            errors.append(f"{path}: {e}")
                            logger.error("s3_file_sync_failed", path=str(path), error=str(e))

                async def delete_key(key: str) -> None:
                    nonlocal deleted
                    async with semaphore:
                        try:
                            await s3_client.delete_object(Bucket=self.bucket, Key=key)
                            deleted += 1
                        except Exception as e:
                            errors.append(f"{key}: {e}")
                            logger.error("s3_stale_delete_failed", key=key, error=str(e))

                await asyncio.gather(*[upload_file(k, p) for k, p in files.items()])

                stale = [
                    k for k in remote
                    if k not in files and not _excluded(k.rsplit("/", 1)[-1])
                ]
                await asyncio.gather(*[delete_key(k) for k in stale])

        except Exception as e:
            return SyncResult(False, remote_path, diagnostic=str(e))

        logger.info(
            "s3_sync_complete",
            bucket=self.bucket,
            prefix=prefix,
            files=transferred,
            deleted=deleted,
            errors=len(errors),
        )
        return SyncResult(
            not errors,
            remote_path,
            diagnostic="; ".join(errors[:5]),
            files_transferred=transferred,
            errors=errors,
        )

    async def upload_object(self, local_file: Path, remote_path: str) -> SyncResult:
        key = f"{self._prefix(remote_path)}{local_file.name}"
        try:
            async with aiofiles.open(local_file, "rb") as f:
                content = await f.read()
            async with self._client() as s3_client:
                await s3_client.put_object(Bucket=self.bucket, Key=key, Body=content)
        except Exception as e:
            return SyncResult(False, remote_path, diagnostic=str(e))
        return SyncResult(True, key, files_transferred=1)

    async def download_object(self, remote_path: str, local_file: Path) -> SyncResult:
        try:
            async with self._client() as s3_client:
                response = await s3_client.get_object(
                    Bucket=self.bucket, Key=remote_path.strip("/")
                )
                async with response["Body"] as stream:
                    content = await stream.read()
            local_file.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(local_file, "wb") as f:
                await f.write(content)
        except Exception as e:
            return SyncResult(False, remote_path, diagnostic=str(e))
        return SyncResult(True, remote_path, files_transferred=1)

    async def list(self, remote_path: str) -> List[str]:
        """Names of objects and sub-directories directly under ``remote_path``."""
        prefix = self._prefix(remote_path)
        names: List[str] = []
        try:
            async with self._client() as s3_client:
                paginator = s3_client.get_paginator("list_objects_v2")
                async for page in paginator.paginate(
                    Bucket=self.bucket, Prefix=prefix, Delimiter="/"
                ):
                    for obj in page.get("Contents", []):
                        names.append(obj["Key"][len(prefix):])
                    for common in page.get("CommonPrefixes", []):
                        names.append(common["Prefix"][len(prefix):])
        except Exception as e:
            logger.warning("s3_list_failed", prefix=prefix, error=str(e))
            return []
        return [n for n in names if n]

    async def delete(self, remote_path: str) -> SyncResult:
        try:
            async with self._client() as s3_client:
                await s3_client.delete_object(Bucket=self.bucket, Key=remote_path.strip("/"))
        except Exception as e:
            return SyncResult(False, remote_path, diagnostic=str(e))
        return SyncResult(True, remote_path)

    async def fetch_repository(self, remote_path: str, local_path: Path) -> SyncResult:
        """Download every object under ``remote_path`` into ``local_path``."""
        prefix = self._prefix(remote_path)
        transferred = 0
        try:
            async with self._client() as s3_client:
                paginator = s3_client.get_paginator("list_objects_v2")
                async for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                    for obj in page.get("Contents", []):
                        relative = obj["Key"][len(prefix):]
                        if not relative or relative.endswith("/"):
                            continue
                        target = local_path / relative
                        if not target.resolve().is_relative_to(local_path.resolve()):
                            raise ValueError(f"Unsafe key outside repository: {obj['Key']}")
                        target.parent.mkdir(parents=True, exist_ok=True)
                        response = await s3_client.get_object(Bucket=self.bucket, Key=obj["Key"])
                        async with response["Body"] as stream:
                            content = await stream.read()
                        async with aiofiles.open(target, "wb") as f:
                            await f.write(content)
                        transferred += 1
        except Exception as e:
            return SyncResult(False, remote_path, diagnostic=str(e))
        return SyncResult(True, remote_path, files_transferred=transferred)
