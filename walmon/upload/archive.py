# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
WALMON Archive - Self-contained full-backup archives.

A full backup's repository directory is packed into a tar stream and
compressed with zstd, so a single object in remote storage is enough to
rebuild the repository even without the mirrored tree.
"""

import asyncio
import tarfile
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import structlog
import zstandard as zstd

from walmon.exceptions import UploadError

logger = structlog.get_logger()

# Thread pool for CPU-bound compression
_executor = ThreadPoolExecutor(max_workers=2)

ARCHIVE_SUFFIX = ".tar.zst"


async def create_repository_archive(
    source_dir: Path,
    archive_path: Path,
    level: int = 10,
) -> Path:
    """
    Create a ``.tar.zst`` archive of ``source_dir``.

    The archive is written atomically (write to temp, then rename).

    Args:
        source_dir: Directory to pack (e.g. ``<repo>/backup/<stanza>``)
        archive_path: Destination file
        level: zstd compression level

    Returns:
        Path to the archive
    """
    if not source_dir.is_dir():
        raise UploadError(
            f"Archive source directory not found: {source_dir}",
            details={"source_dir": str(source_dir)},
        )

    loop = asyncio.get_running_loop()
    try:
        await loop.run_in_executor(
            _executor, _create_archive_sync, source_dir, archive_path, level
        )
    except Exception as e:
        raise UploadError(
            f"Failed to create archive: {e}",
            details={"source_dir": str(source_dir), "archive_path": str(archive_path)},
        )

    logger.info(
        "repository_archive_created",
        archive_path=str(archive_path),
        size=archive_path.stat().st_size,
    )
    return archive_path


def _create_archive_sync(source_dir: Path, archive_path: Path, level: int) -> None:
    archive_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = archive_path.with_name(archive_path.name + ".tmp")

    cctx = zstd.ZstdCompressor(level=level)
    with open(temp_path, "wb") as fh:
        with cctx.stream_writer(fh, closefd=False) as compressor:
            with tarfile.open(fileobj=compressor, mode="w|") as tar:
                tar.add(source_dir, arcname=source_dir.name)

    # Rename to final path (atomic on most filesystems)
    temp_path.rename(archive_path)


async def extract_repository_archive(archive_path: Path, extract_to: Path) -> Path:
    """
    Unpack a ``.tar.zst`` archive into ``extract_to``.

    Members with absolute paths or ``..`` are rejected.
    """
    loop = asyncio.get_running_loop()
    try:
        await loop.run_in_executor(_executor, _extract_archive_sync, archive_path, extract_to)
    except UploadError:
        raise
    except Exception as e:
        raise UploadError(
            f"Failed to extract archive: {e}",
            details={"archive_path": str(archive_path)},
        )
    return extract_to


def _extract_archive_sync(archive_path: Path, extract_to: Path) -> None:
    extract_to.mkdir(parents=True, exist_ok=True)
    dctx = zstd.ZstdDecompressor()
    with open(archive_path, "rb") as fh:
        with dctx.stream_reader(fh) as reader:
            with tarfile.open(fileobj=reader, mode="r|") as tar:
                for member in tar:
                    if member.name.startswith("/") or ".." in Path(member.name).parts:
                        raise UploadError(
                            f"Unsafe path in archive: {member.name}",
                            details={"archive_path": str(archive_path)},
                        )
                    tar.extract(member, extract_to, filter="data")
