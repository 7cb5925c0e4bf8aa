# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
WALMON Upload Coordinator - Ship a finished backup to remote storage.

After a successful backup the local pgBackRest repository is mirrored to
``<remote_path>/<db>/repository`` and a small JSON metadata record is
written to ``<remote_path>/<db>/<type>-backups/``. Full backups also get a
self-contained ``.tar.zst`` archive next to their record.

Nothing here raises: the backup and the state update already succeeded,
so an upload problem is a warning and the next sync catches up.
"""

import json
import re
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import List

import aiofiles
import structlog

from walmon.collaborators import RemoteSync
from walmon.config import BackupType, MonitorConfig
from walmon.upload.archive import ARCHIVE_SUFFIX, create_repository_archive

logger = structlog.get_logger()

_NAME_DATE = re.compile(r"(\d{8})_\d{6}")


@dataclass
class UploadResult:
    """Result of one upload."""

    success: bool
    backup_type: BackupType
    label: str | None
    archive_reference: str | None = None
    archive_path: str | None = None
    pruned: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def build_metadata(
    config: MonitorConfig,
    backup_type: BackupType,
    label: str | None,
    triggered_by: str,
    operation_id: str | None = None,
    now: datetime | None = None,
) -> dict:
    """Metadata record describing one uploaded backup."""
    timestamp = (now or datetime.now(UTC)).strftime("%Y-%m-%dT%H:%M:%SZ")
    return {
        "backup_type": backup_type.value,
        "stanza": config.stanza,
        "timestamp": timestamp,
        "database_identifier": config.database_identifier,
        "backup_label": label,
        "triggered_by": triggered_by,
        "wal_threshold": config.wal_growth_threshold,
        "operation_id": operation_id,
    }


async def upload_backup(
    config: MonitorConfig,
    remote: RemoteSync,
    backup_type: BackupType,
    label: str | None,
    triggered_by: str = "wal_monitor",
    operation_id: str | None = None,
) -> UploadResult:
    """
    Upload a finished backup.

    Args:
        config: Monitor configuration
        remote: Remote storage collaborator
        backup_type: Type of the backup that just completed
        label: pgBackRest label of that backup
        triggered_by: Source recorded in the metadata
        operation_id: Operation ID of the tick or command

    Returns:
        UploadResult; ``archive_reference`` is the metadata record's remote path
    """
    result = UploadResult(success=False, backup_type=backup_type, label=label)
    try:
        return await _upload(config, remote, result, triggered_by, operation_id)
    except Exception as e:
        result.errors.append(str(e))
        logger.warning(
            "backup_upload_failed",
            operation_id=operation_id,
            backup_type=backup_type.value,
            error=str(e),
        )
        return result


async def _upload(
    config: MonitorConfig,
    remote: RemoteSync,
    result: UploadResult,
    triggered_by: str,
    operation_id: str | None,
) -> UploadResult:
    backup_type = result.backup_type
    label = result.label
    now = datetime.now(UTC)
    stamp = now.strftime("%Y%m%d_%H%M%S")
    type_path = config.remote_type_path(backup_type)

    # Step 1: Mirror the repository
    sync = await remote.sync_repository(config.repository_path, config.remote_repository_path)
    if not sync.success:
        result.errors.append(f"repository sync failed: {sync.diagnostic}")
        logger.warning(
            "repository_sync_failed",
            operation_id=operation_id,
            remote_path=config.remote_repository_path,
            diagnostic=sync.diagnostic,
        )
        return result

    with tempfile.TemporaryDirectory(prefix="walmon-upload-") as tmp:
        staging = Path(tmp)

        # Step 2: Full backups also get a standalone archive
        if backup_type == BackupType.FULL:
            archive_name = f"{config.database_identifier}_full_{stamp}{ARCHIVE_SUFFIX}"
            try:
                archive = await create_repository_archive(
                    config.repository_path / "backup" / config.stanza,
                    staging / archive_name,
                )
                sent = await remote.upload_object(archive, type_path)
                if sent.success:
                    result.archive_path = sent.remote_path
                else:
                    result.errors.append(f"archive upload failed: {sent.diagnostic}")
            except Exception as e:
                result.errors.append(f"archive failed: {e}")
                logger.warning("full_archive_failed", operation_id=operation_id, error=str(e))

        # Step 3: Metadata record
        metadata = build_metadata(config, backup_type, label, triggered_by, operation_id, now)
        record = staging / f"{backup_type.value}_backup_{stamp}_metadata.json"
        async with aiofiles.open(record, "w", encoding="utf-8") as f:
            await f.write(json.dumps(metadata, indent=2))

        sent = await remote.upload_object(record, type_path)
        if not sent.success:
            result.errors.append(f"metadata upload failed: {sent.diagnostic}")
            logger.warning(
                "metadata_upload_failed",
                operation_id=operation_id,
                remote_path=type_path,
                diagnostic=sent.diagnostic,
            )
            return result

    result.archive_reference = sent.remote_path
    result.success = True

    # Step 4: Remote retention
    result.pruned = await prune_remote_backups(config, remote, backup_type)

    logger.info(
        "backup_uploaded",
        operation_id=operation_id,
        backup_type=backup_type.value,
        label=label,
        archive_reference=result.archive_reference,
        archive_path=result.archive_path,
        pruned=len(result.pruned),
        warnings=len(result.errors),
    )
    return result


def name_date(name: str) -> datetime | None:
    """Date embedded in an uploaded object name (``..._YYYYmmdd_HHMMSS...``)."""
    match = _NAME_DATE.search(name)
    if match is None:
        return None
    try:
        return datetime.strptime(match.group(1), "%Y%m%d").replace(tzinfo=UTC)
    except ValueError:
        return None


async def prune_remote_backups(
    config: MonitorConfig,
    remote: RemoteSync,
    backup_type: BackupType,
    now: datetime | None = None,
) -> List[str]:
    """
    Delete uploaded records and archives older than the retention window.

    Only names that carry a date are considered; the repository mirror is
    left to pgBackRest's own retention.

    Returns:
        Remote paths that were deleted
    """
    if config.retention_days <= 0:
        return []

    cutoff = (now or datetime.now(UTC)) - timedelta(days=config.retention_days)
    type_path = config.remote_type_path(backup_type)
    deleted: List[str] = []

    for name in await remote.list(type_path):
        created = name_date(name)
        if created is None or created >= cutoff:
            continue
        path = f"{type_path}/{name}"
        outcome = await remote.delete(path)
        if outcome.success:
            deleted.append(path)
            logger.debug("remote_backup_pruned", remote_path=path)
        else:
            logger.warning("remote_prune_failed", remote_path=path, diagnostic=outcome.diagnostic)

    if deleted:
        logger.info(
            "remote_pruning_complete",
            backup_type=backup_type.value,
            deleted=len(deleted),
            retention_days=config.retention_days,
        )
    return deleted
