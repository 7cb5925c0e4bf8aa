# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
WALMON Recovery - Point-in-time recovery helpers.

The restore itself is pgBackRest's job. This module validates the
recovery target, lists what was uploaded, brings the repository mirror
back from remote storage and invokes the restore.
"""

import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, List

import structlog

from walmon.collaborators import BackupEngine, RemoteSync
from walmon.config import BackupType, MonitorConfig
from walmon.errors import explain_invalid_recovery_target
from walmon.exceptions import ConfigurationError, RecoveryError, UploadError
from walmon.lsn import LogPosition
from walmon.state import LEGACY_TIME_FORMAT
from walmon.upload.archive import ARCHIVE_SUFFIX, extract_repository_archive

logger = structlog.get_logger()

RECOVERY_ACTIONS = ("pause", "promote", "shutdown")


@dataclass(frozen=True)
class RecoveryTarget:
    """
    Where recovery should stop. With no target set, replay runs to the end
    of the archived WAL.
    """

    time: str | None = None
    name: str | None = None
    xid: str | None = None
    lsn: str | None = None
    inclusive: bool = True
    action: str = "promote"

    def __post_init__(self) -> None:
        targets = [t for t in (self.time, self.name, self.xid, self.lsn) if t]
        if len(targets) > 1:
            raise ConfigurationError(
                explain_invalid_recovery_target(f"{len(targets)} targets set"),
                details={"targets": targets},
            )

        if self.time:
            try:
                datetime.fromisoformat(self.time)
            except ValueError:
                try:
                    datetime.strptime(self.time, LEGACY_TIME_FORMAT)
                except ValueError:
                    raise ConfigurationError(
                        explain_invalid_recovery_target(f"unparseable time {self.time!r}")
                    )

        if self.lsn and LogPosition.from_text(self.lsn) is None:
            raise ConfigurationError(explain_invalid_recovery_target(f"malformed LSN {self.lsn!r}"))

        if self.xid and not self.xid.isdigit():
            raise ConfigurationError(explain_invalid_recovery_target(f"malformed XID {self.xid!r}"))

        if self.action not in RECOVERY_ACTIONS:
            raise ConfigurationError(
                f"Invalid recovery target action: {self.action!r}. "
                f"Expected one of: {', '.join(RECOVERY_ACTIONS)}."
            )

    @property
    def kind(self) -> str | None:
        for kind in ("time", "name", "xid", "lsn"):
            if getattr(self, kind):
                return kind
        return None

    def pgbackrest_options(self) -> List[str]:
        """Arguments for ``pgbackrest restore``."""
        kind = self.kind
        if kind is None:
            return []
        options = [f"--type={kind}", f"--target={getattr(self, kind)}"]
        options.append(f"--target-action={self.action}")
        if not self.inclusive:
            options.append("--target-exclusive")
        return options


async def list_remote_backups(
    config: MonitorConfig, remote: RemoteSync
) -> Dict[str, List[str]]:
    """
    Uploaded records and archives per backup type directory.

    Returns:
        Mapping of directory name (e.g. ``full-backups``) to sorted names
    """
    listing: Dict[str, List[str]] = {}
    for backup_type in BackupType:
        names = await remote.list(config.remote_type_path(backup_type))
        listing[backup_type.remote_directory] = sorted(names)
    return listing


async def download_repository(config: MonitorConfig, remote: RemoteSync) -> None:
    """
    Bring the repository mirror back into the local repository path.

    Raises:
        RecoveryError: If the download fails
    """
    result = await remote.fetch_repository(
        config.remote_repository_path, config.repository_path
    )
    if not result.success:
        raise RecoveryError(
            f"Failed to download repository: {result.diagnostic}",
            details={"remote_path": config.remote_repository_path},
        )
    logger.info(
        "repository_downloaded",
        remote_path=config.remote_repository_path,
        local_path=str(config.repository_path),
    )


async def restore_archive(config: MonitorConfig, remote: RemoteSync, name: str) -> Path:
    """
    Unpack an uploaded full-backup archive into the local repository.

    The archive holds ``backup/<stanza>``, so it brings back a backup set
    the repository mirror no longer has. WAL still comes from the mirror.

    Args:
        config: Monitor configuration
        remote: Remote storage collaborator
        name: Archive name in the ``full-backups`` directory

    Returns:
        The repository's ``backup`` directory

    Raises:
        RecoveryError: If the name is invalid or download/extraction fails
    """
    if "/" in name or not name.endswith(ARCHIVE_SUFFIX):
        raise RecoveryError(
            f"Not a full-backup archive name: {name!r}",
            details={"expected_suffix": ARCHIVE_SUFFIX},
        )

    remote_path = f"{config.remote_type_path(BackupType.FULL)}/{name}"
    target = config.repository_path / "backup"

    with tempfile.TemporaryDirectory(prefix="walmon-restore-") as tmp:
        local_file = Path(tmp) / name
        result = await remote.download_object(remote_path, local_file)
        if not result.success:
            raise RecoveryError(
                f"Failed to download archive: {result.diagnostic}",
                details={"remote_path": remote_path},
            )
        try:
            await extract_repository_archive(local_file, target)
        except UploadError as e:
            raise RecoveryError(f"Failed to unpack archive: {e.message}", details=e.details)

    logger.info("archive_restored", remote_path=remote_path, target=str(target))
    return target


async def perform_recovery(
    config: MonitorConfig,
    engine: BackupEngine,
    target: RecoveryTarget,
    remote: RemoteSync | None = None,
    archive: str | None = None,
    download: bool = True,
) -> None:
    """
    Restore the cluster to ``target``.

    The database must be stopped; pgBackRest restores into PGDATA with
    ``--delta``. With a remote the repository mirror is downloaded first
    (unless ``download`` is False) and ``archive`` names an uploaded
    full-backup archive to unpack on top.

    Raises:
        RecoveryError: If the download or the restore fails
    """
    if remote is not None and download:
        await download_repository(config, remote)

    if archive is not None:
        if remote is None:
            raise RecoveryError("Restoring from an archive needs remote storage")
        await restore_archive(config, remote, archive)

    backups = await engine.list_backups()
    if not backups:
        raise RecoveryError(
            "No backups found in repository",
            details={"stanza": config.stanza},
        )

    logger.info(
        "recovery_started",
        stanza=config.stanza,
        target_kind=target.kind or "latest",
        action=target.action,
        backups=len(backups),
    )

    result = await engine.restore(target.pgbackrest_options())
    if not result.success:
        raise RecoveryError(
            f"pgBackRest restore failed: {result.diagnostic}",
            details={"stanza": config.stanza, "target": target.kind},
        )

    logger.info("recovery_completed", stanza=config.stanza, target_kind=target.kind or "latest")
