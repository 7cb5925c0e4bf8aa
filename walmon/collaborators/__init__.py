# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Collaborators - Narrow interfaces to the database, pgBackRest and remote storage.

The controller only talks to these protocols, so tests can swap in fakes
and never start a real binary.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, List, Protocol, Sequence

if TYPE_CHECKING:
    from walmon.config import BackupType, MonitorConfig


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one external command."""

    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def diagnostic(self) -> str:
        """Most useful text for a log line: stderr, else stdout."""
        return (self.stderr.strip() or self.stdout.strip())[-4000:]


@dataclass(frozen=True)
class BackupResult:
    """Outcome of a pgBackRest backup run."""

    success: bool
    backup_type: "BackupType"
    label: str | None = None
    diagnostic: str = ""
    duration_seconds: float = 0.0


@dataclass(frozen=True)
class BackupInfo:
    """One backup set as reported by ``pgbackrest info``."""

    label: str
    backup_type: str
    started_at: datetime | None = None
    stopped_at: datetime | None = None
    size_bytes: int | None = None
    wal_start: str | None = None
    wal_stop: str | None = None


@dataclass(frozen=True)
class SyncResult:
    """Outcome of a remote transfer."""

    success: bool
    remote_path: str
    diagnostic: str = ""
    files_transferred: int = 0
    errors: List[str] = field(default_factory=list)


class Database(Protocol):
    """Database reachability and WAL position."""

    async def is_ready(self) -> bool:
        ...

    async def current_log_position(self) -> str:
        """Current WAL insert position, or "" when it cannot be read."""
        ...

    async def archive_mode(self) -> str:
        """The archive_mode setting, or "" when it cannot be read."""
        ...


class BackupEngine(Protocol):
    """Backup engine (pgBackRest) operations."""

    async def has_base_backup(self) -> bool:
        ...

    async def run_backup(self, backup_type: "BackupType") -> BackupResult:
        ...

    async def list_backups(self) -> List[BackupInfo]:
        ...

    async def ensure_stanza(self) -> CommandResult:
        """Create and verify the stanza; idempotent."""
        ...

    async def restore(self, target_options: Sequence[str] = ()) -> CommandResult:
        ...


class RemoteSync(Protocol):
    """Remote object storage (rclone or S3)."""

    async def sync_repository(self, local_path: Path, remote_path: str) -> SyncResult:
        ...

    async def upload_object(self, local_file: Path, remote_path: str) -> SyncResult:
        """Upload one file into the remote directory ``remote_path``."""
        ...

    async def download_object(self, remote_path: str, local_file: Path) -> SyncResult:
        """Download one object to ``local_file``."""
        ...

    async def list(self, remote_path: str) -> List[str]:
        """Names directly under ``remote_path``."""
        ...

    async def delete(self, remote_path: str) -> SyncResult:
        ...

    async def fetch_repository(self, remote_path: str, local_path: Path) -> SyncResult:
        ...


def create_database(config: "MonitorConfig") -> Database:
    """Build the asyncpg-backed database collaborator."""
    from walmon.collaborators.postgres import PostgresDatabase

    return PostgresDatabase(config.database_url, timeout=config.readiness_timeout)


def create_engine(config: "MonitorConfig") -> BackupEngine:
    """Build the pgBackRest collaborator."""
    from walmon.collaborators.pgbackrest import PgBackRestEngine

    return PgBackRestEngine(
        config.stanza,
        binary=config.pgbackrest_bin,
        timeout=config.backup_timeout,
    )


def create_remote(config: "MonitorConfig") -> RemoteSync | None:
    """
    Build the configured remote, or None when uploads are disabled.

    Raises:
        ConfigurationError: If the rclone remote cannot be determined
    """
    from walmon.config import RemoteBackend

    if config.remote_backend is None:
        return None

    if config.remote_backend == RemoteBackend.RCLONE:
        from walmon.collaborators.rclone import RcloneRemote, resolve_remote_name

        return RcloneRemote(
            resolve_remote_name(config.rclone_config_path, config.rclone_remote_name),
            config.rclone_config_path,
            binary=config.rclone_bin,
            timeout=config.sync_timeout,
        )

    from walmon.collaborators.s3 import S3Remote

    return S3Remote(
        config.s3_bucket or "",
        region=config.s3_region,
        endpoint_url=config.s3_endpoint_url,
    )


__all__ = [
    "BackupEngine",
    "BackupInfo",
    "BackupResult",
    "CommandResult",
    "Database",
    "RemoteSync",
    "SyncResult",
    "create_database",
    "create_engine",
    "create_remote",
]
