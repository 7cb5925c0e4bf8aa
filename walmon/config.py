# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
WALMON Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation. The growth
threshold is parsed exactly once, here, so a bad unit stops the monitor
before it ever polls.
"""

from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import List
import re

from walmon.sizes import parse_size


class BackupType(str, Enum):
    """Backup types understood by pgBackRest."""

    FULL = "full"
    INCREMENTAL = "incr"
    DIFFERENTIAL = "diff"

    @property
    def remote_directory(self) -> str:
        return {
            BackupType.FULL: "full-backups",
            BackupType.INCREMENTAL: "incremental-backups",
            BackupType.DIFFERENTIAL: "differential-backups",
        }[self]


class RemoteBackend(str, Enum):
    """Remote storage backend for uploads."""

    RCLONE = "rclone"
    S3 = "s3"


_STANZA_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


@dataclass(frozen=True)
class MonitorConfig:
    """
    Immutable configuration for the WAL growth monitor.

    Constructed once at startup and passed explicitly to every component.
    """

    # WAL growth since the last backup that triggers a new one
    wal_growth_threshold: str = "100MB"

    # Seconds between poll ticks
    monitor_interval: int = 60

    # Whether the growth-triggered monitor is in use
    enable_wal_monitor: bool = True

    # Minimum growth for the scheduled (cron) incremental path
    min_wal_growth_for_backup: str = "1MB"

    # pgBackRest stanza
    stanza: str = "main"

    # POSTGRES_DB, used to name remote directories
    database_name: str | None = None

    # asyncpg connection URL
    database_url: str = "postgresql://postgres@localhost:5432/postgres"

    # Seconds to wait for the database to answer a readiness check
    readiness_timeout: float = 10.0

    state_path: Path = field(
        default_factory=lambda: Path("/backup/logs/wal-monitor.state")
    )
    log_path: Path = field(default_factory=lambda: Path("/backup/logs/wal-monitor.log"))
    pid_path: Path = field(default_factory=lambda: Path("/backup/logs/wal-monitor.pid"))

    # Local pgBackRest repository (repo1-path)
    repository_path: Path = field(default_factory=lambda: Path("/var/lib/pgbackrest"))

    # Remote upload (disabled when None)
    remote_backend: RemoteBackend | None = None
    remote_path: str = "postgres-backups"

    # rclone
    rclone_remote_name: str | None = None
    rclone_config_path: Path = field(
        default_factory=lambda: Path("/root/.config/rclone/rclone.conf")
    )

    # S3
    s3_bucket: str | None = None
    s3_region: str = "us-east-1"
    s3_endpoint_url: str | None = None

    # Remote backups older than this many days are pruned (0 disables)
    retention_days: int = 3

    # Scheduled backups skip when the monitor backed up within this window
    recent_backup_window: int = 3600

    # External tools
    pgbackrest_bin: str = "pgbackrest"
    rclone_bin: str = "rclone"
    backup_timeout: int = 21600
    sync_timeout: int = 3600

    # Derived once in __post_init__
    growth_threshold_bytes: int = field(init=False, repr=False, compare=False, default=0)
    min_growth_bytes: int = field(init=False, repr=False, compare=False, default=0)

    def __post_init__(self) -> None:
        """Validate configuration and derive byte thresholds."""
        from walmon.exceptions import ConfigurationError

        errors: List[str] = []

        threshold = self._parse_size_field(
            "wal_growth_threshold", self.wal_growth_threshold, errors
        )
        min_growth = self._parse_size_field(
            "min_wal_growth_for_backup", self.min_wal_growth_for_backup, errors
        )
        if threshold is not None and threshold <= 0:
            errors.append(
                f"wal_growth_threshold must be greater than zero, got {self.wal_growth_threshold}"
            )

        if self.monitor_interval < 1:
            errors.append(f"monitor_interval must be >= 1, got {self.monitor_interval}")

        if not self.stanza or not _STANZA_PATTERN.match(self.stanza):
            errors.append(f"Invalid stanza name: {self.stanza!r}")

        if self.retention_days < 0:
            errors.append(f"retention_days must be >= 0, got {self.retention_days}")

        if self.readiness_timeout <= 0:
            errors.append(
                f"readiness_timeout must be > 0, got {self.readiness_timeout}"
            )

        if self.backup_timeout < 1 or self.sync_timeout < 1:
            errors.append("backup_timeout and sync_timeout must be >= 1")

        if self.remote_backend == RemoteBackend.S3 and not self.s3_bucket:
            errors.append("s3_bucket required when remote_backend is 's3'")

        if errors:
            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

        object.__setattr__(self, "growth_threshold_bytes", threshold)
        object.__setattr__(self, "min_growth_bytes", min_growth)

    @staticmethod
    def _parse_size_field(name: str, value: str, errors: List[str]) -> int | None:
        from walmon.exceptions import ConfigurationError

        try:
            return parse_size(value)
        except ConfigurationError as e:
            errors.append(f"{name}: {e.message}")
            return None

    @property
    def database_identifier(self) -> str:
        """Name used for this database's remote directories."""
        return self.database_name or self.stanza

    @property
    def remote_base(self) -> str:
        return f"{self.remote_path.strip('/')}/{self.database_identifier}"

    @property
    def remote_repository_path(self) -> str:
        return f"{self.remote_base}/repository"

    def remote_type_path(self, backup_type: BackupType) -> str:
        return f"{self.remote_base}/{backup_type.remote_directory}"

    def with_updates(self, **kwargs) -> "MonitorConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance.
        """
        current = {f.name: getattr(self, f.name) for f in fields(self) if f.init}
        current.update(kwargs)
        return MonitorConfig(**current)

    def describe(self) -> dict:
        """Operator-facing view of the effective configuration."""
        return {
            "wal_growth_threshold": self.wal_growth_threshold,
            "growth_threshold_bytes": self.growth_threshold_bytes,
            "monitor_interval": self.monitor_interval,
            "enable_wal_monitor": self.enable_wal_monitor,
            "min_wal_growth_for_backup": self.min_wal_growth_for_backup,
            "stanza": self.stanza,
            "database_identifier": self.database_identifier,
            "state_path": str(self.state_path),
            "log_path": str(self.log_path),
            "pid_path": str(self.pid_path),
            "repository_path": str(self.repository_path),
            "remote_backend": self.remote_backend.value if self.remote_backend else None,
            "remote_base": self.remote_base if self.remote_backend else None,
            "retention_days": self.retention_days,
        }
