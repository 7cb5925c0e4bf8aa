# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment-based configuration helpers.

The monitor is configured through the same environment variables the
backup container already exports (WAL_GROWTH_THRESHOLD, PGBACKREST_STANZA,
RCLONE_REMOTE_NAME, ...). Everything is optional and falls back to the
documented defaults.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping
from urllib.parse import quote

from walmon.config import MonitorConfig, RemoteBackend
from walmon.errors import (
    explain_invalid_bool_env,
    explain_invalid_integer_env,
    explain_invalid_interval_env,
    explain_invalid_remote_backend_env,
    explain_missing_bucket_env,
)
from walmon.exceptions import ConfigurationError

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}


def _parse_bool(name: str, value: str | None, default: bool) -> bool:
    if value is None or value == "":
        return default
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigurationError(explain_invalid_bool_env(name, value))


def _parse_interval(value: str | None) -> int:
    if not value:
        return 60
    try:
        interval = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_interval_env(value)) from exc
    if interval < 1:
        raise ConfigurationError(explain_invalid_interval_env(value))
    return interval


def _parse_non_negative(name: str, value: str | None, default: int) -> int:
    if not value:
        return default
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_integer_env(name, value)) from exc
    if number < 0:
        raise ConfigurationError(explain_invalid_integer_env(name, value))
    return number


def _parse_remote_backend(
    value: str | None, env: Mapping[str, str]
) -> RemoteBackend | None:
    if value:
        try:
            return RemoteBackend(value.strip().lower())
        except ValueError as exc:
            raise ConfigurationError(explain_invalid_remote_backend_env(value)) from exc

    # Infer from what is configured, rclone first as in the container image
    if env.get("RCLONE_REMOTE_NAME") or env.get("RCLONE_CONF_BASE64"):
        return RemoteBackend.RCLONE
    if env.get("S3_BUCKET"):
        return RemoteBackend.S3
    return None


def _build_database_url(env: Mapping[str, str]) -> str:
    """Build an asyncpg URL from the libpq-style PG* variables."""

    explicit = env.get("DATABASE_URL")
    if explicit:
        return explicit

    user = quote(env.get("POSTGRES_USER") or "postgres", safe="")
    password = env.get("POSTGRES_PASSWORD")
    database = quote(env.get("POSTGRES_DB") or "postgres", safe="")
    host = env.get("PGHOST") or "/var/run/postgresql"
    port = env.get("PGPORT") or "5432"

    credentials = f"{user}:{quote(password, safe='')}" if password else user
    if host.startswith("/"):
        # Unix socket directory goes in the query string
        return f"postgresql://{credentials}@/{database}?host={quote(host, safe='/')}&port={port}"
    return f"postgresql://{credentials}@{host}:{port}/{database}"


def create_config_from_env(environ: Mapping[str, str] | None = None) -> MonitorConfig:
    """
    Create a MonitorConfig from environment variables.

    Optional environment variables:
        - WAL_GROWTH_THRESHOLD: Size string (default: 100MB)
        - WAL_MONITOR_INTERVAL: Seconds between ticks (default: 60)
        - ENABLE_WAL_MONITOR: true/false (default: true)
        - MIN_WAL_GROWTH_FOR_BACKUP: Size string (default: 1MB)
        - PGBACKREST_STANZA: Stanza name (default: main)
        - POSTGRES_DB / DATABASE_URL / PGHOST / PGPORT / POSTGRES_USER / POSTGRES_PASSWORD
        - WALMON_STATE_FILE, WALMON_LOG_FILE, WALMON_PID_FILE
        - PGBACKREST_REPO_PATH: Local repository (default: /var/lib/pgbackrest)
        - WALMON_REMOTE_BACKEND: 'rclone' | 's3' (inferred when unset)
        - RCLONE_REMOTE_NAME, RCLONE_CONFIG_PATH, RCLONE_REMOTE_PATH
        - S3_BUCKET, AWS_REGION, S3_ENDPOINT_URL
        - BACKUP_RETENTION_DAYS: Remote retention in days (default: 3)
        - PGBACKREST_BIN, RCLONE_BIN, WALMON_BACKUP_TIMEOUT, WALMON_SYNC_TIMEOUT

    Raises:
        ConfigurationError: On any invalid value
    """

    env: Mapping[str, str] = os.environ if environ is None else environ
    defaults = MonitorConfig()

    remote_backend = _parse_remote_backend(env.get("WALMON_REMOTE_BACKEND"), env)
    if remote_backend == RemoteBackend.S3 and not env.get("S3_BUCKET"):
        raise ConfigurationError(explain_missing_bucket_env())

    def _path(name: str, default: Path) -> Path:
        value = env.get(name)
        return Path(value) if value else default

    return MonitorConfig(
        wal_growth_threshold=env.get("WAL_GROWTH_THRESHOLD") or defaults.wal_growth_threshold,
        monitor_interval=_parse_interval(env.get("WAL_MONITOR_INTERVAL")),
        enable_wal_monitor=_parse_bool(
            "ENABLE_WAL_MONITOR", env.get("ENABLE_WAL_MONITOR"), True
        ),
        min_wal_growth_for_backup=(
            env.get("MIN_WAL_GROWTH_FOR_BACKUP") or defaults.min_wal_growth_for_backup
        ),
        stanza=env.get("PGBACKREST_STANZA") or defaults.stanza,
        database_name=env.get("POSTGRES_DB") or None,
        database_url=_build_database_url(env),
        state_path=_path("WALMON_STATE_FILE", defaults.state_path),
        log_path=_path("WALMON_LOG_FILE", defaults.log_path),
        pid_path=_path("WALMON_PID_FILE", defaults.pid_path),
        repository_path=_path("PGBACKREST_REPO_PATH", defaults.repository_path),
        remote_backend=remote_backend,
        remote_path=env.get("RCLONE_REMOTE_PATH") or defaults.remote_path,
        rclone_remote_name=env.get("RCLONE_REMOTE_NAME") or None,
        rclone_config_path=_path("RCLONE_CONFIG_PATH", defaults.rclone_config_path),
        s3_bucket=env.get("S3_BUCKET") or None,
        s3_region=env.get("AWS_REGION") or defaults.s3_region,
        s3_endpoint_url=env.get("S3_ENDPOINT_URL") or None,
        retention_days=_parse_non_negative(
            "BACKUP_RETENTION_DAYS", env.get("BACKUP_RETENTION_DAYS"), 3
        ),
        pgbackrest_bin=env.get("PGBACKREST_BIN") or defaults.pgbackrest_bin,
        rclone_bin=env.get("RCLONE_BIN") or defaults.rclone_bin,
        backup_timeout=_parse_non_negative(
            "WALMON_BACKUP_TIMEOUT", env.get("WALMON_BACKUP_TIMEOUT"), defaults.backup_timeout
        ),
        sync_timeout=_parse_non_negative(
            "WALMON_SYNC_TIMEOUT", env.get("WALMON_SYNC_TIMEOUT"), defaults.sync_timeout
        ),
    )


def create_recovery_target_from_env(environ: Mapping[str, str] | None = None):
    """
    Build a validated RecoveryTarget from RECOVERY_TARGET_* variables.

    Returns:
        RecoveryTarget (all targets empty means "latest")
    """
    from walmon.recovery import RecoveryTarget

    env: Mapping[str, str] = os.environ if environ is None else environ

    return RecoveryTarget(
        time=env.get("RECOVERY_TARGET_TIME") or None,
        name=env.get("RECOVERY_TARGET_NAME") or None,
        xid=env.get("RECOVERY_TARGET_XID") or None,
        lsn=env.get("RECOVERY_TARGET_LSN") or None,
        inclusive=_parse_bool(
            "RECOVERY_TARGET_INCLUSIVE", env.get("RECOVERY_TARGET_INCLUSIVE"), True
        ),
        action=env.get("RECOVERY_TARGET_ACTION") or "promote",
    )
