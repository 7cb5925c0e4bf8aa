# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgBackRest collaborator - Backup, info and restore through the pgbackrest CLI.
"""

import json
import time
from datetime import datetime, UTC
from typing import Any, List, Sequence

import structlog

from walmon.collaborators import BackupInfo, BackupResult, CommandResult
from walmon.collaborators import process
from walmon.config import BackupType

logger = structlog.get_logger()

INFO_TIMEOUT = 120


class PgBackRestEngine:
    """Backup engine collaborator that shells out to pgbackrest."""

    def __init__(self, stanza: str, binary: str = "pgbackrest", timeout: int = 21600):
        self.stanza = stanza
        self.binary = binary
        self.timeout = timeout

    def _command(self, *args: str) -> List[str]:
        return [self.binary, f"--stanza={self.stanza}", *args]

    async def info(self) -> List[dict]:
        """
        Raw ``pgbackrest info --output=json`` document for this stanza.

        Returns an empty list when the command fails or prints invalid JSON.
        """
        result = await process.run_command(
            self._command("info", "--output=json"), timeout=INFO_TIMEOUT
        )
        if not result.success:
            logger.warning(
                "pgbackrest_info_failed",
                stanza=self.stanza,
                diagnostic=result.diagnostic,
            )
            return []
        try:
            document = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as e:
            logger.warning("pgbackrest_info_invalid_json", stanza=self.stanza, error=str(e))
            return []
        return document if isinstance(document, list) else []

    async def list_backups(self) -> List[BackupInfo]:
        """Backup sets of this stanza, oldest first."""
        backups: List[BackupInfo] = []
        for entry in await self.info():
            if entry.get("name") not in (None, self.stanza):
                continue
            for raw in entry.get("backup") or []:
                backups.append(_to_backup_info(raw))
        backups.sort(key=lambda b: b.stopped_at or datetime.min.replace(tzinfo=UTC))
        return backups

    async def has_base_backup(self) -> bool:
        """True when at least one full backup exists."""
        backups = await self.list_backups()
        return any(b.backup_type == BackupType.FULL.value for b in backups)

    async def latest_label(self, backup_type: BackupType) -> str | None:
        matching = [b for b in await self.list_backups() if b.backup_type == backup_type.value]
        return matching[-1].label if matching else None

    async def run_backup(self, backup_type: BackupType) -> BackupResult:
        """
        Run ``pgbackrest backup`` of the given type.

        Args:
            backup_type: full, incr or diff

        Returns:
            BackupResult; on failure ``diagnostic`` holds pgbackrest's output
        """
        started = time.monotonic()
        logger.info("pgbackrest_backup_started", stanza=self.stanza, backup_type=backup_type.value)

        result = await process.run_command(
            self._command(f"--type={backup_type.value}", "backup"),
            timeout=self.timeout,
        )
        duration = time.monotonic() - started

        if not result.success:
            return BackupResult(
                success=False,
                backup_type=backup_type,
                diagnostic=result.diagnostic or f"pgbackrest exited with {result.returncode}",
                duration_seconds=duration,
            )

        return BackupResult(
            success=True,
            backup_type=backup_type,
            label=await self.latest_label(backup_type),
            duration_seconds=duration,
        )

    async def ensure_stanza(self) -> CommandResult:
        """
        Create the stanza if needed and verify WAL archiving with ``check``.

        ``stanza-create`` is a no-op for an existing, matching stanza, so
        this is safe to run on every start.
        """
        created = await process.run_command(self._command("stanza-create"), timeout=INFO_TIMEOUT)
        if not created.success:
            logger.error(
                "pgbackrest_stanza_create_failed",
                stanza=self.stanza,
                diagnostic=created.diagnostic,
            )
            return created

        checked = await process.run_command(self._command("check"), timeout=INFO_TIMEOUT)
        if not checked.success:
            logger.error(
                "pgbackrest_check_failed",
                stanza=self.stanza,
                diagnostic=checked.diagnostic,
            )
            return checked

        logger.info("pgbackrest_stanza_verified", stanza=self.stanza)
        return checked

    async def restore(self, target_options: Sequence[str] = ()) -> CommandResult:
        """Run ``pgbackrest restore --delta`` with optional target options."""
        logger.info("pgbackrest_restore_started", stanza=self.stanza, options=list(target_options))
        return await process.run_command(
            self._command("restore", "--delta", *target_options),
            timeout=self.timeout,
        )


def _to_backup_info(raw: dict) -> BackupInfo:
    timestamp = raw.get("timestamp") or {}
    archive = raw.get("archive") or {}
    info = raw.get("info") or {}
    return BackupInfo(
        label=str(raw.get("label", "")),
        backup_type=str(raw.get("type", "")),
        started_at=_from_epoch(timestamp.get("start")),
        stopped_at=_from_epoch(timestamp.get("stop")),
        size_bytes=info.get("size"),
        wal_start=archive.get("start"),
        wal_stop=archive.get("stop"),
    )


def _from_epoch(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), UTC)
    except (TypeError, ValueError, OverflowError):
        return None
