# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for walmon tests.

Provides fake collaborators (database, pgBackRest, remote storage) and
test configuration helpers, so no test needs a real server or binary.
"""

import tempfile
from pathlib import Path
from typing import Dict, Generator, List, Sequence

import pytest

from walmon.collaborators import BackupInfo, BackupResult, CommandResult, SyncResult
from walmon.config import BackupType, MonitorConfig


class FakeDatabase:
    """Database collaborator with a settable WAL position."""

    def __init__(self, position: str = "0/1000000", ready: bool = True, archive_mode: str = "on"):
        self.position = position
        self.ready = ready
        self.archive = archive_mode
        self.readiness_checks = 0

    async def is_ready(self) -> bool:
        self.readiness_checks += 1
        return self.ready

    async def current_log_position(self) -> str:
        return self.position

    async def archive_mode(self) -> str:
        return self.archive


class FakeBackupEngine:
    """pgBackRest stand-in that records the backups it was asked for."""

    def __init__(self, has_full: bool = True, fail: bool = False, stanza_fail: bool = False):
        self.has_full = has_full
        self.fail = fail
        self.stanza_fail = stanza_fail
        self.stanza_checks = 0
        self.runs: List[BackupType] = []
        self.restores: List[List[str]] = []
        self.backups: List[BackupInfo] = []

    async def has_base_backup(self) -> bool:
        return self.has_full

    async def run_backup(self, backup_type: BackupType) -> BackupResult:
        self.runs.append(backup_type)
        if self.fail:
            return BackupResult(
                success=False,
                backup_type=backup_type,
                diagnostic="ERROR: [082]: WAL segment was not archived before the 60000ms timeout",
            )
        suffix = {"full": "F", "incr": "I", "diff": "D"}[backup_type.value]
        label = f"20260101-00000{len(self.runs)}{suffix}"
        self.backups.append(BackupInfo(label=label, backup_type=backup_type.value))
        if backup_type == BackupType.FULL:
            self.has_full = True
        return BackupResult(success=True, backup_type=backup_type, label=label)

    async def list_backups(self) -> List[BackupInfo]:
        return list(self.backups)

    async def ensure_stanza(self) -> CommandResult:
        self.stanza_checks += 1
        if self.stanza_fail:
            return CommandResult(
                returncode=28,
                stderr="ERROR: [028]: backup and archive info files exist but do not match the database",
            )
        return CommandResult(returncode=0)

    async def restore(self, target_options: Sequence[str] = ()) -> CommandResult:
        self.restores.append(list(target_options))
        return CommandResult(returncode=1 if self.fail else 0, stderr="restore failed" if self.fail else "")


class FakeRemote:
    """Remote storage stand-in keeping uploaded objects in memory."""

    def __init__(self, fail_sync: bool = False, fail_upload: bool = False):
        self.fail_sync = fail_sync
        self.fail_upload = fail_upload
        self.synced: List[tuple] = []
        self.fetched: List[tuple] = []
        self.objects: Dict[str, bytes] = {}
        self.deleted: List[str] = []

    async def sync_repository(self, local_path: Path, remote_path: str) -> SyncResult:
        self.synced.append((local_path, remote_path))
        if self.fail_sync:
            return SyncResult(False, remote_path, diagnostic="network unreachable")
        return SyncResult(True, remote_path)

    async def upload_object(self, local_file: Path, remote_path: str) -> SyncResult:
        if self.fail_upload:
            return SyncResult(False, remote_path, diagnostic="403 Forbidden")
        key = f"{remote_path.rstrip('/')}/{local_file.name}"
        self.objects[key] = local_file.read_bytes()
        return SyncResult(True, key, files_transferred=1)

    async def download_object(self, remote_path: str, local_file: Path) -> SyncResult:
        if self.fail_sync or remote_path not in self.objects:
            return SyncResult(False, remote_path, diagnostic="object not found")
        local_file.parent.mkdir(parents=True, exist_ok=True)
        local_file.write_bytes(self.objects[remote_path])
        return SyncResult(True, remote_path, files_transferred=1)

    async def list(self, remote_path: str) -> List[str]:
        prefix = remote_path.rstrip("/") + "/"
        return sorted(
            key[len(prefix):] for key in self.objects if key.startswith(prefix)
        )

    async def delete(self, remote_path: str) -> SyncResult:
        self.objects.pop(remote_path, None)
        self.deleted.append(remote_path)
        return SyncResult(True, remote_path)

    async def fetch_repository(self, remote_path: str, local_path: Path) -> SyncResult:
        self.fetched.append((remote_path, local_path))
        if self.fail_sync:
            return SyncResult(False, remote_path, diagnostic="network unreachable")
        return SyncResult(True, remote_path)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def test_config(temp_dir: Path) -> MonitorConfig:
    """Create a test configuration with a 1MB threshold."""
    return MonitorConfig(
        wal_growth_threshold="1MB",
        monitor_interval=60,
        stanza="main",
        database_name="appdb",
        state_path=temp_dir / "logs" / "wal-monitor.state",
        log_path=temp_dir / "logs" / "wal-monitor.log",
        pid_path=temp_dir / "logs" / "wal-monitor.pid",
        repository_path=temp_dir / "pgbackrest",
    )


@pytest.fixture
def fake_database() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def fake_engine() -> FakeBackupEngine:
    return FakeBackupEngine()


@pytest.fixture
def fake_remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def runtime(test_config, fake_database, fake_engine):
    """Controller runtime wired to fakes, without remote upload."""
    from walmon.core import initialize_monitor

    return initialize_monitor(test_config, database=fake_database, engine=fake_engine)


def make_repository(root: Path, stanza: str = "main") -> Path:
    """Create a small pgBackRest-like repository tree."""
    backup_dir = root / "backup" / stanza / "20260101-000001F"
    backup_dir.mkdir(parents=True)
    (backup_dir / "backup.manifest").write_text("[backup]\nbackup-label=20260101-000001F\n")
    (root / "backup" / stanza / "backup.info").write_text("[backup:current]\n")
    archive_dir = root / "archive" / stanza / "16-1"
    archive_dir.mkdir(parents=True)
    (archive_dir / "000000010000000000000001.zst").write_bytes(b"\x28\xb5\x2f\xfd" + b"0" * 64)
    (archive_dir / "archive.lock").write_text("")
    return root
