# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
CLI tests.

Commands are invoked in-process with typer's CliRunner. Every file the
CLI touches (state, log, PID) lives in a temporary directory, and
backup commands run against fake collaborators.
"""

import asyncio
import json
import os
import signal
import subprocess
import sys
import textwrap
import threading
import time
from pathlib import Path

import pytest
import structlog
from typer.testing import CliRunner

import walmon.core
from conftest import FakeBackupEngine, FakeDatabase, FakeRemote, make_repository
from walmon.collaborators import BackupInfo
from walmon.cli import StopOutcome, _run_forever, _stop_process, app
from walmon.config import BackupType
from walmon.env import create_config_from_env
from walmon.state import MonitorState, load_state, parse_state, render_state, save_state
from walmon.upload.archive import create_repository_archive

runner = CliRunner()


@pytest.fixture
def cli_env(temp_dir: Path, monkeypatch) -> dict:
    """Environment pointing every monitor file into ``temp_dir``."""
    for name in (
        "RCLONE_REMOTE_NAME",
        "RCLONE_CONF_BASE64",
        "S3_BUCKET",
        "WALMON_REMOTE_BACKEND",
        "WAL_GROWTH_THRESHOLD",
    ):
        monkeypatch.delenv(name, raising=False)

    monkeypatch.setattr("walmon.cli.configure_logging", lambda *args, **kwargs: None)
    structlog.configure(logger_factory=structlog.ReturnLoggerFactory())
    yield {
        "WAL_GROWTH_THRESHOLD": "1MB",
        "PGBACKREST_STANZA": "main",
        "POSTGRES_DB": "appdb",
        "WALMON_STATE_FILE": str(temp_dir / "wal-monitor.state"),
        "WALMON_LOG_FILE": str(temp_dir / "wal-monitor.log"),
        "WALMON_PID_FILE": str(temp_dir / "wal-monitor.pid"),
        "PGBACKREST_REPO_PATH": str(temp_dir / "pgbackrest"),
    }
    structlog.reset_defaults()


@pytest.fixture
def fake_collaborators(monkeypatch):
    """Make the CLI build its runtime around fakes."""
    database = FakeDatabase()
    engine = FakeBackupEngine()
    original = walmon.core.initialize_monitor

    def initialize(config, **kwargs):
        return original(config, database=database, engine=engine)

    monkeypatch.setattr(walmon.core, "initialize_monitor", initialize)
    return database, engine


# ============================================================================
# INSPECTION
# ============================================================================

def test_config_shows_threshold(cli_env):
    result = runner.invoke(app, ["config"], env=cli_env)

    assert result.exit_code == 0
    assert "1048576" in result.output


def test_invalid_configuration_exits_2(cli_env):
    result = runner.invoke(app, ["config"], env={**cli_env, "WAL_GROWTH_THRESHOLD": "100XB"})

    assert result.exit_code == 2
    assert "Configuration error" in result.output


def test_status_json(cli_env, temp_dir: Path):
    result = runner.invoke(app, ["status", "--json"], env=cli_env)

    assert result.exit_code == 0
    status = json.loads(result.output)
    assert status["running"] is False
    assert status["pid"] is None
    assert status["config"]["growth_threshold_bytes"] == 1048576
    assert status["state"]["accumulated_growth"] == 0


def test_status_shows_saved_state(cli_env, temp_dir: Path):
    (temp_dir / "wal-monitor.state").write_text(
        render_state(MonitorState(last_check_position="0/1080000", accumulated_growth=524288))
    )

    result = runner.invoke(app, ["status", "--json"], env=cli_env)

    status = json.loads(result.output)
    assert status["state"]["accumulated_growth"] == 524288
    assert status["state"]["last_check_position"] == "0/1080000"


def test_status_removes_stale_pid_file(cli_env, temp_dir: Path):
    pid_file = temp_dir / "wal-monitor.pid"
    pid_file.write_text("999999999\n")

    result = runner.invoke(app, ["status", "--json"], env=cli_env)

    assert json.loads(result.output)["running"] is False
    assert not pid_file.exists()


def test_logs_tail(cli_env, temp_dir: Path):
    (temp_dir / "wal-monitor.log").write_text("".join(f"line {i}\n" for i in range(5)))

    result = runner.invoke(app, ["logs", "-n", "2"], env=cli_env)

    assert result.exit_code == 0
    assert result.output.splitlines() == ["line 3", "line 4"]


# ============================================================================
# STOP / RESET
# ============================================================================

def test_stop_when_not_running(cli_env):
    result = runner.invoke(app, ["stop"], env=cli_env)

    assert result.exit_code == 0
    assert "not running" in result.output


GRACEFUL_MONITOR = textwrap.dedent(
    """
    import pathlib, signal, sys, time

    ready, done = pathlib.Path(sys.argv[1]), pathlib.Path(sys.argv[2])
    stopping = []
    signal.signal(signal.SIGTERM, lambda *args: stopping.append(True))
    ready.touch()
    while not stopping:
        time.sleep(0.05)
    # the backup in progress still needs a while
    time.sleep(1.5)
    done.touch()
    """
)

STUBBORN_MONITOR = textwrap.dedent(
    """
    import pathlib, signal, sys, time

    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    pathlib.Path(sys.argv[1]).touch()
    time.sleep(60)
    """
)


def _spawn_monitor(temp_dir: Path, pid_path: Path, script: str) -> subprocess.Popen:
    """Start a stand-in monitor process and record it in the PID file."""
    ready = temp_dir / "ready"
    proc = subprocess.Popen([sys.executable, "-c", script, str(ready), str(temp_dir / "done")])
    # reap the child as soon as it exits so a liveness check sees it gone
    threading.Thread(target=proc.wait, daemon=True).start()
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    pid_path.write_text(f"{proc.pid}\n")
    for _ in range(200):
        if ready.exists():
            break
        time.sleep(0.05)
    return proc


def test_stop_waits_for_monitor_to_finish_backup(test_config, temp_dir: Path):
    """A monitor busy for longer than any fixed grace period is never killed."""
    proc = _spawn_monitor(temp_dir, test_config.pid_path, GRACEFUL_MONITOR)

    outcome = _stop_process(test_config)

    assert outcome == StopOutcome.STOPPED
    assert proc.wait(timeout=5) == 0
    assert (temp_dir / "done").exists()
    assert not test_config.pid_path.exists()


def test_stop_timeout_leaves_monitor_running(test_config, temp_dir: Path):
    proc = _spawn_monitor(temp_dir, test_config.pid_path, STUBBORN_MONITOR)
    try:
        outcome = _stop_process(test_config, timeout=0.3)

        assert outcome == StopOutcome.STILL_RUNNING
        assert proc.poll() is None
        assert test_config.pid_path.exists()
    finally:
        proc.kill()
        proc.wait(timeout=5)


def test_stop_force_kills_after_timeout(test_config, temp_dir: Path):
    proc = _spawn_monitor(temp_dir, test_config.pid_path, STUBBORN_MONITOR)

    outcome = _stop_process(test_config, timeout=0.3, force=True)

    assert outcome == StopOutcome.KILLED
    assert proc.wait(timeout=5) == -signal.SIGKILL
    assert not test_config.pid_path.exists()


def test_stop_force_requires_timeout(cli_env):
    result = runner.invoke(app, ["stop", "--force"], env=cli_env)

    assert result.exit_code == 1
    assert "--force requires --timeout" in result.output


def test_reset_clears_state(cli_env, temp_dir: Path):
    state_file = temp_dir / "wal-monitor.state"
    state_file.write_text("ACCUMULATED_WAL_GROWTH=524288\n")

    result = runner.invoke(app, ["reset", "--yes"], env=cli_env)

    assert result.exit_code == 0
    assert not state_file.exists()


def test_reset_asks_for_confirmation(cli_env, temp_dir: Path):
    state_file = temp_dir / "wal-monitor.state"
    state_file.write_text("ACCUMULATED_WAL_GROWTH=524288\n")

    result = runner.invoke(app, ["reset"], env=cli_env, input="n\n")

    assert result.exit_code == 1
    assert state_file.exists()


# ============================================================================
# BACKUP COMMANDS
# ============================================================================

def test_force_backup_promotes_to_full(cli_env, fake_collaborators, temp_dir: Path):
    database, engine = fake_collaborators
    engine.has_full = False

    result = runner.invoke(app, ["force-backup"], env=cli_env)

    assert result.exit_code == 0
    assert "full backup completed" in result.output
    assert [t.value for t in engine.runs] == ["full"]


def test_force_backup_records_manual_source(cli_env, fake_collaborators, temp_dir: Path):
    database, engine = fake_collaborators

    result = runner.invoke(app, ["force-backup", "--type", "incremental"], env=cli_env)

    assert result.exit_code == 0
    assert [t.value for t in engine.runs] == ["incr"]
    state = parse_state((temp_dir / "wal-monitor.state").read_text())
    assert state.triggered_by == "manual"
    assert state.last_backup_position == "0/1000000"


def test_force_backup_failure_exits_1(cli_env, fake_collaborators):
    database, engine = fake_collaborators
    engine.fail = True

    result = runner.invoke(app, ["force-backup"], env=cli_env)

    assert result.exit_code == 1
    assert "Backup failed" in result.output


def test_force_backup_database_down(cli_env, fake_collaborators):
    database, engine = fake_collaborators
    database.ready = False

    result = runner.invoke(app, ["force-backup"], env=cli_env)

    assert result.exit_code == 1
    assert engine.runs == []


def test_force_backup_refused_while_monitor_runs(cli_env, fake_collaborators, temp_dir: Path):
    """Only the monitor writes the state file while it is running."""
    database, engine = fake_collaborators
    (temp_dir / "wal-monitor.pid").write_text(f"{os.getpid()}\n")

    result = runner.invoke(app, ["force-backup"], env=cli_env)

    assert result.exit_code == 1
    assert "Monitor is running" in result.output
    assert engine.runs == []
    assert not (temp_dir / "wal-monitor.state").exists()


def test_scheduled_backup_skipped_while_monitor_runs(cli_env, fake_collaborators, temp_dir: Path):
    database, engine = fake_collaborators
    (temp_dir / "wal-monitor.pid").write_text(f"{os.getpid()}\n")

    result = runner.invoke(app, ["scheduled-backup"], env=cli_env)

    assert result.exit_code == 0
    assert "monitor is running" in result.output
    assert engine.runs == []


def test_force_backup_rejects_unknown_type(cli_env):
    result = runner.invoke(app, ["force-backup", "--type", "snapshot"], env=cli_env)

    assert result.exit_code == 1
    assert "Invalid backup type" in result.output


def test_recover_from_archive(cli_env, temp_dir: Path, monkeypatch):
    """An archived full backup is unpacked into the repository before restore."""
    name = "appdb_full_20260101_000000.tar.zst"
    source = make_repository(temp_dir / "source") / "backup" / "main"
    archive = asyncio.run(create_repository_archive(source, temp_dir / name))
    remote = FakeRemote()
    remote.objects[f"postgres-backups/appdb/full-backups/{name}"] = archive.read_bytes()
    engine = FakeBackupEngine()
    engine.backups.append(BackupInfo(label="20260101-000001F", backup_type="full"))
    monkeypatch.setattr("walmon.collaborators.create_remote", lambda config: remote)
    monkeypatch.setattr("walmon.collaborators.create_engine", lambda config: engine)

    result = runner.invoke(
        app, ["recover", "--no-download", "--from-archive", name, "--yes"], env=cli_env
    )

    assert result.exit_code == 0, result.output
    assert remote.fetched == []
    assert engine.restores == [[]]
    assert (temp_dir / "pgbackrest" / "backup" / "main" / "backup.info").exists()


def test_list_backups_requires_remote(cli_env):
    result = runner.invoke(app, ["list-backups"], env=cli_env)

    assert result.exit_code == 1
    assert "No remote storage configured" in result.output


# ============================================================================
# FOREGROUND MONITOR
# ============================================================================

@pytest.mark.parametrize("command", ["run", "start"])
def test_disabled_monitor_exits_cleanly(cli_env, temp_dir: Path, command):
    result = runner.invoke(app, [command], env={**cli_env, "ENABLE_WAL_MONITOR": "false"})

    assert result.exit_code == 0
    assert "disabled" in result.output
    assert not (temp_dir / "wal-monitor.pid").exists()


@pytest.mark.asyncio
async def test_sigterm_lets_backup_finish_and_removes_pid_file(cli_env, monkeypatch):
    """SIGTERM during a backup: the backup completes, state is saved, PID file goes."""
    started = asyncio.Event()
    release = asyncio.Event()

    class SlowEngine(FakeBackupEngine):
        async def run_backup(self, backup_type):
            started.set()
            await release.wait()
            return await super().run_backup(backup_type)

    engine = SlowEngine()
    original = walmon.core.initialize_monitor
    monkeypatch.setattr(
        walmon.core,
        "initialize_monitor",
        lambda config, **kwargs: original(config, database=FakeDatabase(), engine=engine),
    )
    config = create_config_from_env(cli_env)
    await save_state(
        config.state_path,
        MonitorState(last_check_position="0/0", accumulated_growth=1048576),
    )

    task = asyncio.create_task(_run_forever(config))
    await asyncio.wait_for(started.wait(), timeout=5)
    assert config.pid_path.read_text().strip() == str(os.getpid())

    os.kill(os.getpid(), signal.SIGTERM)
    await asyncio.sleep(0.1)
    assert not task.done()

    release.set()
    await asyncio.wait_for(task, timeout=5)

    assert engine.runs == [BackupType.INCREMENTAL]
    state = await load_state(config.state_path)
    assert state.accumulated_growth == 0
    assert state.last_backup_position == "0/1000000"
    assert not config.pid_path.exists()
