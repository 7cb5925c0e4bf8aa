# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
WALMON CLI - Operator control commands.

Provides commands for running and inspecting the WAL growth monitor:
- run: Run the monitor in the foreground
- start / stop / restart: Manage the background monitor via its PID file
- status: Show whether it runs, its configuration and persisted state
- logs: Show or follow the monitor log
- reset: Stop the monitor and clear its state
- config: Show the effective configuration
- force-backup: Take a backup now, bypassing the growth check
- scheduled-backup: Scheduled incremental backup with the minimum-growth gate
- list-backups / recover: Point-in-time recovery helpers
"""

import asyncio
import json
import logging
import os
import signal
import subprocess
import sys
import time
from collections import deque
from enum import Enum
from pathlib import Path
from typing import Optional

import structlog
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from walmon.config import BackupType, MonitorConfig, RemoteBackend
from walmon.exceptions import ConfigurationError, RecoveryError
from walmon.sizes import format_size

app = typer.Typer(
    name="walmon",
    help="WAL-growth-triggered PostgreSQL backup monitor",
    no_args_is_help=True,
)

# Rich console for output
console = Console()

STOP_POLL_INTERVAL = 0.5


class StopOutcome(str, Enum):
    NOT_RUNNING = "not_running"
    STOPPED = "stopped"
    KILLED = "killed"
    STILL_RUNNING = "still_running"


def configure_logging(log_path: Path | None = None, level: str = "info") -> None:
    """
    Configure structlog to emit JSON lines.

    Args:
        log_path: Append to this file; stderr when None
        level: Minimum level name
    """
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        stream = open(log_path, "a", buffering=1, encoding="utf-8")
    else:
        stream = sys.stderr

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        logger_factory=structlog.WriteLoggerFactory(file=stream),
        cache_logger_on_first_use=False,
    )


def _load_config() -> MonitorConfig:
    from walmon.env import create_config_from_env

    try:
        return create_config_from_env()
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e.message}")
        for error in e.details.get("errors", []):
            console.print(f"  [red]-[/red] {error}")
        raise typer.Exit(2)


def _prepare_rclone(config: MonitorConfig) -> None:
    """Write RCLONE_CONF_BASE64 to the rclone config path when provided."""
    from walmon.collaborators.rclone import write_rclone_config

    encoded = os.environ.get("RCLONE_CONF_BASE64")
    if config.remote_backend == RemoteBackend.RCLONE and encoded:
        write_rclone_config(encoded, config.rclone_config_path)


def _build_runtime(config: MonitorConfig):
    from walmon.core import initialize_monitor

    try:
        _prepare_rclone(config)
        return initialize_monitor(config)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e.message}")
        raise typer.Exit(2)


def _read_pid(pid_path: Path) -> int | None:
    try:
        return int(pid_path.read_text().strip())
    except (FileNotFoundError, ValueError):
        return None


def _is_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def running_pid(pid_path: Path) -> int | None:
    """PID of the running monitor, removing a stale PID file."""
    pid = _read_pid(pid_path)
    if pid is None:
        return None
    if _is_alive(pid):
        return pid
    pid_path.unlink(missing_ok=True)
    return None


def _stop_process(
    config: MonitorConfig,
    timeout: float | None = None,
    force: bool = False,
) -> StopOutcome:
    """
    SIGTERM the monitor and wait for it to exit.

    The monitor finishes its tick in progress before exiting, which can
    take as long as a backup. With no ``timeout`` this waits indefinitely.
    When ``timeout`` elapses the monitor is SIGKILLed only if ``force`` is
    set; otherwise it is left running.
    """
    pid = running_pid(config.pid_path)
    if pid is None:
        return StopOutcome.NOT_RUNNING

    os.kill(pid, signal.SIGTERM)
    deadline = None if timeout is None else time.monotonic() + timeout
    while _is_alive(pid):
        if deadline is not None and time.monotonic() >= deadline:
            if not force:
                return StopOutcome.STILL_RUNNING
            try:
                os.kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            config.pid_path.unlink(missing_ok=True)
            return StopOutcome.KILLED
        time.sleep(STOP_POLL_INTERVAL)

    config.pid_path.unlink(missing_ok=True)
    return StopOutcome.STOPPED


def _stop_and_report(config: MonitorConfig) -> None:
    """Stop the monitor for restart/reset, waiting for a running backup."""
    pid = running_pid(config.pid_path)
    if pid is None:
        return
    console.print(f"[dim]Stopping monitor (PID {pid}); a running backup is allowed to finish...[/dim]")
    _stop_process(config)
    console.print("[dim]Monitor stopped[/dim]")


def _config_table(config: MonitorConfig) -> Table:
    table = Table(title="Configuration", show_header=False)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for key, value in config.describe().items():
        if key == "growth_threshold_bytes":
            value = f"{value} ({format_size(value)})"
        table.add_row(key, "-" if value is None else str(value))
    return table


# =============================================================================
# RUN / START / STOP
# =============================================================================


async def _run_forever(config: MonitorConfig) -> None:
    from walmon.core import start_monitor

    runtime = _build_runtime(config)
    config.pid_path.parent.mkdir(parents=True, exist_ok=True)
    config.pid_path.write_text(f"{os.getpid()}\n")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_event.set)

    stop = await start_monitor(config, runtime)
    try:
        await stop_event.wait()
    finally:
        await stop()
        if _read_pid(config.pid_path) == os.getpid():
            config.pid_path.unlink(missing_ok=True)
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)


@app.command("run")
def run_monitor_command(
    log_to_stderr: bool = typer.Option(
        False,
        "--stderr",
        help="Log to stderr instead of the log file",
    ),
):
    """
    Run the monitor in the foreground until SIGTERM/SIGINT.
    """
    config = _load_config()
    if not config.enable_wal_monitor:
        console.print("[yellow]WAL monitor is disabled (ENABLE_WAL_MONITOR=false)[/yellow]")
        raise typer.Exit(0)

    existing = running_pid(config.pid_path)
    if existing is not None and existing != os.getpid():
        console.print(f"[red]Monitor already running (PID {existing})[/red]")
        raise typer.Exit(1)

    configure_logging(None if log_to_stderr else config.log_path)
    asyncio.run(_run_forever(config))


@app.command("start")
def start_command():
    """
    Start the monitor in the background.
    """
    config = _load_config()
    if not config.enable_wal_monitor:
        console.print("[yellow]WAL monitor is disabled (ENABLE_WAL_MONITOR=false)[/yellow]")
        raise typer.Exit(0)

    pid = running_pid(config.pid_path)
    if pid is not None:
        console.print(f"[yellow]Monitor already running (PID {pid})[/yellow]")
        raise typer.Exit(0)

    config.log_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config.log_path, "a") as log_file:
        proc = subprocess.Popen(
            [sys.executable, "-m", "walmon", "run"],
            stdin=subprocess.DEVNULL,
            stdout=log_file,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    config.pid_path.parent.mkdir(parents=True, exist_ok=True)
    config.pid_path.write_text(f"{proc.pid}\n")

    time.sleep(1)
    if proc.poll() is not None:
        config.pid_path.unlink(missing_ok=True)
        console.print(f"[red]Monitor exited immediately; see {config.log_path}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]Monitor started (PID {proc.pid})[/green]")


@app.command("stop")
def stop_command(
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        "-t",
        help="Give up waiting after this many seconds (default: wait for the running backup)",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="SIGKILL the monitor when --timeout elapses, even mid-backup",
    ),
):
    """
    Stop the background monitor.

    The monitor finishes its current tick (including a running backup)
    and exits; this command waits for that.
    """
    config = _load_config()
    if force and timeout is None:
        console.print("[red]--force requires --timeout[/red]")
        raise typer.Exit(1)

    outcome = _stop_process(config, timeout, force)
    if outcome == StopOutcome.STOPPED:
        console.print("[green]Monitor stopped[/green]")
    elif outcome == StopOutcome.KILLED:
        console.print(f"[yellow]Monitor did not stop within {timeout}s and was killed[/yellow]")
    elif outcome == StopOutcome.STILL_RUNNING:
        console.print(
            f"[yellow]Monitor still running after {timeout}s (finishing a backup?); "
            "use --force to kill it[/yellow]"
        )
        raise typer.Exit(1)
    else:
        console.print("[dim]Monitor is not running[/dim]")


@app.command("restart")
def restart_command():
    """
    Restart the background monitor.
    """
    config = _load_config()
    _stop_and_report(config)
    start_command()


# =============================================================================
# STATUS / LOGS / CONFIG
# =============================================================================


@app.command("status")
def status_command(
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Output as JSON",
    ),
):
    """
    Show monitor status, configuration and persisted state.
    """
    from walmon.state import load_state

    config = _load_config()
    pid = running_pid(config.pid_path)
    state = asyncio.run(load_state(config.state_path))

    if json_output:
        typer.echo(
            json.dumps(
                {
                    "running": pid is not None,
                    "pid": pid,
                    "config": config.describe(),
                    "state": state.as_dict(),
                },
                indent=2,
            )
        )
        return

    if pid is not None:
        console.print(Panel.fit(f"[bold green]Running[/bold green] (PID {pid})", border_style="green"))
    else:
        console.print(Panel.fit("[bold red]Not running[/bold red]", border_style="red"))

    console.print(_config_table(config))

    table = Table(title="State", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key, value in state.as_dict().items():
        if key == "accumulated_growth":
            value = f"{value} ({format_size(value)} of {format_size(config.growth_threshold_bytes)})"
        table.add_row(key, "-" if value is None else str(value))
    console.print(table)


@app.command("logs")
def logs_command(
    lines: int = typer.Option(
        50,
        "--lines",
        "-n",
        help="Number of lines to show",
    ),
    follow: bool = typer.Option(
        False,
        "--follow",
        "-f",
        help="Keep printing new lines",
    ),
):
    """
    Show the monitor log.
    """
    config = _load_config()
    if not config.log_path.exists():
        console.print(f"[dim]No log file at {config.log_path}[/dim]")
        return

    with open(config.log_path, "r", encoding="utf-8", errors="replace") as f:
        for line in deque(f, maxlen=max(lines, 0)):
            typer.echo(line.rstrip("\n"))

        if not follow:
            return

        try:
            while True:
                line = f.readline()
                if line:
                    typer.echo(line.rstrip("\n"))
                else:
                    time.sleep(0.5)
        except KeyboardInterrupt:
            pass


@app.command("config")
def config_command():
    """
    Show the effective configuration.
    """
    config = _load_config()
    console.print(_config_table(config))


@app.command("reset")
def reset_command(
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Do not ask for confirmation",
    ),
):
    """
    Stop the monitor and clear its state (growth counter and positions).
    """
    from walmon.state import reset_state

    config = _load_config()
    if not yes:
        typer.confirm("Reset WAL monitor state?", abort=True)

    _stop_and_report(config)

    if reset_state(config.state_path):
        console.print("[green]State cleared[/green]")
    else:
        console.print("[dim]No state to clear[/dim]")


# =============================================================================
# BACKUP COMMANDS
# =============================================================================


def _parse_backup_type(value: str) -> BackupType:
    aliases = {"incremental": "incr", "differential": "diff"}
    try:
        return BackupType(aliases.get(value, value))
    except ValueError:
        console.print(f"[red]Invalid backup type: {value}[/red]")
        console.print(f"[dim]Valid types: {', '.join(t.value for t in BackupType)}[/dim]")
        raise typer.Exit(1)


@app.command("force-backup")
def force_backup_command(
    backup_type: str = typer.Option(
        "incr",
        "--type",
        "-t",
        help="Backup type (incr, full, diff)",
    ),
):
    """
    Take a backup now, bypassing the growth threshold.
    """
    from walmon.core import force_backup

    btype = _parse_backup_type(backup_type)
    config = _load_config()
    pid = running_pid(config.pid_path)
    if pid is not None:
        console.print(
            f"[red]Monitor is running (PID {pid}); it is the only writer of the state file.[/red]\n"
            "[dim]Stop it first (walmon stop), then run force-backup.[/dim]"
        )
        raise typer.Exit(1)

    configure_logging()
    runtime = _build_runtime(config)

    result = asyncio.run(force_backup(config, runtime, btype))

    if result.skipped:
        console.print(f"[red]Backup not started: {result.reason}[/red]")
        raise typer.Exit(1)
    if not result.backup_succeeded:
        console.print("[red]Backup failed[/red]")
        for error in result.errors:
            console.print(f"[dim]{error}[/dim]")
        raise typer.Exit(1)

    console.print(
        f"[green]{result.backup_type.value} backup completed[/green] "
        f"(label: {result.backup_label or '-'})"
    )
    if result.archive_reference:
        console.print(f"[dim]Uploaded: {result.archive_reference}[/dim]")
    for error in result.errors:
        console.print(f"[yellow]Warning: {error}[/yellow]")


@app.command("scheduled-backup")
def scheduled_backup_command():
    """
    Scheduled incremental backup; skipped when WAL growth is too small.
    """
    from walmon.scheduled import run_scheduled_backup

    config = _load_config()
    pid = running_pid(config.pid_path)
    if pid is not None:
        console.print(f"[dim]Scheduled backup skipped: monitor is running (PID {pid})[/dim]")
        return

    configure_logging()
    runtime = _build_runtime(config)

    result = asyncio.run(run_scheduled_backup(config, runtime))
    if result is None:
        console.print("[dim]Scheduled backup skipped[/dim]")
        return
    if not result.backup_succeeded:
        console.print(f"[red]Scheduled backup failed: {result.reason or 'see log'}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Scheduled {result.backup_type.value} backup completed[/green]")


# =============================================================================
# RECOVERY COMMANDS
# =============================================================================


def _require_remote(config: MonitorConfig):
    from walmon.collaborators import create_remote

    try:
        _prepare_rclone(config)
        remote = create_remote(config)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e.message}")
        raise typer.Exit(2)
    if remote is None:
        console.print("[red]No remote storage configured[/red]")
        raise typer.Exit(1)
    return remote


@app.command("list-backups")
def list_backups_command():
    """
    List backups uploaded to remote storage.
    """
    from walmon.recovery import list_remote_backups

    config = _load_config()
    remote = _require_remote(config)
    listing = asyncio.run(list_remote_backups(config, remote))

    for directory, names in listing.items():
        table = Table(title=f"{config.remote_base}/{directory}")
        table.add_column("Name", style="cyan")
        for name in names:
            table.add_row(name)
        if not names:
            table.add_row("[dim]none[/dim]")
        console.print(table)


@app.command("recover")
def recover_command(
    target_time: Optional[str] = typer.Option(None, "--time", help="Recover to this time"),
    target_name: Optional[str] = typer.Option(None, "--name", help="Recover to a restore point"),
    target_xid: Optional[str] = typer.Option(None, "--xid", help="Recover to a transaction ID"),
    target_lsn: Optional[str] = typer.Option(None, "--lsn", help="Recover to a WAL position"),
    action: Optional[str] = typer.Option(None, "--action", help="pause, promote or shutdown"),
    download: bool = typer.Option(
        True,
        "--download/--no-download",
        help="Download the repository from remote storage first",
    ),
    from_archive: Optional[str] = typer.Option(
        None,
        "--from-archive",
        help="Also unpack this full-backup archive (see list-backups) into the repository",
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """
    Restore the (stopped) cluster with pgBackRest.

    Targets default to the RECOVERY_TARGET_* environment variables.
    """
    from walmon.collaborators import create_engine
    from walmon.env import create_recovery_target_from_env
    from walmon.recovery import RecoveryTarget, perform_recovery

    config = _load_config()
    try:
        target = create_recovery_target_from_env()
        overrides = {
            k: v
            for k, v in {
                "time": target_time,
                "name": target_name,
                "xid": target_xid,
                "lsn": target_lsn,
            }.items()
            if v
        }
        if overrides:
            target = RecoveryTarget(
                **overrides,
                inclusive=target.inclusive,
                action=action or target.action,
            )
        elif action:
            target = RecoveryTarget(
                time=target.time,
                name=target.name,
                xid=target.xid,
                lsn=target.lsn,
                inclusive=target.inclusive,
                action=action,
            )
    except ConfigurationError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(2)

    remote = _require_remote(config) if download or from_archive else None
    if not yes:
        typer.confirm(
            f"Restore stanza '{config.stanza}' to {target.kind or 'latest'}? "
            "The database must be stopped.",
            abort=True,
        )

    configure_logging()
    try:
        asyncio.run(
            perform_recovery(
                config,
                create_engine(config),
                target,
                remote,
                archive=from_archive,
                download=download,
            )
        )
    except RecoveryError as e:
        console.print(f"[red]Recovery failed:[/red] {e}")
        raise typer.Exit(1)
    console.print("[green]Restore completed; start PostgreSQL to replay WAL[/green]")


def main() -> None:
    app()
