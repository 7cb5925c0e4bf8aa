# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
WALMON Core - Backup trigger controller.

Each poll tick:
1. Confirms the database is reachable (skip the tick if not)
2. Reads the current WAL position (skip the tick if unavailable)
3. Adds the growth since the previous tick to the persisted counter
4. Once the counter reaches the threshold, takes a backup: a full one if
   the stanza has none yet, otherwise an incremental one
5. Persists state, then hands a successful backup to the upload coordinator

A failed backup keeps the accumulated growth so the next tick retries.
Ticks are strictly sequential and the loop is stopped through a
cancellation token, never by cancelling a tick mid-backup.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, List, TypedDict

import structlog
from ulid import ULID

from walmon.collaborators import BackupEngine, Database, RemoteSync
from walmon.config import BackupType, MonitorConfig
from walmon.evaluator import BackupDecision, evaluate
from walmon.lsn import lsn_delta
from walmon.state import MonitorState, load_state, save_state

logger = structlog.get_logger()


class ControllerPhase(str, Enum):
    """Trigger controller states."""

    IDLE = "idle"
    AWAITING_FULL_BACKUP = "awaiting_full_backup"
    AWAITING_INCREMENTAL_BACKUP = "awaiting_incremental_backup"
    UPDATING_STATE = "updating_state"
    FAULTED = "faulted"


class TriggerSource(str, Enum):
    """Values written to BACKUP_TRIGGERED_BY."""

    FULL = "full"
    INCREMENTAL = "incremental"
    MANUAL = "manual"
    CRON_INCREMENTAL = "cron_incremental"


@dataclass
class TickResult:
    """Result of one poll tick or forced backup."""

    operation_id: str  # ULID
    decision: BackupDecision
    skipped: bool = False
    reason: str | None = None
    tick_growth: int = 0
    accumulated_growth: int = 0
    backup_type: BackupType | None = None
    backup_succeeded: bool | None = None
    backup_label: str | None = None
    archive_reference: str | None = None
    errors: List[str] = field(default_factory=list)


class MonitorRuntime(TypedDict):
    """Runtime state for the controller."""

    database: Database
    engine: BackupEngine
    remote: RemoteSync | None
    state_path: Path
    state: MonitorState
    phase: ControllerPhase
    monitor_stop: Any  # stop function while the loop runs
    stanza_ready: bool
    last_tick_at: datetime | None
    total_ticks: int
    total_backups: int
    total_failures: int
    last_error: str | None


def initialize_monitor(
    config: MonitorConfig,
    database: Database | None = None,
    engine: BackupEngine | None = None,
    remote: RemoteSync | None = None,
) -> MonitorRuntime:
    """
    Initialize runtime state for the controller.

    Collaborators default to the real asyncpg/pgBackRest/remote
    implementations built from the config; tests pass fakes instead.

    Args:
        config: Monitor configuration
        database: Database collaborator
        engine: Backup engine collaborator
        remote: Remote storage collaborator (None disables uploads)

    Returns:
        Initialized MonitorRuntime dictionary
    """
    from walmon.collaborators import create_database, create_engine, create_remote

    config.state_path.parent.mkdir(parents=True, exist_ok=True)

    if remote is None and config.remote_backend is not None:
        remote = create_remote(config)

    return MonitorRuntime(
        database=database or create_database(config),
        engine=engine or create_engine(config),
        remote=remote,
        state_path=config.state_path,
        state=MonitorState(),
        phase=ControllerPhase.IDLE,
        monitor_stop=None,
        stanza_ready=False,
        last_tick_at=None,
        total_ticks=0,
        total_backups=0,
        total_failures=0,
        last_error=None,
    )


async def run_monitor_tick(config: MonitorConfig, runtime: MonitorRuntime) -> TickResult:
    """
    Run one poll tick.

    Args:
        config: Monitor configuration
        runtime: Runtime state

    Returns:
        TickResult describing what happened
    """
    operation_id = str(ULID())
    runtime["total_ticks"] += 1
    runtime["last_tick_at"] = datetime.now(UTC)

    if not await runtime["database"].is_ready():
        logger.warning("tick_skipped_database_unavailable", operation_id=operation_id)
        return TickResult(operation_id, BackupDecision.NOOP, skipped=True, reason="database_not_ready")

    position = await runtime["database"].current_log_position()
    if not position:
        logger.warning("tick_skipped_position_unavailable", operation_id=operation_id)
        return TickResult(operation_id, BackupDecision.NOOP, skipped=True, reason="position_unavailable")

    state = await load_state(runtime["state_path"])
    runtime["state"] = state

    decision, updated = evaluate(position, state, config.growth_threshold_bytes)
    tick_growth = updated.accumulated_growth - state.accumulated_growth

    logger.info(
        "wal_growth_checked",
        operation_id=operation_id,
        position=position,
        tick_growth=tick_growth,
        accumulated_growth=updated.accumulated_growth,
        threshold=config.growth_threshold_bytes,
        decision=decision.value,
    )

    result = TickResult(
        operation_id,
        decision,
        tick_growth=tick_growth,
        accumulated_growth=updated.accumulated_growth,
    )

    if decision.triggers:
        has_base = await _has_base_backup(runtime, operation_id)
        if not has_base:
            result.decision = BackupDecision.TRIGGER_FULL_THEN_INCREMENTAL
        backup_type = BackupType.INCREMENTAL if has_base else BackupType.FULL
        source = TriggerSource.INCREMENTAL if has_base else TriggerSource.FULL

        updated = await execute_backup(
            config, runtime, updated, position, backup_type, source, operation_id, result
        )
        result.accumulated_growth = updated.accumulated_growth
    else:
        await _persist(runtime, updated)

    return result


async def execute_backup(
    config: MonitorConfig,
    runtime: MonitorRuntime,
    state: MonitorState,
    position: str | None,
    backup_type: BackupType,
    source: TriggerSource,
    operation_id: str,
    result: TickResult,
) -> MonitorState:
    """
    Take one backup and record its outcome.

    On success the counter is reset, ``last_backup_*`` and
    ``last_check_position`` move to ``position`` and the state is persisted
    before the upload starts. On failure ``state`` is persisted unchanged,
    so its accumulated growth carries over to the next tick.

    Returns:
        The state that was persisted
    """
    runtime["phase"] = (
        ControllerPhase.AWAITING_FULL_BACKUP
        if backup_type == BackupType.FULL
        else ControllerPhase.AWAITING_INCREMENTAL_BACKUP
    )
    result.backup_type = backup_type
    logger.info(
        "backup_triggered",
        operation_id=operation_id,
        backup_type=backup_type.value,
        triggered_by=source.value,
        accumulated_growth=state.accumulated_growth,
    )

    if not runtime["stanza_ready"]:
        await prepare_stanza(runtime, operation_id)

    try:
        outcome = await runtime["engine"].run_backup(backup_type)
        succeeded, label, diagnostic = outcome.success, outcome.label, outcome.diagnostic
    except Exception as e:
        succeeded, label, diagnostic = False, None, str(e)

    if not succeeded:
        runtime["phase"] = ControllerPhase.FAULTED
        runtime["total_failures"] += 1
        runtime["last_error"] = diagnostic
        result.backup_succeeded = False
        result.errors.append(diagnostic)
        logger.error(
            "backup_failed",
            operation_id=operation_id,
            backup_type=backup_type.value,
            accumulated_growth=state.accumulated_growth,
            diagnostic=diagnostic,
        )
        await _persist(runtime, state)
        runtime["phase"] = ControllerPhase.IDLE
        return state

    runtime["phase"] = ControllerPhase.UPDATING_STATE
    completed = state.with_updates(
        last_backup_time=datetime.now(UTC),
        last_backup_position=position or state.last_backup_position,
        last_check_position=position or state.last_check_position,
        accumulated_growth=0,
        triggered_by=source.value,
    )
    await _persist(runtime, completed)
    runtime["total_backups"] += 1
    result.backup_succeeded = True
    result.backup_label = label
    logger.info(
        "backup_completed",
        operation_id=operation_id,
        backup_type=backup_type.value,
        label=label,
        triggered_by=source.value,
    )

    if runtime["remote"] is not None:
        from walmon.upload import upload_backup

        uploaded = await upload_backup(
            config,
            runtime["remote"],
            backup_type,
            label,
            triggered_by=source.value,
            operation_id=operation_id,
        )
        result.archive_reference = uploaded.archive_reference
        result.errors.extend(uploaded.errors)

    runtime["phase"] = ControllerPhase.IDLE
    return completed


async def force_backup(
    config: MonitorConfig,
    runtime: MonitorRuntime,
    backup_type: BackupType = BackupType.INCREMENTAL,
    source: TriggerSource = TriggerSource.MANUAL,
) -> TickResult:
    """
    Take a backup now, bypassing the growth evaluator.

    A requested incremental or differential backup becomes a full one when
    the stanza has no full backup yet.

    Args:
        config: Monitor configuration
        runtime: Runtime state
        backup_type: Requested backup type
        source: Value recorded as BACKUP_TRIGGERED_BY

    Returns:
        TickResult for the forced backup
    """
    operation_id = str(ULID())

    if not await runtime["database"].is_ready():
        logger.error("forced_backup_database_unavailable", operation_id=operation_id)
        return TickResult(
            operation_id,
            BackupDecision.NOOP,
            skipped=True,
            reason="database_not_ready",
            backup_succeeded=False,
        )

    position = await runtime["database"].current_log_position()
    state = await load_state(runtime["state_path"])
    runtime["state"] = state

    if backup_type != BackupType.FULL and not await _has_base_backup(runtime, operation_id):
        backup_type = BackupType.FULL

    decision = (
        BackupDecision.TRIGGER_FULL_THEN_INCREMENTAL
        if backup_type == BackupType.FULL
        else BackupDecision.TRIGGER_INCREMENTAL
    )
    result = TickResult(operation_id, decision, accumulated_growth=state.accumulated_growth)
    updated = await execute_backup(
        config, runtime, state, position or None, backup_type, source, operation_id, result
    )
    result.accumulated_growth = updated.accumulated_growth
    return result


async def prepare_stanza(runtime: MonitorRuntime, operation_id: str | None = None) -> bool:
    """
    Make sure WAL archiving is on and the pgBackRest stanza exists.

    Failures are logged, not raised: the monitor keeps polling and the
    setup is retried before the next backup.

    Returns:
        True when the stanza is ready for backups
    """
    try:
        if not await runtime["database"].is_ready():
            logger.warning("stanza_setup_deferred", operation_id=operation_id, reason="database_not_ready")
            return False

        archive_mode = await runtime["database"].archive_mode()
        if archive_mode not in ("on", "always"):
            logger.error(
                "archive_mode_disabled",
                operation_id=operation_id,
                archive_mode=archive_mode or None,
                hint="set archive_mode=on in postgresql.conf and restart PostgreSQL",
            )
            return False

        result = await runtime["engine"].ensure_stanza()
    except Exception as e:
        logger.error("stanza_setup_failed", operation_id=operation_id, error=str(e))
        return False

    if not result.success:
        logger.error("stanza_setup_failed", operation_id=operation_id, diagnostic=result.diagnostic)
        return False

    runtime["stanza_ready"] = True
    logger.info("stanza_ready", operation_id=operation_id)
    return True


async def _has_base_backup(runtime: MonitorRuntime, operation_id: str) -> bool:
    try:
        return await runtime["engine"].has_base_backup()
    except Exception as e:
        # Taking a full backup is the safe answer when info is unavailable
        logger.warning("base_backup_check_failed", operation_id=operation_id, error=str(e))
        return False


async def _persist(runtime: MonitorRuntime, state: MonitorState) -> None:
    await save_state(runtime["state_path"], state)
    runtime["state"] = state


def growth_since_last_backup(state: MonitorState, position: str | None) -> int:
    """Bytes of WAL written since the last recorded backup position."""
    return lsn_delta(position, state.last_backup_position)


async def start_monitor(
    config: MonitorConfig,
    runtime: MonitorRuntime,
    interval: float | None = None,
) -> Callable[[], Awaitable[None]]:
    """
    Start the polling loop as a background task and return a stop function.

    The stop function sets the cancellation token and waits for the tick in
    progress to finish; a running backup is never interrupted. Every tick
    persists its own outcome, so nothing is written on stop and a state
    file updated by another command while the monitor idled is kept.

    Args:
        config: Monitor configuration
        runtime: Runtime state
        interval: Seconds between ticks (defaults to config.monitor_interval)

    Returns:
        Async function that stops the loop
    """
    runtime["state"] = await load_state(runtime["state_path"])
    await prepare_stanza(runtime)

    stop_event = asyncio.Event()
    task = asyncio.create_task(
        _monitor_loop(config, runtime, stop_event, interval or config.monitor_interval)
    )

    logger.info(
        "wal_monitor_started",
        stanza=config.stanza,
        threshold=config.wal_growth_threshold,
        threshold_bytes=config.growth_threshold_bytes,
        interval=interval or config.monitor_interval,
    )

    async def stop() -> None:
        stop_event.set()
        await task
        runtime["monitor_stop"] = None
        logger.info("wal_monitor_stopped", **get_metrics(runtime))

    runtime["monitor_stop"] = stop
    return stop


async def _monitor_loop(
    config: MonitorConfig,
    runtime: MonitorRuntime,
    stop_event: asyncio.Event,
    interval: float,
) -> None:
    """Tick, then wait for the interval or the stop token, until stopped."""
    while not stop_event.is_set():
        try:
            await run_monitor_tick(config, runtime)
        except Exception as e:
            runtime["last_error"] = str(e)
            runtime["phase"] = ControllerPhase.IDLE
            logger.error("monitor_tick_failed", error=str(e))

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass


def get_metrics(runtime: MonitorRuntime) -> dict:
    """Counters for status output."""
    return {
        "phase": runtime["phase"].value,
        "stanza_ready": runtime["stanza_ready"],
        "total_ticks": runtime["total_ticks"],
        "total_backups": runtime["total_backups"],
        "total_failures": runtime["total_failures"],
        "last_tick_at": runtime["last_tick_at"].isoformat() if runtime["last_tick_at"] else None,
        "last_error": runtime["last_error"],
        **runtime["state"].as_dict(),
    }
