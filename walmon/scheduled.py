# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
WALMON Scheduled - Minimum-growth gate for time-scheduled incremental backups.

An external scheduler (cron, systemd timer) runs ``walmon scheduled-backup``
at fixed times. This policy skips that run when it would produce a
near-empty backup, or when the growth monitor has just taken one.
"""

from datetime import datetime, timedelta, UTC
from typing import Tuple

import structlog

from walmon.collaborators import Database
from walmon.config import BackupType, MonitorConfig
from walmon.core import (
    MonitorRuntime,
    TickResult,
    TriggerSource,
    force_backup,
    growth_since_last_backup,
)
from walmon.evaluator import BackupDecision
from walmon.state import MonitorState, load_state

logger = structlog.get_logger()


async def should_run_scheduled_backup(
    config: MonitorConfig,
    database: Database,
    state: MonitorState,
    now: datetime | None = None,
) -> Tuple[bool, str]:
    """
    Decide whether a scheduled incremental backup is worth taking.

    Args:
        config: Monitor configuration
        database: Database collaborator
        state: Current monitor state
        now: Current time (defaults to now, UTC)

    Returns:
        Tuple of (run, reason)
    """
    if not await database.is_ready():
        return (False, "database_not_ready")

    position = await database.current_log_position()
    if not position:
        return (False, "position_unavailable")

    if not state.last_backup_position:
        return (True, "no_previous_backup")

    if position == state.last_backup_position:
        return (False, "no_wal_activity")

    growth = growth_since_last_backup(state, position)
    if growth < config.min_growth_bytes:
        return (False, "below_minimum_growth")

    if config.enable_wal_monitor and state.last_backup_time is not None:
        age = (now or datetime.now(UTC)) - state.last_backup_time
        if age < timedelta(seconds=config.recent_backup_window):
            return (False, "recent_monitor_backup")

    return (True, "sufficient_growth")


async def run_scheduled_backup(config: MonitorConfig, runtime: MonitorRuntime) -> TickResult | None:
    """
    Apply the gate and take an incremental backup if it passes.

    Returns:
        TickResult of the backup, or None when the run was skipped
    """
    state = await load_state(runtime["state_path"])
    run, reason = await should_run_scheduled_backup(config, runtime["database"], state)

    if not run:
        logger.info("scheduled_backup_skipped", reason=reason)
        return None

    logger.info("scheduled_backup_starting", reason=reason)
    result = await force_backup(
        config,
        runtime,
        BackupType.INCREMENTAL,
        source=TriggerSource.CRON_INCREMENTAL,
    )
    if result.decision == BackupDecision.TRIGGER_FULL_THEN_INCREMENTAL:
        logger.info("scheduled_backup_promoted_to_full", operation_id=result.operation_id)
    return result
