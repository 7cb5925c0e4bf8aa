# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
WALMON Evaluator - Per-tick growth accounting and trigger decision.
"""

from enum import Enum
from typing import Tuple

from walmon.lsn import lsn_delta
from walmon.state import MonitorState


class BackupDecision(str, Enum):
    """Outcome of one evaluation; never persisted."""

    NOOP = "no-op"
    TRIGGER_INCREMENTAL = "trigger-incremental"
    TRIGGER_FULL_THEN_INCREMENTAL = "trigger-full-then-incremental"

    @property
    def triggers(self) -> bool:
        return self is not BackupDecision.NOOP


def evaluate(
    current_position: str | None,
    state: MonitorState,
    threshold: int,
) -> Tuple[BackupDecision, MonitorState]:
    """
    Add this tick's growth to the counter and decide whether to back up.

    The evaluator does not know whether a base backup exists; a trigger is
    always reported as TRIGGER_INCREMENTAL and the controller upgrades it.
    The counter is never reset here, only after a backup succeeds.

    Args:
        current_position: LSN observed this tick
        state: State at the start of the tick
        threshold: Growth in bytes that warrants a backup

    Returns:
        Tuple of (decision, updated_state)
    """
    if not current_position:
        return (BackupDecision.NOOP, state)

    tick_growth = lsn_delta(current_position, state.last_check_position)
    accumulated = state.accumulated_growth + tick_growth

    updated = state.with_updates(
        last_check_position=current_position,
        accumulated_growth=accumulated,
    )

    if accumulated >= threshold:
        return (BackupDecision.TRIGGER_INCREMENTAL, updated)
    return (BackupDecision.NOOP, updated)
