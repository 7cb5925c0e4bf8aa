# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
WALMON State - Durable monitor state across restarts.

The state file is plain ``KEY=value`` lines so operators can read it
directly:

    LAST_BACKUP_TIME=2026-01-01T10:00:00+00:00
    LAST_BACKUP_LSN=0/3000060
    LAST_CHECK_LSN=0/3000148
    ACCUMULATED_WAL_GROWTH=232
    BACKUP_TRIGGERED_BY=incremental

It is parsed into a typed record and never executed. Writes go to a
temporary file that is renamed over the previous one, so a crash leaves
either the old or the new state on disk, never a torn file.
"""

import os
from dataclasses import dataclass, replace
from datetime import datetime, UTC
from pathlib import Path
from typing import Dict

import aiofiles
import structlog

from walmon.exceptions import StateError

logger = structlog.get_logger()

LEGACY_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

_KEYS = (
    "LAST_BACKUP_TIME",
    "LAST_BACKUP_LSN",
    "LAST_CHECK_LSN",
    "ACCUMULATED_WAL_GROWTH",
    "BACKUP_TRIGGERED_BY",
)


@dataclass(frozen=True)
class MonitorState:
    """Persisted monitor record. The zero value means "first run"."""

    last_backup_time: datetime | None = None
    last_backup_position: str | None = None
    last_check_position: str | None = None
    accumulated_growth: int = 0
    triggered_by: str | None = None

    def with_updates(self, **kwargs) -> "MonitorState":
        return replace(self, **kwargs)

    def as_dict(self) -> Dict[str, str | int | None]:
        return {
            "last_backup_time": (
                self.last_backup_time.isoformat() if self.last_backup_time else None
            ),
            "last_backup_position": self.last_backup_position,
            "last_check_position": self.last_check_position,
            "accumulated_growth": self.accumulated_growth,
            "triggered_by": self.triggered_by,
        }


class CorruptStateError(ValueError):
    """State text could not be parsed."""


def _parse_time(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        parsed = datetime.strptime(value, LEGACY_TIME_FORMAT)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def parse_state(text: str) -> MonitorState:
    """
    Parse state file text into a MonitorState.

    Raises:
        CorruptStateError: If any line or value is malformed
    """
    values: Dict[str, str] = {}
    for line_number, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep or not key:
            raise CorruptStateError(f"line {line_number}: expected KEY=value")
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        values[key.strip()] = value

    growth_text = values.get("ACCUMULATED_WAL_GROWTH") or "0"
    try:
        growth = int(growth_text)
    except ValueError as e:
        raise CorruptStateError(f"ACCUMULATED_WAL_GROWTH={growth_text!r}") from e
    if growth < 0:
        raise CorruptStateError(f"ACCUMULATED_WAL_GROWTH={growth_text!r}")

    time_text = values.get("LAST_BACKUP_TIME")
    try:
        last_backup_time = _parse_time(time_text) if time_text else None
    except ValueError as e:
        raise CorruptStateError(f"LAST_BACKUP_TIME={time_text!r}") from e

    return MonitorState(
        last_backup_time=last_backup_time,
        last_backup_position=values.get("LAST_BACKUP_LSN") or None,
        last_check_position=values.get("LAST_CHECK_LSN") or None,
        accumulated_growth=growth,
        triggered_by=values.get("BACKUP_TRIGGERED_BY") or None,
    )


def render_state(state: MonitorState) -> str:
    """Render a MonitorState as ``KEY=value`` lines."""
    values = {
        "LAST_BACKUP_TIME": (
            state.last_backup_time.isoformat() if state.last_backup_time else ""
        ),
        "LAST_BACKUP_LSN": state.last_backup_position or "",
        "LAST_CHECK_LSN": state.last_check_position or "",
        "ACCUMULATED_WAL_GROWTH": str(state.accumulated_growth),
        "BACKUP_TRIGGERED_BY": state.triggered_by or "",
    }
    return "".join(f"{key}={values[key]}\n" for key in _KEYS)


async def load_state(state_path: Path) -> MonitorState:
    """
    Load the monitor state.

    A missing file is a first run. An unreadable or corrupt file is logged
    and also treated as a first run so monitoring can resume.

    Args:
        state_path: Path to the state file

    Returns:
        The persisted state, or the zero state
    """
    try:
        async with aiofiles.open(state_path, "r", encoding="utf-8") as f:
            text = await f.read()
    except FileNotFoundError:
        return MonitorState()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("state_file_unreadable", state_path=str(state_path), error=str(e))
        return MonitorState()

    try:
        return parse_state(text)
    except CorruptStateError as e:
        logger.warning("state_file_corrupt", state_path=str(state_path), error=str(e))
        return MonitorState()


async def save_state(state_path: Path, state: MonitorState) -> None:
    """
    Write the monitor state atomically (write to temp, then rename).

    Args:
        state_path: Path to the state file
        state: State to persist

    Raises:
        StateError: If the file cannot be written
    """
    temp_path = state_path.with_name(f".{state_path.name}.tmp")
    try:
        state_path.parent.mkdir(parents=True, exist_ok=True)

        async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
            await f.write(render_state(state))
            await f.flush()
            os.fsync(f.fileno())

        # Replace previous state (atomic on POSIX filesystems)
        temp_path.replace(state_path)

        logger.debug(
            "state_saved",
            state_path=str(state_path),
            accumulated_growth=state.accumulated_growth,
            last_check_position=state.last_check_position,
        )

    except OSError as e:
        raise StateError(
            f"Failed to write state file: {e}",
            details={"state_path": str(state_path)},
        )


def reset_state(state_path: Path) -> bool:
    """Remove the state file. Returns True if a file was removed."""
    try:
        state_path.unlink()
    except FileNotFoundError:
        return False
    logger.info("state_reset", state_path=str(state_path))
    return True
