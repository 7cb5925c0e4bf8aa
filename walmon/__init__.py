# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
WAL Monitor - WAL-growth-triggered backups for PostgreSQL.

Polls the database's write-ahead-log position, accumulates growth since
the last backup, triggers pgBackRest incremental (or first full) backups
once a threshold is crossed, ships them to remote storage and keeps its
accounting in a durable state file. Package name: walmon.
"""

__version__ = "0.1.0"

# Configuration
from walmon.config import BackupType, MonitorConfig, RemoteBackend
from walmon.env import create_config_from_env

# Core functions
from walmon.core import (
    force_backup,
    get_metrics,
    initialize_monitor,
    run_monitor_tick,
    start_monitor,
)

# Building blocks
from walmon.evaluator import BackupDecision, evaluate
from walmon.lsn import LogPosition, lsn_delta, parse_lsn
from walmon.sizes import parse_size
from walmon.state import MonitorState, load_state, save_state

__all__ = [
    # Version
    "__version__",
    # Configuration
    "BackupType",
    "MonitorConfig",
    "RemoteBackend",
    "create_config_from_env",
    # Core orchestration functions
    "initialize_monitor",
    "run_monitor_tick",
    "force_backup",
    "start_monitor",
    "get_metrics",
    # Building blocks
    "BackupDecision",
    "evaluate",
    "LogPosition",
    "lsn_delta",
    "parse_lsn",
    "parse_size",
    "MonitorState",
    "load_state",
    "save_state",
]
