# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Async subprocess runner shared by the command-line collaborators.
"""

import asyncio
from typing import Mapping, Sequence

import structlog

from walmon.collaborators import CommandResult

logger = structlog.get_logger()


async def run_command(
    cmd: Sequence[str],
    timeout: float = 120,
    env: Mapping[str, str] | None = None,
) -> CommandResult:
    """
    Run a command and capture its output.

    The caller's coroutine waits for the child to exit. The child runs in
    its own session, so a Ctrl+C or SIGTERM aimed at the monitor never
    reaches a running pgbackrest. On timeout the child is killed and a
    failed result is returned; a missing binary is also a failed result,
    not an exception.

    Args:
        cmd: Program and arguments
        timeout: Seconds before the child is killed
        env: Environment for the child (inherits ours when None)

    Returns:
        CommandResult with return code and decoded output
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=dict(env) if env is not None else None,
            start_new_session=True,
        )
    except OSError as e:
        logger.error("command_start_failed", command=cmd[0], error=str(e))
        return CommandResult(returncode=127, stderr=f"Failed to start {cmd[0]}: {e}")

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        logger.error("command_timed_out", command=cmd[0], timeout=timeout)
        return CommandResult(returncode=-1, stderr=f"Timeout after {timeout}s")

    return CommandResult(
        returncode=proc.returncode or 0,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )
