# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
PostgreSQL collaborator - Readiness check, current WAL position and archive_mode via asyncpg.

A short-lived connection is opened per call. The monitor polls once a
minute, so holding a connection open between ticks buys nothing and would
have to survive database restarts.
"""

import asyncio
import re
from typing import Any

import structlog

logger = structlog.get_logger()


class PostgresDatabase:
    """Database collaborator backed by asyncpg."""

    def __init__(self, connection_url: str, timeout: float = 10.0):
        self.connection_url = connection_url
        self.timeout = timeout

    async def _connect(self) -> Any:
        import asyncpg

        return await asyncpg.connect(self.connection_url, timeout=self.timeout)

    async def is_ready(self) -> bool:
        """True when the server accepts connections and answers a query."""
        try:
            conn = await self._connect()
            try:
                await asyncio.wait_for(conn.fetchval("SELECT 1"), timeout=self.timeout)
            finally:
                await conn.close()
        except Exception as e:
            logger.warning(
                "database_not_ready",
                connection_url=_mask_password(self.connection_url),
                error=str(e),
            )
            return False
        return True

    async def current_log_position(self) -> str:
        """
        Current WAL insert position as text.

        Returns "" when the position cannot be read, e.g. on a standby
        where pg_current_wal_lsn() is not available.
        """
        try:
            conn = await self._connect()
            try:
                value = await asyncio.wait_for(
                    conn.fetchval("SELECT pg_current_wal_lsn()::text"),
                    timeout=self.timeout,
                )
            finally:
                await conn.close()
        except Exception as e:
            logger.warning("wal_position_unavailable", error=str(e))
            return ""
        return (value or "").strip()

    async def archive_mode(self) -> str:
        """Value of the ``archive_mode`` setting, or "" when it cannot be read."""
        try:
            conn = await self._connect()
            try:
                value = await asyncio.wait_for(
                    conn.fetchval("SHOW archive_mode"),
                    timeout=self.timeout,
                )
            finally:
                await conn.close()
        except Exception as e:
            logger.warning("archive_mode_unavailable", error=str(e))
            return ""
        return (value or "").strip().lower()


def _mask_password(url: str) -> str:
    """Mask password in connection URL for logging."""
    return re.sub(r"://([^:/@]+):[^@]*@", r"://\1:****@", url)
