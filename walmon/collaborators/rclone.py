# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
rclone collaborator - Remote sync through the rclone CLI.

rclone already copies only what changed, so repeated syncs after a failed
upload simply pick up where the last one stopped.
"""

import base64
import binascii
import configparser
import os
import re
from pathlib import Path
from typing import List

import structlog

from walmon.collaborators import SyncResult
from walmon.collaborators import process
from walmon.errors import explain_missing_rclone_remote
from walmon.exceptions import ConfigurationError

logger = structlog.get_logger()

_REMOTE_NAME = re.compile(r"^[A-Za-z0-9_.-]+$")

# Lock and temp files pgBackRest keeps while it works
SYNC_EXCLUDES = ("*.lock", "*.tmp")


def resolve_remote_name(config_path: Path, explicit: str | None = None) -> str:
    """
    Pick the rclone remote to use.

    Args:
        config_path: rclone.conf location
        explicit: RCLONE_REMOTE_NAME, wins when set

    Returns:
        The remote name

    Raises:
        ConfigurationError: If no valid remote can be determined
    """
    name = explicit
    if not name:
        parser = configparser.ConfigParser()
        try:
            parser.read(config_path)
        except configparser.Error as e:
            raise ConfigurationError(
                f"Unreadable rclone config: {e}", details={"config_path": str(config_path)}
            )
        sections = parser.sections()
        if not sections:
            raise ConfigurationError(explain_missing_rclone_remote(str(config_path)))
        name = sections[0]

    if not _REMOTE_NAME.match(name):
        raise ConfigurationError(
            f"Invalid rclone remote name: {name!r}",
            details={"config_path": str(config_path)},
        )
    return name


def write_rclone_config(encoded: str, config_path: Path) -> Path:
    """
    Materialize a base64-encoded rclone.conf (RCLONE_CONF_BASE64).

    Raises:
        ConfigurationError: If the value is not valid base64
    """
    try:
        content = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ConfigurationError(f"RCLONE_CONF_BASE64 is not valid base64: {e}")

    config_path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(config_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(content)
    logger.info("rclone_config_written", config_path=str(config_path))
    return config_path


class RcloneRemote:
    """Remote sync collaborator that shells out to rclone."""

    def __init__(
        self,
        remote_name: str,
        config_path: Path,
        binary: str = "rclone",
        timeout: int = 3600,
    ):
        self.remote_name = remote_name
        self.config_path = config_path
        self.binary = binary
        self.timeout = timeout

    def _target(self, remote_path: str) -> str:
        return f"{self.remote_name}:{remote_path}"

    async def _rclone(self, *args: str):
        return await process.run_command(
            [self.binary, *args, "--config", str(self.config_path)],
            timeout=self.timeout,
        )

    def _excludes(self) -> List[str]:
        return [f"--exclude={pattern}" for pattern in SYNC_EXCLUDES]

    async def sync_repository(self, local_path: Path, remote_path: str) -> SyncResult:
        """Mirror the local repository to ``remote_path``."""
        target = self._target(remote_path)

        mkdir = await self._rclone("mkdir", target)
        if not mkdir.success:
            # sync creates the path itself on most backends
            logger.warning("rclone_mkdir_failed", target=target, diagnostic=mkdir.diagnostic)

        result = await self._rclone("sync", str(local_path), target, *self._excludes())
        if not result.success:
            return SyncResult(False, remote_path, diagnostic=result.diagnostic)

        logger.info("rclone_sync_complete", local_path=str(local_path), target=target)
        return SyncResult(True, remote_path)

    async def upload_object(self, local_file: Path, remote_path: str) -> SyncResult:
        target = self._target(remote_path.rstrip("/") + "/")
        result = await self._rclone("copy", str(local_file), target)
        if not result.success:
            return SyncResult(False, remote_path, diagnostic=result.diagnostic)
        return SyncResult(True, f"{remote_path.rstrip('/')}/{local_file.name}", files_transferred=1)

    async def download_object(self, remote_path: str, local_file: Path) -> SyncResult:
        local_file.parent.mkdir(parents=True, exist_ok=True)
        result = await self._rclone("copyto", self._target(remote_path), str(local_file))
        if not result.success:
            return SyncResult(False, remote_path, diagnostic=result.diagnostic)
        return SyncResult(True, remote_path, files_transferred=1)

    async def list(self, remote_path: str) -> List[str]:
        result = await self._rclone("lsf", self._target(remote_path))
        if not result.success:
            logger.warning(
                "rclone_list_failed",
                remote_path=remote_path,
                diagnostic=result.diagnostic,
            )
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def delete(self, remote_path: str) -> SyncResult:
        result = await self._rclone("deletefile", self._target(remote_path))
        return SyncResult(result.success, remote_path, diagnostic=result.diagnostic)

    async def fetch_repository(self, remote_path: str, local_path: Path) -> SyncResult:
        """Mirror the remote repository back into ``local_path``."""
        local_path.mkdir(parents=True, exist_ok=True)
        result = await self._rclone(
            "sync", self._target(remote_path), str(local_path), *self._excludes()
        )
        if not result.success:
            return SyncResult(False, remote_path, diagnostic=result.diagnostic)
        return SyncResult(True, remote_path)
