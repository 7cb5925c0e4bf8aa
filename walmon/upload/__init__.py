# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Upload - Remote copies of finished backups.
"""

from walmon.upload.archive import (
    create_repository_archive,
    extract_repository_archive,
)

from walmon.upload.coordinator import (
    UploadResult,
    build_metadata,
    prune_remote_backups,
    upload_backup,
)

__all__ = [
    # Archive
    "create_repository_archive",
    "extract_repository_archive",
    # Coordinator
    "UploadResult",
    "build_metadata",
    "prune_remote_backups",
    "upload_backup",
]
