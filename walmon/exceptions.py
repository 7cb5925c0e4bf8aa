# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
WAL Monitor Exceptions - Custom exceptions for the walmon package.
"""


class WalmonError(Exception):
    """Base exception for all walmon errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(WalmonError):
    """Raised when configuration is invalid."""

    pass


class StateError(WalmonError):
    """Raised when the monitor state file cannot be written."""

    pass


class UploadError(WalmonError):
    """Raised when remote upload operations fail."""

    pass


class RecoveryError(WalmonError):
    """Raised when recovery operations fail."""

    pass
