# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for the WAL monitor.

These helpers centralize wording for common configuration errors so that
all modules present consistent, actionable messages.
"""


def explain_unknown_size_unit(value: str, unit: str) -> str:
    """
    Explain that a size string carries an unknown unit suffix.
    """

    return (
        f"Invalid size {value!r}: unknown unit {unit!r}. "
        "Expected a number optionally followed by K, KB, M, MB, G or GB (e.g. '100MB')."
    )


def explain_invalid_size_number(value: str) -> str:
    """
    Explain that a size string has no usable number.
    """

    return (
        f"Invalid size {value!r}: expected a number such as '512', '1.5GB' or '100MB'."
    )


def explain_invalid_interval_env(value: str | None) -> str:
    """
    Explain that WAL_MONITOR_INTERVAL is invalid.
    """

    return (
        f"Invalid WAL_MONITOR_INTERVAL value: {value!r}. "
        "It must be a positive integer number of seconds."
    )


def explain_invalid_bool_env(name: str, value: str | None) -> str:
    return (
        f"Invalid {name} value: {value!r}. "
        "Expected 'true' or 'false'."
    )


def explain_invalid_integer_env(name: str, value: str | None) -> str:
    return f"Invalid {name} value: {value!r}. It must be a non-negative integer."


def explain_invalid_remote_backend_env(value: str | None) -> str:
    """
    Explain that the remote backend env is invalid.
    """

    return (
        f"Invalid WALMON_REMOTE_BACKEND value: {value!r}. "
        "Expected 'rclone' or 's3', or leave unset to disable remote upload."
    )


def explain_missing_bucket_env() -> str:
    """
    Explain that the S3 bucket environment variable is missing.
    """

    return (
        "S3 remote backend selected but no bucket is configured. "
        "Set the S3_BUCKET environment variable or choose WALMON_REMOTE_BACKEND=rclone."
    )


def explain_missing_rclone_remote(config_path: str) -> str:
    """
    Explain that no rclone remote could be determined.
    """

    return (
        f"No rclone remote found in {config_path}. "
        "Set RCLONE_REMOTE_NAME or provide a config with at least one [remote] section "
        "(RCLONE_CONF_BASE64 can be used to supply it)."
    )


def explain_invalid_recovery_target(problem: str) -> str:
    """
    Explain why a recovery target was rejected.
    """

    return (
        f"Invalid recovery target: {problem}. "
        "Set at most one of RECOVERY_TARGET_TIME, RECOVERY_TARGET_NAME, "
        "RECOVERY_TARGET_XID or RECOVERY_TARGET_LSN."
    )
