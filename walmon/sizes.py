# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
WALMON Sizes - Human-readable size strings.
"""

import re
from decimal import Decimal, InvalidOperation

from walmon.errors import explain_invalid_size_number, explain_unknown_size_unit
from walmon.exceptions import ConfigurationError

UNIT_MULTIPLIERS = {
    "": 1,
    "K": 1024,
    "KB": 1024,
    "M": 1024**2,
    "MB": 1024**2,
    "G": 1024**3,
    "GB": 1024**3,
}


def parse_size(text: str) -> int:
    """
    Convert a size such as ``100MB`` or ``1.5G`` into bytes.

    The number is everything that is a digit or a dot, the unit is
    everything else (whitespace ignored, case-insensitive).

    Args:
        text: Size string

    Returns:
        Size in bytes, truncated to an integer

    Raises:
        ConfigurationError: If the unit is unknown or there is no number
    """
    number = re.sub(r"[^0-9.]", "", text)
    unit = re.sub(r"[0-9.\s]", "", text).upper()

    if unit not in UNIT_MULTIPLIERS:
        raise ConfigurationError(
            explain_unknown_size_unit(text, unit),
            details={"value": text, "unit": unit},
        )

    try:
        mantissa = Decimal(number)
    except InvalidOperation as e:
        raise ConfigurationError(
            explain_invalid_size_number(text), details={"value": text}
        ) from e

    return int(mantissa * UNIT_MULTIPLIERS[unit])


def format_size(size_bytes: int) -> str:
    """Format size in human-readable format."""
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB"]:
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"
