# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
WALMON LSN - Write-ahead-log position arithmetic.

PostgreSQL reports log positions as two hexadecimal halves separated by a
slash (``16/B374D848``). The 64-bit magnitude is ``high * 2**32 + low``.

Malformed positions degrade to a magnitude of 0 instead of raising: callers
only ever use the value to compute forward deltas, and a zero baseline can
overestimate growth but never make it negative.
"""

import re
from dataclasses import dataclass

_LSN_PATTERN = re.compile(r"^([0-9A-F]{1,8})/([0-9A-F]{1,8})$", re.IGNORECASE)

SEGMENT_SPAN = 1 << 32


@dataclass(frozen=True, order=True)
class LogPosition:
    """A parsed write-ahead-log position."""

    high: int
    low: int

    @classmethod
    def from_text(cls, text: str | None) -> "LogPosition | None":
        """Parse ``HEX/HEX``; returns None when the text is not a position."""
        if not text:
            return None
        match = _LSN_PATTERN.match(text)
        if match is None:
            return None
        return cls(int(match.group(1), 16), int(match.group(2), 16))

    @property
    def magnitude(self) -> int:
        return self.high * SEGMENT_SPAN + self.low

    def __str__(self) -> str:
        return f"{self.high:X}/{self.low:X}"


def parse_lsn(text: str | None) -> int:
    """
    Convert an LSN string into its 64-bit magnitude.

    Args:
        text: Position such as ``0/3000060`` (hex digits in either case)

    Returns:
        The magnitude, or 0 for empty or malformed input
    """
    position = LogPosition.from_text(text)
    if position is None:
        return 0
    return position.magnitude


def lsn_delta(current: str | None, previous: str | None) -> int:
    """
    Bytes of log advancement from ``previous`` to ``current``.

    Returns 0 when there is no baseline yet (``previous`` empty or the
    literal ``"null"``) and never returns a negative number: a position at
    or behind the previous one counts as no growth.
    """
    if not previous or previous == "null":
        return 0
    return max(0, parse_lsn(current) - parse_lsn(previous))
