# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
LSN arithmetic and size parsing tests.

These tests verify the numeric guarantees the growth accounting rests on:
1. Parsing is strictly monotonic across the high/low boundary
2. Malformed positions degrade to 0 instead of raising
3. Deltas are never negative and need a baseline
4. Size strings convert exactly and bad units fail loudly
"""

import pytest

from walmon.exceptions import ConfigurationError
from walmon.lsn import LogPosition, lsn_delta, parse_lsn
from walmon.sizes import format_size, parse_size


# ============================================================================
# Test 1: PARSING
# ============================================================================

def test_parse_combines_high_and_low_segments():
    """The magnitude is high * 2^32 + low."""
    assert parse_lsn("0/0") == 0
    assert parse_lsn("0/10") == 16
    assert parse_lsn("1/0") == 4294967296
    assert parse_lsn("16/B374D848") == 0x16 * 2**32 + 0xB374D848


def test_parse_is_case_insensitive():
    assert parse_lsn("16/b374d848") == parse_lsn("16/B374D848")


def test_parse_is_monotonic_across_segment_boundary():
    """A low segment at its maximum still sorts below the next high segment."""
    ordered = ["0/0", "0/10", "0/FFFFFFFF", "1/0", "1/1", "A/0", "FFFFFFFF/FFFFFFFF"]
    magnitudes = [parse_lsn(p) for p in ordered]
    assert magnitudes == sorted(magnitudes)
    assert len(set(magnitudes)) == len(magnitudes)


@pytest.mark.parametrize(
    "text",
    ["", None, "0", "0/", "/0", "0-10", "0/10/1", "G/10", "0/1Z", " 0/10", "null", "100000000/0"],
)
def test_malformed_positions_parse_as_zero(text):
    """Anything that is not HEX/HEX with 32-bit halves is magnitude 0."""
    assert parse_lsn(text) == 0


def test_log_position_round_trips_text_form():
    position = LogPosition.from_text("16/b374d848")
    assert position == LogPosition(0x16, 0xB374D848)
    assert str(position) == "16/B374D848"
    assert LogPosition.from_text("nonsense") is None
    assert LogPosition(0, 5) < LogPosition(1, 0)


# ============================================================================
# Test 2: DELTAS
# ============================================================================

def test_delta_without_baseline_is_zero():
    assert lsn_delta("5/0", "") == 0
    assert lsn_delta("5/0", None) == 0
    assert lsn_delta("5/0", "null") == 0


def test_delta_is_forward_growth():
    assert lsn_delta("0/1100000", "0/1000000") == 0x100000
    assert lsn_delta("1/10", "0/FFFFFFF0") == 0x20


def test_delta_is_never_negative():
    """A position at or behind the previous one is no growth."""
    assert lsn_delta("0/1000", "0/1000") == 0
    assert lsn_delta("0/1000", "0/2000") == 0
    assert lsn_delta("garbage", "0/2000") == 0


def test_delta_from_malformed_baseline_overestimates():
    """A corrupt baseline parses as 0, so the whole position counts as growth."""
    assert lsn_delta("0/2000", "garbage") == 0x2000


# ============================================================================
# Test 3: SIZE PARSING
# ============================================================================

@pytest.mark.parametrize(
    "text,expected",
    [
        ("100MB", 104857600),
        ("1.5GB", 1610612736),
        ("512", 512),
        ("1K", 1024),
        ("1kb", 1024),
        ("2M", 2097152),
        ("1G", 1073741824),
        ("100 MB", 104857600),
        ("0.5KB", 512),
    ],
)
def test_parse_size(text, expected):
    assert parse_size(text) == expected


def test_parse_size_unknown_unit_names_the_unit():
    with pytest.raises(ConfigurationError) as exc_info:
        parse_size("3XB")
    assert "XB" in str(exc_info.value)
    assert exc_info.value.details["unit"] == "XB"


@pytest.mark.parametrize("text", ["MB", "", "1.2.3MB"])
def test_parse_size_without_number_fails(text):
    with pytest.raises(ConfigurationError):
        parse_size(text)


@pytest.mark.parametrize(
    "text, expected",
    [("100 MB", 104857600), ("1.5g", 1610612736), (" 64k ", 65536)],
)
def test_parse_size_ignores_whitespace_and_case(text, expected):
    assert parse_size(text) == expected


@pytest.mark.parametrize("text, unit", [("100TB", "TB"), ("-1MB", "-MB")])
def test_parse_size_rejects_other_units(text, unit):
    with pytest.raises(ConfigurationError) as exc_info:
        parse_size(text)
    assert exc_info.value.details["unit"] == unit


def test_format_size():
    assert format_size(512) == "512.0 B"
    assert format_size(1048576) == "1.0 MB"
