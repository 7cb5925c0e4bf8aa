# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Growth evaluator tests.

The evaluator is pure: given a position, the previous state and a
threshold it returns a decision and the next state.
"""

from walmon.evaluator import BackupDecision, evaluate
from walmon.state import MonitorState

ONE_MB = 1048576


def test_first_tick_sets_baseline_without_growth():
    """With no previous position, any observed position is the baseline."""
    decision, updated = evaluate("0/5000000", MonitorState(), ONE_MB)

    assert decision == BackupDecision.NOOP
    assert updated.last_check_position == "0/5000000"
    assert updated.accumulated_growth == 0


def test_growth_accumulates_across_ticks():
    state = MonitorState(last_check_position="0/1000", accumulated_growth=100)

    decision, updated = evaluate("0/1400", state, ONE_MB)

    assert decision == BackupDecision.NOOP
    assert updated.accumulated_growth == 100 + 0x400
    assert updated.last_check_position == "0/1400"


def test_second_evaluation_at_same_position_adds_nothing():
    """Evaluating the same position twice reports zero growth the second time."""
    state = MonitorState(last_check_position="0/1000", accumulated_growth=0)

    _, first = evaluate("0/9000", state, ONE_MB)
    _, second = evaluate("0/9000", first, ONE_MB)

    assert second.accumulated_growth - first.accumulated_growth == 0
    assert second == first


def test_trigger_fires_exactly_when_threshold_is_reached():
    """No-op for ticks before the crossing, trigger on the crossing tick."""
    positions = ["0/0", "0/40000", "0/80000", "0/C0000", "0/FFFFF", "0/100000"]
    state = MonitorState()
    decisions = []
    for position in positions:
        decision, state = evaluate(position, state, ONE_MB)
        decisions.append(decision)

    assert decisions[:-1] == [BackupDecision.NOOP] * 5
    assert decisions[-1] == BackupDecision.TRIGGER_INCREMENTAL
    assert state.accumulated_growth == ONE_MB


def test_two_tick_scenario_crosses_one_megabyte():
    """0/1000000 then 0/1100000 is 0x100000 bytes, exactly the 1MB threshold."""
    _, state = evaluate("0/1000000", MonitorState(), ONE_MB)
    decision, state = evaluate("0/1100000", state, ONE_MB)

    assert decision.triggers
    assert state.accumulated_growth == 0x100000


def test_noop_does_not_reset_counter():
    state = MonitorState(last_check_position="0/0", accumulated_growth=ONE_MB - 10)

    decision, updated = evaluate("0/5", state, ONE_MB)

    assert decision == BackupDecision.NOOP
    assert updated.accumulated_growth == ONE_MB - 5


def test_trigger_does_not_reset_counter_either():
    """Resetting is the controller's job, after the backup succeeded."""
    state = MonitorState(last_check_position="0/0", accumulated_growth=ONE_MB)

    decision, updated = evaluate("0/10", state, ONE_MB)

    assert decision.triggers
    assert updated.accumulated_growth == ONE_MB + 0x10


def test_position_going_backwards_counts_as_no_growth():
    state = MonitorState(last_check_position="0/9000", accumulated_growth=50)

    decision, updated = evaluate("0/1000", state, ONE_MB)

    assert decision == BackupDecision.NOOP
    assert updated.accumulated_growth == 50
    assert updated.last_check_position == "0/1000"


def test_missing_position_leaves_state_untouched():
    state = MonitorState(last_check_position="0/9000", accumulated_growth=50)

    decision, updated = evaluate("", state, ONE_MB)

    assert decision == BackupDecision.NOOP
    assert updated is state


def test_evaluate_does_not_mutate_input_state():
    state = MonitorState(last_check_position="0/0")
    evaluate("0/FFFFFF", state, ONE_MB)
    assert state == MonitorState(last_check_position="0/0")
