"""
Streak ledger tests.

Tests:
- DayIndex conversion in the canonical zone
- Binary-search membership agrees with a linear scan
- Current/longest computation (including Scenario A)
- Addition and removal patches
- Replaying recorded operations on top of a stored record
- History parsing of legacy shapes
"""
from datetime import datetime, timezone

import pytest

from attendrix.features.streaks import ledger
from attendrix.models.streak import StreakOp, StreakPatch, StreakRecord
from attendrix.tests.mocks import MONDAY, TUESDAY, WEDNESDAY


def test_day_index_uses_canonical_zone():
    # 20:00 UTC on Monday is already Tuesday 01:30 in Kolkata
    late_utc = datetime(2024, 3, 11, 20, 0, tzinfo=timezone.utc)
    assert ledger.to_day_index(late_utc, "Asia/Kolkata") == TUESDAY
    assert ledger.to_day_index(late_utc, "UTC") == MONDAY


def test_same_civil_day_maps_to_same_index():
    morning = datetime(2024, 3, 11, 0, 5, tzinfo=timezone.utc)
    evening = datetime(2024, 3, 11, 18, 20, tzinfo=timezone.utc)
    assert ledger.to_day_index(morning, "Asia/Kolkata") == ledger.to_day_index(evening, "Asia/Kolkata")


def test_naive_datetime_is_wall_time_in_zone():
    assert ledger.to_day_index(datetime(2024, 3, 11, 23, 59), "Asia/Kolkata") == MONDAY


def test_format_day_index():
    assert ledger.format_day_index(MONDAY, "Asia/Kolkata") == "2024-03-11 IST"
    assert ledger.day_index_to_date(0).isoformat() == "1970-01-01"


@pytest.mark.parametrize("days", [[], [5], [1, 2, 3], [2, 4, 6, 8, 10], list(range(100, 140, 3))])
def test_contains_matches_linear_scan(days):
    for day in range(0, 150):
        assert ledger.contains(days, day) == (day in days)
        assert ledger.insertion_index(days, day) == len([d for d in days if d < day])


def test_current_streak_scenario_a():
    record = StreakRecord(days=[100, 101], current_streak=2, longest_streak=2)
    patch = ledger.apply_addition(record, 102, today=102)
    assert patch.streak_history == [100, 101, 102]
    assert patch.current_streak == 3
    assert patch.longest_streak == 3


def test_current_streak_counts_from_yesterday_when_today_missing():
    days = [MONDAY, TUESDAY]
    assert ledger.current_streak(days, WEDNESDAY) == 2
    assert ledger.current_streak(days, WEDNESDAY + 1) == 0
    assert ledger.current_streak([], WEDNESDAY) == 0


def test_longest_streak_at_least_current():
    days = [1, 2, 3, 10, 11, 20, 21, 22, 23]
    assert ledger.longest_streak(days) == 4
    for today in range(0, 30):
        assert ledger.longest_streak(days) >= ledger.current_streak(days, today)


def test_addition_is_idempotent():
    record = StreakRecord(days=[MONDAY, TUESDAY], current_streak=2, longest_streak=2)
    patch = ledger.apply_addition(record, TUESDAY, today=TUESDAY)
    assert patch.is_empty()


def test_future_day_is_ignored():
    record = StreakRecord(days=[MONDAY], current_streak=1, longest_streak=1)
    assert ledger.apply_addition(record, WEDNESDAY + 1, today=WEDNESDAY).is_empty()


def test_existing_past_day_can_repair_longest():
    record = StreakRecord(days=[MONDAY, TUESDAY, WEDNESDAY], current_streak=3, longest_streak=1)
    patch = ledger.apply_addition(record, TUESDAY, today=WEDNESDAY + 5)
    assert patch == StreakPatch(longest_streak=2)


def test_backfilled_day_keeps_history_sorted():
    record = StreakRecord(days=[MONDAY, WEDNESDAY], current_streak=1, longest_streak=1)
    patch = ledger.apply_addition(record, TUESDAY, today=WEDNESDAY)
    assert patch.streak_history == [MONDAY, TUESDAY, WEDNESDAY]
    assert patch.current_streak == 3
    assert patch.longest_streak == 3


def test_unchanged_current_is_not_emitted():
    # Adding an old isolated day does not move today's run
    record = StreakRecord(days=[TUESDAY, WEDNESDAY], current_streak=2, longest_streak=2)
    patch = ledger.apply_addition(record, MONDAY - 5, today=WEDNESDAY)
    assert patch.streak_history == [MONDAY - 5, TUESDAY, WEDNESDAY]
    assert patch.current_streak is None
    assert patch.longest_streak is None


def test_removal_of_absent_day_is_noop():
    record = StreakRecord(days=[MONDAY], current_streak=1, longest_streak=1)
    assert ledger.apply_removal(record, TUESDAY, today=TUESDAY).is_empty()


def test_removal_of_only_day_empties_history():
    record = StreakRecord(days=[WEDNESDAY], current_streak=1, longest_streak=4)
    patch = ledger.apply_removal(record, WEDNESDAY, today=WEDNESDAY)
    assert patch == StreakPatch(streak_history=[], current_streak=0)


def test_removal_never_lowers_longest():
    record = StreakRecord(days=[MONDAY, TUESDAY, WEDNESDAY], current_streak=3, longest_streak=3)
    patch = ledger.apply_removal(record, WEDNESDAY, today=WEDNESDAY)
    assert patch.streak_history == [MONDAY, TUESDAY]
    assert patch.current_streak == 2
    assert patch.longest_streak is None
    assert patch.apply_to(record).longest_streak == 3


@pytest.mark.parametrize(
    "raw,expected",
    [
        (None, []),
        ("", []),
        ([3, 1, 2, 2], [1, 2, 3]),
        (["19795", 19794.0, "bad", None, -4, 0], [19794, 19795]),
        ("19795, 19793,19794", [19793, 19794, 19795]),
        ({"not": "a list"}, []),
        ([True, 7], [7]),
    ],
)
def test_parse_streak_history(raw, expected):
    assert ledger.parse_streak_history(raw) == expected


@pytest.mark.parametrize("order", [1, -1])
def test_replay_adds_every_day_in_any_order(order):
    record = StreakRecord(days=[MONDAY], current_streak=0, longest_streak=1)
    ops = [StreakOp("add", TUESDAY, WEDNESDAY), StreakOp("add", WEDNESDAY, WEDNESDAY)][::order]

    patch = ledger.replay(record, ops)

    assert patch == StreakPatch(streak_history=[MONDAY, TUESDAY, WEDNESDAY], current_streak=3, longest_streak=3)


def test_replay_without_ops_is_empty():
    record = StreakRecord(days=[MONDAY, TUESDAY], current_streak=2, longest_streak=2)
    assert ledger.replay(record, []).is_empty()


def test_replay_rejects_unknown_operation():
    with pytest.raises(ValueError):
        ledger.replay(StreakRecord(), [StreakOp("reset", MONDAY, MONDAY)])
