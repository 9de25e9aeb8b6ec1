"""
Strict-consecutive day-streak ledger.

Pure functions over an ascending list of unique DayIndex integers (days since
1970-01-01 in the canonical zone). No I/O, no clock reads: callers pass ``today``.
"""
from __future__ import annotations

import math
from bisect import bisect_left
from datetime import date, datetime, timedelta
from typing import Iterable, List, Sequence

from attendrix.core.timezone import ZoneLike, get_zone, zone_label
from attendrix.models.streak import StreakOp, StreakPatch, StreakRecord

EPOCH = date(1970, 1, 1)


def to_day_index(instant: datetime, zone: ZoneLike = None) -> int:
    """Civil day of ``instant`` in the canonical zone, as days since the epoch.

    Naive datetimes are taken as wall time in that zone.
    """
    tz = get_zone(zone)
    local = instant.replace(tzinfo=tz) if instant.tzinfo is None else instant.astimezone(tz)
    return (local.date() - EPOCH).days


def day_index_to_date(day: int) -> date:
    return EPOCH + timedelta(days=day)


def format_day_index(day: int, zone: ZoneLike = None) -> str:
    return f"{day_index_to_date(day).isoformat()} {zone_label(zone)}"


def _coerce_day(item) -> int:
    if isinstance(item, bool):
        return 0
    if isinstance(item, int):
        return item
    if isinstance(item, float):
        return int(item) if math.isfinite(item) else 0
    try:
        return int(str(item).strip())
    except ValueError:
        return 0


def parse_streak_history(raw) -> List[int]:
    """Normalize a stored history field into a sorted, duplicate-free day list.

    Accepts lists of ints, floats or numeric strings, or a comma-separated
    string. Unparseable and non-positive entries are dropped.
    """
    if not raw:
        return []
    if isinstance(raw, str):
        items: Iterable = raw.split(",")
    elif isinstance(raw, (list, tuple)):
        items = (item for item in raw if item is not None)
    else:
        return []
    return sorted({day for day in (_coerce_day(item) for item in items) if day > 0})


def contains(sorted_days: Sequence[int], day: int) -> bool:
    index = bisect_left(sorted_days, day)
    return index < len(sorted_days) and sorted_days[index] == day


def insertion_index(sorted_days: Sequence[int], day: int) -> int:
    return bisect_left(sorted_days, day)


def streak_ending_at(sorted_days: Sequence[int], end_day: int) -> int:
    """Length of the consecutive run that ends exactly at ``end_day``."""
    streak = 0
    check = end_day
    while check >= 0 and contains(sorted_days, check):
        streak += 1
        check -= 1
    return streak


def current_streak(sorted_days: Sequence[int], today: int) -> int:
    """Run ending today, or yesterday if today has not been earned yet; else 0."""
    if not sorted_days:
        return 0
    if contains(sorted_days, today):
        return streak_ending_at(sorted_days, today)
    return streak_ending_at(sorted_days, today - 1)


def longest_streak(sorted_days: Sequence[int]) -> int:
    if not sorted_days:
        return 0
    best = run = 1
    for previous, day in zip(sorted_days, sorted_days[1:]):
        if day == previous + 1:
            run += 1
            best = max(best, run)
        else:
            run = 1
    return best


def apply_addition(record: StreakRecord, day: int, today: int) -> StreakPatch:
    """Patch produced by earning ``day``.

    Future days are ignored. A day already present only matters when it is in
    the past and the run ending there beats the stored longest streak.
    """
    if day > today:
        return StreakPatch()

    if contains(record.days, day):
        if day < today:
            historical = streak_ending_at(record.days, day)
            if historical > record.longest_streak:
                return StreakPatch(longest_streak=historical)
        return StreakPatch()

    days = list(record.days)
    days.insert(insertion_index(days, day), day)

    patch = StreakPatch(streak_history=days)
    new_current = current_streak(days, today)
    if new_current != record.current_streak:
        patch.current_streak = new_current
    new_longest = longest_streak(days)
    if new_longest > record.longest_streak:
        patch.longest_streak = new_longest
    return patch


def apply_removal(record: StreakRecord, day: int, today: int) -> StreakPatch:
    """Patch produced by revoking ``day``. ``longest_streak`` is never lowered."""
    if not contains(record.days, day):
        return StreakPatch()

    days = [d for d in record.days if d != day]
    if not days:
        return StreakPatch(streak_history=[], current_streak=0)

    patch = StreakPatch(streak_history=days, current_streak=current_streak(days, today))
    new_longest = longest_streak(days)
    if new_longest > record.longest_streak:
        patch.longest_streak = new_longest
    return patch


def apply_operation(record: StreakRecord, op: StreakOp) -> StreakPatch:
    if op.kind == "add":
        return apply_addition(record, op.day, op.today)
    if op.kind == "remove":
        return apply_removal(record, op.day, op.today)
    raise ValueError(f"Unknown streak operation {op.kind!r}")


def replay(record: StreakRecord, ops: Iterable[StreakOp]) -> StreakPatch:
    """Net patch from applying ``ops`` in order on top of ``record``."""
    result = record
    for op in ops:
        result = apply_operation(result, op).apply_to(result)

    patch = StreakPatch()
    if result.days != record.days:
        patch.streak_history = list(result.days)
    if result.current_streak != record.current_streak:
        patch.current_streak = result.current_streak
    if result.longest_streak > record.longest_streak:
        patch.longest_streak = result.longest_streak
    return patch
