"""
Attendance writes against the mirror document.

Only numeric attendance fields are touched: amplix counters, course totals of
courses already on the document, and streak fields. Documents are never
created, deleted or restructured here.
"""
from __future__ import annotations

from typing import Any, Dict, List

from attendrix.features.mirror.store import MirrorStore
from attendrix.features.streaks.ledger import parse_streak_history, replay
from attendrix.models.attendance import CourseAttendanceSummary, PendingWrite
from attendrix.models.streak import StreakRecord


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def merge_courses(
    courses: List[Dict[str, Any]],
    summary: List[CourseAttendanceSummary],
) -> tuple[List[Dict[str, Any]], bool]:
    """Overlay canonical totals onto enrolled courses, matched by courseID."""
    by_course = {item.course_id: item for item in summary}
    merged: List[Dict[str, Any]] = []
    changed = False
    for course in courses:
        entry = by_course.get(course.get("courseID")) if isinstance(course, dict) else None
        if entry is None:
            merged.append(course)
            continue
        if (
            _as_int(course.get("attendedClasses")) != entry.attended_classes
            or _as_int(course.get("totalClasses")) != entry.total_classes
        ):
            changed = True
        merged.append({
            **course,
            "attendedClasses": entry.attended_classes,
            "totalClasses": entry.total_classes,
        })
    return merged, changed


def compute_document_updates(data: Dict[str, Any], write: PendingWrite) -> Dict[str, Any]:
    """Field updates to apply to the freshly read document ``data``.

    Returns an empty dict when nothing would change.
    """
    updates: Dict[str, Any] = {}

    courses = data.get("coursesEnrolled")
    if isinstance(courses, list) and write.summary:
        merged, changed = merge_courses(courses, write.summary)
        if changed:
            updates["coursesEnrolled"] = merged

    if write.amplix_delta:
        updates["amplix"] = _as_int(data.get("amplix")) + write.amplix_delta
        updates["currentWeekAmplixGained"] = _as_int(data.get("currentWeekAmplixGained")) + write.amplix_delta

    if write.streak_ops:
        record = StreakRecord(
            days=parse_streak_history(data.get("streakHistory")),
            current_streak=_as_int(data.get("currentStreak")),
            longest_streak=_as_int(data.get("longestStreak")),
        )
        patch = replay(record, write.streak_ops)
        if patch.streak_history is not None:
            updates["streakHistory"] = [int(day) for day in patch.streak_history]
        if patch.current_streak is not None:
            updates["currentStreak"] = patch.current_streak
        # replay never lowers longestStreak below the stored value
        if patch.longest_streak is not None:
            updates["longestStreak"] = patch.longest_streak

    return updates


async def apply_attendance_write(store: MirrorStore, write: PendingWrite) -> Dict[str, Any]:
    """Apply one merged write in a single optimistic transaction."""
    return await store.transact(write.user_id, lambda data: compute_document_updates(data, write))
