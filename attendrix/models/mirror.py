from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from attendrix.features.streaks.ledger import parse_streak_history
from attendrix.models.streak import StreakRecord


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


@dataclass
class MirrorDocument:
    """Read view of the per-user mirror document (only the fields this service touches)."""

    user_id: str
    amplix: int = 0
    current_week_amplix_gained: int = 0
    courses_enrolled: List[Dict[str, Any]] = field(default_factory=list)
    current_streak: int = 0
    longest_streak: int = 0
    streak_history: List[int] = field(default_factory=list)
    challenges_allotted: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, user_id: str, data: Dict[str, Any]) -> "MirrorDocument":
        courses = data.get("coursesEnrolled")
        challenges = data.get("challengesAllotted")
        return cls(
            user_id=user_id,
            amplix=_as_int(data.get("amplix")),
            current_week_amplix_gained=_as_int(data.get("currentWeekAmplixGained")),
            courses_enrolled=[c for c in courses if isinstance(c, dict)] if isinstance(courses, list) else [],
            current_streak=_as_int(data.get("currentStreak")),
            longest_streak=_as_int(data.get("longestStreak")),
            streak_history=parse_streak_history(data.get("streakHistory")),
            challenges_allotted=[c for c in challenges if isinstance(c, dict)] if isinstance(challenges, list) else [],
        )

    def streak_record(self) -> StreakRecord:
        return StreakRecord(
            days=list(self.streak_history),
            current_streak=self.current_streak,
            longest_streak=self.longest_streak,
        )

    def progress_ids(self) -> List[str]:
        ids = []
        for challenge in self.challenges_allotted:
            progress_id = challenge.get("progressID")
            if isinstance(progress_id, str) and progress_id:
                ids.append(progress_id)
        return ids

    def enrolled_course_ids(self) -> List[str]:
        ids = []
        for course in self.courses_enrolled:
            course_id = course.get("courseID")
            if isinstance(course_id, str) and course_id and course_id not in ids:
                ids.append(course_id)
        return ids
