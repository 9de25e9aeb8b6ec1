from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional


@dataclass
class StreakRecord:
    """
    Day-streak state for one user. ``days`` are DayIndex integers, unique and ascending.
    """

    days: List[int] = field(default_factory=list)
    current_streak: int = 0
    longest_streak: int = 0


@dataclass
class StreakPatch:
    """Fields of a StreakRecord that changed; ``None`` means untouched."""

    streak_history: Optional[List[int]] = None
    current_streak: Optional[int] = None
    longest_streak: Optional[int] = None

    def is_empty(self) -> bool:
        return (
            self.streak_history is None
            and self.current_streak is None
            and self.longest_streak is None
        )

    def to_document_fields(self) -> Dict[str, object]:
        fields: Dict[str, object] = {}
        if self.streak_history is not None:
            fields["streakHistory"] = list(self.streak_history)
        if self.current_streak is not None:
            fields["currentStreak"] = self.current_streak
        if self.longest_streak is not None:
            fields["longestStreak"] = self.longest_streak
        return fields

    def apply_to(self, record: StreakRecord) -> StreakRecord:
        return StreakRecord(
            days=list(self.streak_history) if self.streak_history is not None else list(record.days),
            current_streak=self.current_streak if self.current_streak is not None else record.current_streak,
            longest_streak=max(
                record.longest_streak,
                self.longest_streak if self.longest_streak is not None else 0,
            ),
        )


StreakOpKind = Literal["add", "remove"]


@dataclass(frozen=True)
class StreakOp:
    """A streak change recorded as the operation, replayed against the document at write time."""

    kind: StreakOpKind
    day: int
    today: int
