from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional

from attendrix.models.streak import StreakOp, StreakPatch

AttendanceAction = Literal["check_in", "mark_absent", "bulk_check_in"]
ActionOutcome = Literal["success", "warning", "failure", "rejected"]


@dataclass
class CourseAttendanceSummary:
    """Canonical per-course totals from the authoritative store."""

    course_id: str
    attended_classes: int = 0
    total_classes: int = 0
    percentage: Optional[float] = None


@dataclass
class CheckInResult:
    status: str
    message: str = ""
    amplix_gained: int = 0
    amplix_lost: int = 0
    attended_classes: Optional[int] = None
    total_classes: Optional[int] = None
    full_day_completed: bool = False


@dataclass
class MarkAbsentResult:
    status: str
    message: str = ""
    amplix_gained: int = 0
    amplix_lost: int = 0
    attended_classes_after: Optional[int] = None


@dataclass
class BulkCheckInResult:
    """Per-class outcome of one bulk check-in call; ``errors`` maps class ID to reason."""

    status: str
    message: str = ""
    checked_in: List[str] = field(default_factory=list)
    already_recorded: List[str] = field(default_factory=list)
    failed_count: int = 0
    errors: Dict[str, str] = field(default_factory=dict)
    total_amplix_gained: int = 0


@dataclass
class PendingWrite:
    """One buffered mirror update, coalesced per user.

    Streak changes travel as ordered operations so they are applied to the
    document as read inside the write transaction.
    """

    user_id: str
    summary: List[CourseAttendanceSummary] = field(default_factory=list)
    amplix_delta: int = 0
    streak_ops: List[StreakOp] = field(default_factory=list)
    urgent: bool = False


@dataclass
class ActionResult:
    """Typed outcome of an attendance action, safe to render to a client."""

    action: AttendanceAction
    class_id: str
    outcome: ActionOutcome
    message: str
    warnings: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    error_code: Optional[str] = None
    source_committed: bool = False
    amplix_delta: int = 0
    streak_update: Optional[StreakPatch] = None
    claimable_challenges: int = 0

    @property
    def ok(self) -> bool:
        return self.outcome in ("success", "warning")


@dataclass
class BulkActionResult:
    """Outcome of a bulk check-in across several classes."""

    class_ids: List[str]
    outcome: ActionOutcome
    message: str
    checked_in: List[str] = field(default_factory=list)
    already_recorded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    error_code: Optional[str] = None
    source_committed: bool = False
    amplix_delta: int = 0

    @property
    def ok(self) -> bool:
        return self.outcome in ("success", "warning")
