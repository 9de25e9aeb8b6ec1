import asyncio
from typing import Dict, List, Optional, Sequence

from attendrix.features.mirror.store import InMemoryMirrorStore
from attendrix.models.attendance import BulkCheckInResult, CheckInResult, CourseAttendanceSummary, MarkAbsentResult
from attendrix.models.challenge import ChallengeEvaluation

# 2024-03-11 .. 2024-03-13 as DayIndex values
MONDAY = 19793
TUESDAY = 19794
WEDNESDAY = 19795


class FakeAuthoritativeStore:
    """Scriptable stand-in for the remote procedure client."""

    def __init__(self):
        self.check_in_result = CheckInResult(status="success", message="Checked in", amplix_gained=10)
        self.mark_absent_result = MarkAbsentResult(status="success", message="Marked absent", amplix_lost=10)
        self.bulk_result = BulkCheckInResult(status="success", total_amplix_gained=0)
        self.summary: List[CourseAttendanceSummary] = [
            CourseAttendanceSummary(course_id="CS101", attended_classes=5, total_classes=6),
        ]
        self.evaluation = ChallengeEvaluation(status="success")
        self.fail_mutation: Optional[Exception] = None
        self.fail_summary: Optional[Exception] = None
        self.fail_evaluation: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.calls: List[tuple] = []

    async def _maybe_wait(self):
        if self.gate is not None:
            await self.gate.wait()

    async def check_in(self, user_id: str, class_id: str, class_start_time: str, enrolled_course_ids: Sequence[str]):
        self.calls.append(("check_in", user_id, class_id, list(enrolled_course_ids)))
        await self._maybe_wait()
        if self.fail_mutation is not None:
            raise self.fail_mutation
        return self.check_in_result

    async def mark_absent(self, user_id: str, class_id: str, enrolled_course_ids: Sequence[str]):
        self.calls.append(("mark_absent", user_id, class_id, list(enrolled_course_ids)))
        await self._maybe_wait()
        if self.fail_mutation is not None:
            raise self.fail_mutation
        return self.mark_absent_result

    async def bulk_check_in(self, user_id: str, class_ids: Sequence[str]):
        self.calls.append(("bulk_check_in", user_id, list(class_ids)))
        await self._maybe_wait()
        if self.fail_mutation is not None:
            raise self.fail_mutation
        return self.bulk_result

    async def get_course_attendance_summary(self, user_id: str):
        self.calls.append(("summary", user_id))
        if self.fail_summary is not None:
            raise self.fail_summary
        return list(self.summary)

    async def evaluate_challenges(self, user_id: str, progress_ids, current_streak, course_ids):
        self.calls.append(("evaluate", user_id, list(progress_ids), current_streak, list(course_ids)))
        if self.fail_evaluation is not None:
            raise self.fail_evaluation
        return self.evaluation

    def procedures(self) -> List[str]:
        return [call[0] for call in self.calls]


class FailingMirrorStore(InMemoryMirrorStore):
    """In-memory store whose transactions fail a set number of times."""

    def __init__(self, failures: int = 1):
        super().__init__()
        self.failures = failures

    async def transact(self, user_id, compute):
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("mirror unavailable")
        return await super().transact(user_id, compute)


class UnreadableMirrorStore(InMemoryMirrorStore):
    """Reads fail after ``reads_ok`` successful reads."""

    def __init__(self, reads_ok: int = 0):
        super().__init__()
        self.reads_ok = reads_ok

    async def get_document(self, user_id):
        if self.reads_ok <= 0:
            raise RuntimeError("mirror read timed out")
        self.reads_ok -= 1
        return await super().get_document(user_id)


def mirror_document(**overrides) -> Dict:
    document = {
        "amplix": 100,
        "currentWeekAmplixGained": 20,
        "coursesEnrolled": [
            {"courseID": "CS101", "courseName": "Algorithms", "attendedClasses": 4, "totalClasses": 5},
            {"courseID": "MA201", "courseName": "Linear Algebra", "attendedClasses": 2, "totalClasses": 2},
        ],
        "currentStreak": 0,
        "longestStreak": 0,
        "streakHistory": [],
        "challengesAllotted": [],
    }
    document.update(overrides)
    return document
