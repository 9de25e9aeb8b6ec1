"""
Attendance synchronization orchestrator.

Drives one check-in or mark-absent end to end:

    Idle -> Mutating -> Reading (summary + mirror, in parallel)
         -> EvaluatingSideEffects -> ComputingDelta -> Buffering -> Flushing -> Settled

The authoritative mutation must succeed before anything touches the mirror.
Challenge evaluation is the only step allowed to fail without failing the
action. At most one action per class ID runs at a time; a second call for an
in-flight class is rejected, never queued.

A bulk check-in runs the same mutate, read, buffer and flush steps for a set
of classes in one call. It carries no streak change and no challenge
evaluation, and classes the source could not check in become warnings.
"""
from __future__ import annotations

import asyncio
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set, Union

from attendrix.core.errors import (
    AppError,
    BufferFlushFailure,
    MirrorDocumentNotFound,
    MirrorReadFailure,
    SourceMutationFailure,
    SummaryReadFailure,
)
from attendrix.core.logging import bind_action_context, log_event
from attendrix.core.metrics import attendance_actions_total
from attendrix.core.timezone import ZoneLike, now_in_zone, parse_timestamp
from attendrix.features.amplix.delta import compute_delta, delta_for_action
from attendrix.features.streaks import ledger
from attendrix.features.sync.rpc_client import AuthoritativeStore
from attendrix.features.sync.write_buffer import WriteBuffer
from attendrix.models.attendance import (
    ActionResult,
    AttendanceAction,
    BulkActionResult,
    CheckInResult,
    CourseAttendanceSummary,
    MarkAbsentResult,
    PendingWrite,
)
from attendrix.models.challenge import ChallengeEvaluation
from attendrix.models.mirror import MirrorDocument
from attendrix.models.streak import StreakOp

Mutation = Union[CheckInResult, MarkAbsentResult]
StreakStep = Callable[[Mutation, int], Optional[StreakOp]]


class SyncState(str, Enum):
    IDLE = "idle"
    MUTATING = "mutating"
    READING = "reading"
    EVALUATING = "evaluating"
    COMPUTING_DELTA = "computing_delta"
    BUFFERING = "buffering"
    FLUSHING = "flushing"
    SETTLED = "settled"


ACTION_IN_PROGRESS = "Action in progress"
DEFERRED_MESSAGE = "Attendance recorded, but points and totals could not be refreshed yet"


class AttendanceSyncOrchestrator:
    def __init__(
        self,
        source: AuthoritativeStore,
        buffer: WriteBuffer,
        *,
        zone: ZoneLike = None,
        today: Optional[Callable[[], int]] = None,
    ):
        self._source = source
        self._buffer = buffer
        self._store = buffer.store
        self._zone = zone
        self._today = today or (lambda: ledger.to_day_index(now_in_zone(zone), zone))
        self._in_flight: Dict[str, SyncState] = {}
        self._resync_required: Set[str] = set()

    # Introspection -------------------------------------------------------
    def is_in_flight(self, class_id: str) -> bool:
        return class_id in self._in_flight

    def state_of(self, class_id: str) -> SyncState:
        return self._in_flight.get(class_id, SyncState.IDLE)

    @property
    def resync_required(self) -> Set[str]:
        return set(self._resync_required)

    # Actions -------------------------------------------------------------
    async def check_in(
        self,
        user_id: str,
        class_id: str,
        class_start_time: str,
        enrolled_course_ids: Optional[Sequence[str]] = None,
    ) -> ActionResult:
        try:
            # The streak is keyed by the class's scheduled day, not the time of the action.
            day = self._day_of(class_start_time)
        except ValueError as exc:
            return self._invalid("check_in", class_id, str(exc))

        async def mutate(courses: List[str]) -> Mutation:
            return await self._source.check_in(user_id, class_id, class_start_time, courses)

        def streak_step(mutation: Mutation, today: int) -> Optional[StreakOp]:
            return StreakOp("add", day, today) if mutation.full_day_completed else None

        return await self._guarded("check_in", user_id, class_id, enrolled_course_ids, mutate, streak_step)

    async def mark_absent(
        self,
        user_id: str,
        class_id: str,
        enrolled_course_ids: Optional[Sequence[str]] = None,
        class_start_time: Optional[str] = None,
    ) -> ActionResult:
        """Mark a class absent.

        Marking absent never earns a streak day. When the class's start time is
        known and its day is in the streak history, that day is no longer a
        completed full day and is revoked.
        """
        day: Optional[int] = None
        if class_start_time:
            try:
                day = self._day_of(class_start_time)
            except ValueError as exc:
                return self._invalid("mark_absent", class_id, str(exc))

        async def mutate(courses: List[str]) -> Mutation:
            return await self._source.mark_absent(user_id, class_id, courses)

        def streak_step(mutation: Mutation, today: int) -> Optional[StreakOp]:
            return StreakOp("remove", day, today) if day is not None else None

        return await self._guarded("mark_absent", user_id, class_id, enrolled_course_ids, mutate, streak_step)

    async def bulk_check_in(self, user_id: str, class_ids: Sequence[str]) -> BulkActionResult:
        """Check in several classes with one authoritative call.

        Every class ID is guarded; if any of them already has an action in
        flight the whole batch is rejected before anything is sent. Points
        come from the call's ``total_amplix_gained``.
        """
        targets = list(dict.fromkeys(c for c in class_ids if c))
        if not targets:
            result = BulkActionResult(
                class_ids=[], outcome="failure", message="No classes selected", error_code="validation_error",
            )
        elif any(class_id in self._in_flight for class_id in targets):
            result = BulkActionResult(
                class_ids=targets, outcome="rejected", message=ACTION_IN_PROGRESS, error_code="action_in_progress",
            )
        else:
            for class_id in targets:
                self._enter(class_id, SyncState.IDLE)
            try:
                with bind_action_context(user_id):
                    result = await self._run_bulk(user_id, targets)
            finally:
                for class_id in targets:
                    self._in_flight.pop(class_id, None)
        attendance_actions_total.inc(labels={"action": "bulk_check_in", "outcome": result.outcome})
        return result

    async def resync(self, user_id: str) -> Dict[str, object]:
        """Refresh course totals on the mirror from the authoritative summary.

        Used after an action whose mirror refresh was deferred. No new points
        or streak changes are computed; points parked by the deferred action
        land with this flush. Errors propagate to the caller.
        """
        summary, _ = await self._read_summary_and_mirror(user_id)
        await self._buffer.enqueue(PendingWrite(user_id=user_id, summary=summary, urgent=True))
        updates = await self._buffer.flush_now(user_id, trigger="resync")
        self._resync_required.discard(user_id)
        log_event("info", "attendance.resync.applied", user_id=user_id, extra={"courses": len(summary)})
        return updates

    # Pipeline ------------------------------------------------------------
    def _day_of(self, class_start_time: str) -> int:
        return ledger.to_day_index(parse_timestamp(class_start_time, self._zone), self._zone)

    def _invalid(self, action: AttendanceAction, class_id: str, reason: str) -> ActionResult:
        attendance_actions_total.inc(labels={"action": action, "outcome": "failure"})
        return ActionResult(
            action=action,
            class_id=class_id,
            outcome="failure",
            message=f"Invalid class start time: {reason}",
            error_code="validation_error",
        )

    def _enter(self, class_id: str, state: SyncState) -> None:
        self._in_flight[class_id] = state

    async def _guarded(self, action: AttendanceAction, user_id: str, class_id: str, courses, mutate, streak_for) -> ActionResult:
        if class_id in self._in_flight:
            result = ActionResult(
                action=action,
                class_id=class_id,
                outcome="rejected",
                message=ACTION_IN_PROGRESS,
                error_code="action_in_progress",
            )
        else:
            self._enter(class_id, SyncState.IDLE)
            try:
                with bind_action_context(user_id, class_id):
                    result = await self._run(action, user_id, class_id, courses, mutate, streak_for)
            finally:
                self._in_flight.pop(class_id, None)
        attendance_actions_total.inc(labels={"action": action, "outcome": result.outcome})
        return result

    async def _resolve_courses(self, user_id: str, courses: Optional[Sequence[str]]) -> List[str]:
        resolved = list(dict.fromkeys(c for c in (courses or []) if c))
        if resolved:
            return resolved
        raw = await self._store.get_document(user_id)
        if raw is None:
            return []
        return MirrorDocument.from_dict(user_id, raw).enrolled_course_ids()

    async def _read_summary_and_mirror(self, user_id: str):
        summary, raw = await asyncio.gather(
            self._source.get_course_attendance_summary(user_id),
            self._store.get_document(user_id),
            return_exceptions=True,
        )
        if isinstance(summary, BaseException):
            if isinstance(summary, AppError):
                raise summary
            raise SummaryReadFailure(f"Attendance summary unavailable: {summary}") from summary
        if isinstance(raw, BaseException):
            if isinstance(raw, AppError):
                raise raw
            raise MirrorReadFailure(f"Mirror document unavailable: {raw}") from raw
        if raw is None:
            raise MirrorDocumentNotFound(f"Mirror document for {user_id} not found")
        return summary, MirrorDocument.from_dict(user_id, raw)

    async def _defer_refresh(
        self, action: AttendanceAction, user_id: str, class_id: Optional[str], exc: AppError, pending_delta: int
    ) -> None:
        """Record that the mirror needs a resync after a committed mutation.

        The mutation's own points are known and are parked in the buffer so
        they land with the next flush, unless the user has no mirror document
        at all, in which case there is nothing to write them to.
        """
        self._resync_required.add(user_id)
        parked = 0
        if pending_delta and not isinstance(exc, MirrorDocumentNotFound):
            await self._buffer.enqueue(PendingWrite(user_id=user_id, amplix_delta=pending_delta))
            parked = pending_delta
        log_event("warning", "attendance.mirror_refresh.deferred", user_id=user_id, class_id=class_id,
                  event_type=action, error_code=exc.code,
                  extra={"reason": exc.message, "amplix_delta": pending_delta, "parked": parked})

    async def _evaluate(
        self, user_id: str, document: MirrorDocument, summary: List[CourseAttendanceSummary], streak: int
    ) -> ChallengeEvaluation:
        course_ids = list(dict.fromkeys(item.course_id for item in summary))
        return await self._source.evaluate_challenges(user_id, document.progress_ids(), streak, course_ids)

    async def _run(
        self,
        action: AttendanceAction,
        user_id: str,
        class_id: str,
        courses: Optional[Sequence[str]],
        mutate: Callable[[List[str]], Awaitable[Mutation]],
        streak_for: StreakStep,
    ) -> ActionResult:
        def failed(message: str, code: str, *, committed: bool) -> ActionResult:
            return ActionResult(
                action=action, class_id=class_id, outcome="failure", message=message,
                error_code=code, source_committed=committed,
            )

        try:
            enrolled = await self._resolve_courses(user_id, courses)
        except Exception as exc:
            log_event("warning", "attendance.courses.unavailable", user_id=user_id, class_id=class_id,
                      error_code=MirrorReadFailure.code, extra={"reason": repr(exc)})
            return failed("Could not load enrolled courses", MirrorReadFailure.code, committed=False)
        if not enrolled:
            return failed("No enrolled courses found", "validation_error", committed=False)

        # 1. Mutate the source of truth. Any failure here leaves the mirror untouched.
        self._enter(class_id, SyncState.MUTATING)
        try:
            mutation = await mutate(enrolled)
        except Exception as exc:
            error = exc if isinstance(exc, AppError) else SourceMutationFailure(f"{action} failed: {exc!r}")
            log_event("warning", "attendance.mutation.failed", user_id=user_id, class_id=class_id,
                      event_type=action, error_code=error.code, extra={"reason": error.message})
            return failed(error.message, SourceMutationFailure.code, committed=False)
        if mutation.status != "success":
            log_event("warning", "attendance.mutation.rejected", user_id=user_id, class_id=class_id,
                      event_type=action, error_code=SourceMutationFailure.code, extra={"status": mutation.status})
            return failed(mutation.message or f"{action} was rejected", SourceMutationFailure.code, committed=False)

        # 2. Fresh canonical summary and current mirror document, in parallel.
        self._enter(class_id, SyncState.READING)
        try:
            summary, document = await self._read_summary_and_mirror(user_id)
        except AppError as exc:
            await self._defer_refresh(action, user_id, class_id, exc, delta_for_action(mutation))
            return failed(DEFERRED_MESSAGE, "mirror_refresh_deferred", committed=True)

        # 3. Streak operation, only where the action affects the streak. The patch
        # previewed here is recomputed from a fresh read inside the mirror write.
        today = self._today()
        streak_op = streak_for(mutation, today)
        patch = ledger.replay(document.streak_record(), [streak_op]) if streak_op else None
        if patch is not None and patch.is_empty():
            patch = None
        streak_now = patch.current_streak if patch and patch.current_streak is not None else document.current_streak

        # 4. Challenge evaluation; failure only produces a warning.
        warnings: List[str] = []
        notes: List[str] = []
        evaluation: Optional[ChallengeEvaluation] = None
        if document.progress_ids() and summary:
            self._enter(class_id, SyncState.EVALUATING)
            try:
                evaluation = await self._evaluate(user_id, document, summary, streak_now)
            except Exception as exc:
                message = exc.message if isinstance(exc, AppError) else "Challenge evaluation failed"
                warnings.append(message)
                log_event("warning", "attendance.challenges.failed", user_id=user_id, class_id=class_id,
                          event_type=action, error_code="challenge_evaluation_failed", extra={"reason": repr(exc)})
            else:
                if evaluation.claimable_challenges_count > 0:
                    notes.append("Challenge progress updated!")

        # 5. One signed delta for the whole action.
        self._enter(class_id, SyncState.COMPUTING_DELTA)
        delta = delta_for_action(mutation, evaluation)

        # 6. Buffer and force the flush; interactive actions never wait out the debounce.
        self._enter(class_id, SyncState.BUFFERING)
        await self._buffer.enqueue(
            PendingWrite(
                user_id=user_id,
                summary=summary,
                amplix_delta=delta,
                streak_ops=[streak_op] if streak_op else [],
                urgent=True,
            )
        )
        self._enter(class_id, SyncState.FLUSHING)
        try:
            await self._buffer.flush_now(user_id)
        except BufferFlushFailure as exc:
            return failed(exc.message, exc.code, committed=True)

        # 7. Settle.
        self._enter(class_id, SyncState.SETTLED)
        self._resync_required.discard(user_id)
        default_message = "Checked in successfully" if action == "check_in" else "Marked absent"
        return ActionResult(
            action=action,
            class_id=class_id,
            outcome="warning" if warnings else "success",
            message=mutation.message or default_message,
            warnings=warnings,
            notes=notes,
            source_committed=True,
            amplix_delta=delta,
            streak_update=patch,
            claimable_challenges=evaluation.claimable_challenges_count if evaluation else 0,
        )

    async def _run_bulk(self, user_id: str, class_ids: List[str]) -> BulkActionResult:
        def failed(message: str, code: str, *, committed: bool) -> BulkActionResult:
            return BulkActionResult(
                class_ids=class_ids, outcome="failure", message=message,
                error_code=code, source_committed=committed,
            )

        def enter(state: SyncState) -> None:
            for class_id in class_ids:
                self._enter(class_id, state)

        enter(SyncState.MUTATING)
        try:
            mutation = await self._source.bulk_check_in(user_id, class_ids)
        except Exception as exc:
            error = exc if isinstance(exc, AppError) else SourceMutationFailure(f"bulk_check_in failed: {exc!r}")
            log_event("warning", "attendance.mutation.failed", user_id=user_id, event_type="bulk_check_in",
                      error_code=error.code, extra={"reason": error.message, "classes": len(class_ids)})
            return failed(error.message, SourceMutationFailure.code, committed=False)
        if mutation.status != "success":
            log_event("warning", "attendance.mutation.rejected", user_id=user_id, event_type="bulk_check_in",
                      error_code=SourceMutationFailure.code, extra={"status": mutation.status})
            return failed(mutation.message or "Bulk check-in failed", SourceMutationFailure.code, committed=False)

        warnings = [f"{class_id}: {reason}" for class_id, reason in mutation.errors.items()]
        unexplained = mutation.failed_count - len(mutation.errors)
        if unexplained > 0:
            warnings.append(f"Failed to update {unexplained} {'class' if unexplained == 1 else 'classes'}")
        delta = compute_delta(gained=mutation.total_amplix_gained)

        enter(SyncState.READING)
        try:
            summary, _ = await self._read_summary_and_mirror(user_id)
        except AppError as exc:
            await self._defer_refresh("bulk_check_in", user_id, None, exc, delta)
            return failed(DEFERRED_MESSAGE, "mirror_refresh_deferred", committed=True)

        enter(SyncState.BUFFERING)
        await self._buffer.enqueue(PendingWrite(user_id=user_id, summary=summary, amplix_delta=delta, urgent=True))
        enter(SyncState.FLUSHING)
        try:
            await self._buffer.flush_now(user_id)
        except BufferFlushFailure as exc:
            return failed(exc.message, exc.code, committed=True)

        enter(SyncState.SETTLED)
        self._resync_required.discard(user_id)
        updated = len(mutation.checked_in) + len(mutation.already_recorded)
        return BulkActionResult(
            class_ids=class_ids,
            outcome="warning" if warnings else "success",
            message=mutation.message or f"Marked {updated} classes present",
            checked_in=list(mutation.checked_in),
            already_recorded=list(mutation.already_recorded),
            failed=dict(mutation.errors),
            warnings=warnings,
            source_committed=True,
            amplix_delta=delta,
        )
