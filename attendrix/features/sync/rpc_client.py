"""
Client for the authoritative store's remote procedures.

Procedures are called as ``POST {base_url}/rpc/<name>`` with ``p_``-prefixed
JSON parameters. Responses are loosely typed: they may be wrapped in an
``{"ok": true, "data": ...}`` envelope, returned as a one-row list, and use
snake_case, camelCase or lowercase keys. Everything is normalized here into
the typed results in ``attendrix.models`` so nothing downstream branches on
field casing. A ``status`` of ``"error"`` is a failure even on HTTP 200.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence, Type

import httpx

from attendrix.core.config import settings
from attendrix.core.errors import (
    SideEffectFailure,
    SourceMutationFailure,
    SummaryReadFailure,
    UpstreamError,
)
from attendrix.models.attendance import BulkCheckInResult, CheckInResult, CourseAttendanceSummary, MarkAbsentResult
from attendrix.models.challenge import ChallengeEvaluation

logger = logging.getLogger("attendrix")


class AuthoritativeStore(Protocol):
    async def check_in(
        self, user_id: str, class_id: str, class_start_time: str, enrolled_course_ids: Sequence[str]
    ) -> CheckInResult: ...

    async def mark_absent(
        self, user_id: str, class_id: str, enrolled_course_ids: Sequence[str]
    ) -> MarkAbsentResult: ...

    async def bulk_check_in(self, user_id: str, class_ids: Sequence[str]) -> BulkCheckInResult: ...

    async def get_course_attendance_summary(self, user_id: str) -> List[CourseAttendanceSummary]: ...

    async def evaluate_challenges(
        self, user_id: str, progress_ids: Sequence[str], current_streak: Optional[int], course_ids: Sequence[str]
    ) -> ChallengeEvaluation: ...


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def pick(payload: Dict[str, Any], name: str, default: Any = None) -> Any:
    """Read ``name`` from ``payload`` under snake_case, camelCase or lowercase spelling."""
    for key in (name, _camel(name), name.replace("_", "").lower()):
        if key in payload and payload[key] is not None:
            return payload[key]
    lowered = {str(k).lower(): v for k, v in payload.items()}
    value = lowered.get(name.replace("_", "").lower())
    return default if value is None else value


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _optional_int(value: Any) -> Optional[int]:
    return None if value is None else _int(value)


def unwrap(body: Any) -> Any:
    """Strip the success envelope and single-row list wrapping."""
    if isinstance(body, dict) and "data" in body and ("ok" in body or "error" in body):
        body = body.get("data")
    if isinstance(body, list) and body and all(isinstance(item, dict) for item in body) and len(body) == 1:
        return body[0]
    return body


def _error_message(body: Any, fallback: str) -> str:
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
        if body.get("message"):
            return str(body["message"])
    return fallback


def normalize_check_in(payload: Dict[str, Any]) -> CheckInResult:
    return CheckInResult(
        status=str(pick(payload, "status", "")).lower(),
        message=str(pick(payload, "message", "")),
        amplix_gained=_int(pick(payload, "amplix_gained", 0)),
        amplix_lost=_int(pick(payload, "amplix_lost", 0)),
        attended_classes=_optional_int(pick(payload, "attended_classes")),
        total_classes=_optional_int(pick(payload, "total_classes")),
        full_day_completed=pick(payload, "full_day_completed", False) is True,
    )


def normalize_mark_absent(payload: Dict[str, Any]) -> MarkAbsentResult:
    return MarkAbsentResult(
        status=str(pick(payload, "status", "")).lower(),
        message=str(pick(payload, "message", "")),
        amplix_gained=_int(pick(payload, "amplix_gained", 0)),
        amplix_lost=_int(pick(payload, "amplix_lost", 0)),
        attended_classes_after=_optional_int(
            pick(payload, "attended_classes_after", pick(payload, "attended_classes"))
        ),
    )


def _class_ids(rows: Any) -> List[str]:
    """Class IDs from a list of ``{"class_id": ...}`` rows or bare IDs."""
    if not isinstance(rows, list):
        return []
    ids = []
    for row in rows:
        class_id = pick(row, "class_id") if isinstance(row, dict) else row
        if isinstance(class_id, (str, int)) and str(class_id) and str(class_id) not in ids:
            ids.append(str(class_id))
    return ids


def normalize_bulk_check_in(payload: Dict[str, Any]) -> BulkCheckInResult:
    errors: Dict[str, str] = {}
    rows = pick(payload, "error_results", [])
    for row in rows if isinstance(rows, list) else []:
        if not isinstance(row, dict) or not pick(row, "class_id"):
            continue
        errors[str(pick(row, "class_id"))] = str(pick(row, "error", pick(row, "message", "Unknown error")))
    return BulkCheckInResult(
        status=str(pick(payload, "status", "")).lower(),
        message=str(pick(payload, "message", "")),
        checked_in=_class_ids(pick(payload, "successful_results", [])),
        already_recorded=_class_ids(pick(payload, "already_recorded_results", [])),
        failed_count=max(_int(pick(payload, "failed_checkins", 0)), len(errors)),
        errors=errors,
        total_amplix_gained=_int(pick(payload, "total_amplix_gained", 0)),
    )


def normalize_summary(rows: Any) -> List[CourseAttendanceSummary]:
    if isinstance(rows, dict):
        rows = [rows]
    if not isinstance(rows, list):
        return []
    summary = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        course_id = pick(row, "course_id")
        if not course_id:
            continue
        percentage = pick(row, "percentage", pick(row, "attendance_percentage"))
        summary.append(
            CourseAttendanceSummary(
                course_id=str(course_id),
                attended_classes=_int(pick(row, "attended_classes", 0)),
                total_classes=_int(pick(row, "total_classes", 0)),
                percentage=None if percentage is None else float(percentage),
            )
        )
    return summary


def normalize_evaluation(payload: Any) -> ChallengeEvaluation:
    if not isinstance(payload, dict):
        return ChallengeEvaluation(status="skipped")
    return ChallengeEvaluation(
        status=str(pick(payload, "status", "")).lower(),
        message=str(pick(payload, "message", "")),
        points_to_deduct=_int(pick(payload, "points_to_deduct", 0)),
        claimable_challenges_count=_int(pick(payload, "claimable_challenges_count", 0)),
        processed_challenges=_optional_int(pick(payload, "processed_challenges")),
        total_challenges=_optional_int(pick(payload, "total_challenges")),
    )


class AuthoritativeStoreClient:
    """httpx-backed implementation of :class:`AuthoritativeStore`."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        attendance_goal: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        url = base_url or settings.AUTHORITATIVE_API_URL
        if not url:
            raise ValueError("AUTHORITATIVE_API_URL is not configured")
        key = api_key if api_key is not None else settings.AUTHORITATIVE_API_KEY
        headers = {"Content-Type": "application/json"}
        if key:
            headers["apikey"] = key
            headers["Authorization"] = f"Bearer {key}"
        self.attendance_goal = settings.ATTENDANCE_GOAL if attendance_goal is None else attendance_goal
        self._client = httpx.AsyncClient(
            base_url=url.rstrip("/"),
            headers=headers,
            timeout=timeout or settings.RPC_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _call(self, procedure: str, params: Dict[str, Any], error_cls: Type[UpstreamError]) -> Any:
        try:
            response = await self._client.post(f"/rpc/{procedure}", json=params)
        except httpx.HTTPError as exc:
            # Timeouts land here too and are treated like any other failure.
            logger.warning(
                "rpc.transport_error",
                extra={"procedure": procedure, "error_code": error_cls.code, "error_message": str(exc)},
            )
            raise error_cls(f"{procedure} failed: {exc.__class__.__name__}") from exc

        try:
            body = response.json() if response.content else None
        except ValueError:
            body = response.text

        if response.status_code >= 400:
            message = _error_message(body, f"{procedure} returned HTTP {response.status_code}")
            logger.warning(
                "rpc.http_error",
                extra={"procedure": procedure, "status": response.status_code, "error_code": error_cls.code},
            )
            raise error_cls(message)
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            raise error_cls(_error_message(body, f"{procedure} failed"))
        return unwrap(body)

    async def _call_single(self, procedure: str, params: Dict[str, Any], error_cls: Type[UpstreamError]) -> Dict[str, Any]:
        data = await self._call(procedure, params, error_cls)
        if not isinstance(data, dict):
            raise error_cls(f"{procedure} returned no data")
        if str(pick(data, "status", "")).lower() == "error":
            raise error_cls(str(pick(data, "message", "")) or f"{procedure} reported an error")
        return data

    async def check_in(
        self, user_id: str, class_id: str, class_start_time: str, enrolled_course_ids: Sequence[str]
    ) -> CheckInResult:
        data = await self._call_single(
            "class_check_in",
            {
                "p_user_id": user_id,
                "p_class_id": class_id,
                "p_class_start": class_start_time,
                "p_enrolled_courses": list(enrolled_course_ids),
            },
            SourceMutationFailure,
        )
        return normalize_check_in(data)

    async def mark_absent(
        self, user_id: str, class_id: str, enrolled_course_ids: Sequence[str]
    ) -> MarkAbsentResult:
        data = await self._call_single(
            "mark_class_absent",
            {
                "p_user_id": user_id,
                "p_class_id": class_id,
                "p_enrolled_courses": list(enrolled_course_ids),
            },
            SourceMutationFailure,
        )
        return normalize_mark_absent(data)

    async def bulk_check_in(self, user_id: str, class_ids: Sequence[str]) -> BulkCheckInResult:
        if not class_ids:
            raise ValueError("bulk_class_checkin requires class IDs")
        data = await self._call_single(
            "bulk_class_checkin",
            {"p_user_id": user_id, "p_class_ids": list(class_ids)},
            SourceMutationFailure,
        )
        return normalize_bulk_check_in(data)

    async def get_course_attendance_summary(self, user_id: str) -> List[CourseAttendanceSummary]:
        data = await self._call(
            "get_user_course_attendance_summary",
            {"uid": user_id, "attendance_goal": self.attendance_goal},
            SummaryReadFailure,
        )
        if isinstance(data, dict) and str(pick(data, "status", "")).lower() == "error":
            raise SummaryReadFailure(str(pick(data, "message", "")) or "summary reported an error")
        return normalize_summary(data)

    async def evaluate_challenges(
        self, user_id: str, progress_ids: Sequence[str], current_streak: Optional[int], course_ids: Sequence[str]
    ) -> ChallengeEvaluation:
        data = await self._call(
            "evaluate_user_challenges",
            {
                "p_user_id": user_id,
                "p_progress_ids": list(progress_ids),
                "p_current_streak": current_streak,
                "p_course_ids": list(course_ids),
            },
            SideEffectFailure,
        )
        evaluation = normalize_evaluation(data)
        if evaluation.failed:
            raise SideEffectFailure(evaluation.message or "Challenge evaluation failed")
        return evaluation
