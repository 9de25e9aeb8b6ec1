from __future__ import annotations

from dataclasses import asdict
from typing import Annotated, List, Optional, Union

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from attendrix.core.errors import error_payload
from attendrix.core.logging import get_request_id
from attendrix.features.sync.orchestrator import AttendanceSyncOrchestrator
from attendrix.features.sync.write_buffer import WriteBuffer
from attendrix.models.attendance import ActionResult, BulkActionResult

router = APIRouter(prefix="/v1/attendance", tags=["attendance"])

CLASS_ID_PATTERN = r"^[A-Za-z0-9._:-]+$"

_FAILURE_STATUS = {
    "validation_error": 400,
    "source_mutation_failed": 502,
    "mirror_read_failed": 503,
    "mirror_refresh_deferred": 503,
    "mirror_flush_failed": 500,
}


class CheckInRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    class_id: str = Field(..., min_length=1, max_length=64, pattern=CLASS_ID_PATTERN)
    class_start_time: str = Field(..., min_length=1, max_length=128)
    enrolled_course_ids: Optional[List[str]] = None


class MarkAbsentRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    class_id: str = Field(..., min_length=1, max_length=64, pattern=CLASS_ID_PATTERN)
    class_start_time: Optional[str] = Field(None, max_length=128)
    enrolled_course_ids: Optional[List[str]] = None


class BulkCheckInRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    class_ids: List[Annotated[str, Field(min_length=1, max_length=64, pattern=CLASS_ID_PATTERN)]] = Field(
        ..., min_length=1, max_length=50
    )


class UserRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)


def get_orchestrator(request: Request) -> AttendanceSyncOrchestrator:
    return request.app.state.orchestrator


def get_write_buffer(request: Request) -> WriteBuffer:
    return request.app.state.write_buffer


def _render(result: Union[ActionResult, BulkActionResult]) -> JSONResponse:
    body = asdict(result)
    if result.ok:
        return JSONResponse(status_code=200, content={"ok": True, "data": body})
    if result.outcome == "rejected":
        status = 409
    else:
        status = _FAILURE_STATUS.get(result.error_code or "", 500)
    rid = get_request_id() or ""
    content = error_payload(result.error_code or "attendance_failed", result.message, rid)
    content["data"] = body
    return JSONResponse(status_code=status, content=content)


@router.post("/check-in")
async def check_in(body: CheckInRequest, orchestrator: AttendanceSyncOrchestrator = Depends(get_orchestrator)):
    result = await orchestrator.check_in(
        body.user_id,
        body.class_id,
        body.class_start_time,
        body.enrolled_course_ids,
    )
    return _render(result)


@router.post("/mark-absent")
async def mark_absent(body: MarkAbsentRequest, orchestrator: AttendanceSyncOrchestrator = Depends(get_orchestrator)):
    result = await orchestrator.mark_absent(
        body.user_id,
        body.class_id,
        body.enrolled_course_ids,
        class_start_time=body.class_start_time,
    )
    return _render(result)


@router.post("/bulk-check-in")
async def bulk_check_in(body: BulkCheckInRequest, orchestrator: AttendanceSyncOrchestrator = Depends(get_orchestrator)):
    result = await orchestrator.bulk_check_in(body.user_id, body.class_ids)
    return _render(result)


@router.post("/resync")
async def resync(body: UserRequest, orchestrator: AttendanceSyncOrchestrator = Depends(get_orchestrator)):
    """Re-read canonical course totals into the mirror after a deferred refresh."""
    updates = await orchestrator.resync(body.user_id)
    return {"ok": True, "data": {"updated_fields": sorted(updates)}}


@router.post("/flush")
async def flush(body: UserRequest, buffer: WriteBuffer = Depends(get_write_buffer)):
    updates = await buffer.flush_now(body.user_id, trigger="manual")
    return {"ok": True, "data": {"updated_fields": sorted(updates), "pending": buffer.pending_count()}}
