"""Error taxonomy and normalized HTTP error handlers."""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from attendrix.core.logging import get_request_id

logger = logging.getLogger("attendrix")


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class UpstreamError(AppError):
    code = "upstream_error"
    status_code = 502


# Sync pipeline failures ------------------------------------------------

class SourceMutationFailure(UpstreamError):
    """The authoritative procedure failed at transport or application level."""
    code = "source_mutation_failed"


class SummaryReadFailure(UpstreamError):
    code = "summary_read_failed"


class SideEffectFailure(UpstreamError):
    """Challenge evaluation failed; never fatal for an attendance action."""
    code = "challenge_evaluation_failed"


class MirrorReadFailure(AppError):
    code = "mirror_read_failed"
    status_code = 503


class MirrorDocumentNotFound(NotFoundError, MirrorReadFailure):
    code = "mirror_document_not_found"
    status_code = 404


class MirrorConflictError(ConflictError):
    """Optimistic transaction retries were exhausted."""
    code = "mirror_conflict"


class BufferFlushFailure(AppError):
    code = "mirror_flush_failed"
    status_code = 500


def _request_id(request: Request, override: Optional[str] = None) -> str:
    return override or getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }


def _respond(rid: str, status: int, code: str, message: str) -> JSONResponse:
    response = JSONResponse(status_code=status, content=error_payload(code, message, rid))
    response.headers["x-request-id"] = rid
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = _request_id(request, exc.request_id)
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    return _respond(rid, exc.status_code, exc.code, exc.message)


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return _respond(rid, exc.status_code, code, str(exc.detail or "HTTP error"))


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _request_id(request)
    logger.error("unhandled.exception", exc_info=exc, extra={"request_id": rid, "error_code": "internal_error"})
    return _respond(rid, 500, "internal_error", "Unexpected error")
