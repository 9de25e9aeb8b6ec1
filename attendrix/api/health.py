"""
Operational endpoints for the attendance sync service.

Liveness never touches dependencies; readiness reads from the mirror store and
reports how much is waiting in the write buffer. /metrics exposes the
in-process counters.
"""

import logging

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from attendrix.core.metrics import METRICS, mirror_buffer_pending

logger = logging.getLogger("attendrix")

root_router = APIRouter(tags=["health"])

_READINESS_USER_ID = "__readyz__"


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
async def readyz(request: Request):
    """Readiness check: mirror store reachable."""
    store = request.app.state.mirror_store
    buffer = request.app.state.write_buffer
    try:
        await store.get_document(_READINESS_USER_ID)
    except Exception as e:
        logger.error(f"[readyz] mirror store check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "mirror store unreachable"})
    return {
        "status": "ok",
        "store": type(store).__name__,
        "pending_writes": buffer.pending_count(),
    }


@root_router.get("/metrics")
def metrics_endpoint(request: Request):
    """Prometheus text exposition of the in-process registry."""
    buffer = getattr(request.app.state, "write_buffer", None)
    if buffer is not None:
        mirror_buffer_pending.set(buffer.pending_count())
    return Response(content=METRICS.export_prometheus(), media_type="text/plain")
