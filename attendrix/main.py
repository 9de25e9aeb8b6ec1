import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, HTTPException

from attendrix.core.config import settings, validate_config
from attendrix.core.database import dispose_engine
from attendrix.core.logging import configure_logging
from attendrix.core.middleware.request_id import RequestIdMiddleware
from attendrix.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from attendrix.api import attendance, streaks, health
from attendrix.features.mirror.store import MirrorStore, build_mirror_store
from attendrix.features.streaks.service import StreakService
from attendrix.features.sync.orchestrator import AttendanceSyncOrchestrator
from attendrix.features.sync.rpc_client import AuthoritativeStore, AuthoritativeStoreClient
from attendrix.features.sync.write_buffer import WriteBuffer
from attendrix.workers.flush_worker import FlushWorker

logger = logging.getLogger("attendrix")


def create_app(
    source: Optional[AuthoritativeStore] = None,
    store: Optional[MirrorStore] = None,
    *,
    zone: Optional[str] = None,
    today: Optional[Callable[[], int]] = None,
    run_flush_worker: bool = True,
) -> FastAPI:
    """Build the attendance sync app.

    ``source`` and ``store`` default to the configured remote procedure client
    and mirror store; tests pass in fakes.
    """
    streak_zone = zone or settings.STREAK_TIMEZONE

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting attendance sync service...")
        mirror_store = store or build_mirror_store()
        owned_client = None
        authoritative = source
        if authoritative is None:
            owned_client = authoritative = AuthoritativeStoreClient()

        buffer = WriteBuffer(mirror_store)
        worker = FlushWorker(buffer)
        app.state.mirror_store = mirror_store
        app.state.write_buffer = buffer
        app.state.orchestrator = AttendanceSyncOrchestrator(authoritative, buffer, zone=streak_zone, today=today)
        app.state.streak_service = StreakService(mirror_store, zone=streak_zone, today=today)
        app.state.flush_worker = worker
        if run_flush_worker:
            worker.start()
        try:
            yield
        finally:
            # Whatever is still buffered is flushed before the process exits.
            await worker.stop(drain=True)
            if owned_client is not None:
                await owned_client.aclose()
            if store is None:
                dispose_engine()
            logger.info("Stopping attendance sync service...")

    app = FastAPI(title="Attendrix - Attendance Sync", lifespan=lifespan)

    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(attendance.router)
    app.include_router(streaks.router, tags=["streaks"])
    app.include_router(health.root_router, tags=["health"])
    return app


configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))

app = create_app()
