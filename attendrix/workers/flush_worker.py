"""Background flush loop for the mirror write buffer."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from attendrix.core.config import settings
from attendrix.features.sync.write_buffer import WriteBuffer

logger = logging.getLogger("attendrix.workers.flush")


class FlushWorker:
    """Every ``interval_seconds``, flush buffered writes that are urgent or past the debounce window."""

    def __init__(self, buffer: WriteBuffer, *, interval_seconds: Optional[float] = None):
        self._buffer = buffer
        self._interval = interval_seconds or settings.WRITE_BUFFER_FLUSH_INTERVAL_SECONDS
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        flushed = await self._buffer.flush_due()
        if flushed:
            logger.info("[flush] interval pass", extra={"flushed": flushed, "pending": self._buffer.pending_count()})
        return flushed

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            if self._stopping.is_set():
                break
            try:
                await self.run_once()
            except Exception:
                logger.exception("[flush] interval pass crashed; continuing")

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._loop(), name="mirror-flush-worker")

    async def stop(self, *, drain: bool = True) -> int:
        """Stop the loop; with ``drain`` flush everything still pending."""
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
        if not drain:
            return 0
        flushed = await self._buffer.flush_all()
        logger.info("[flush] drained on shutdown", extra={"flushed": flushed, "pending": self._buffer.pending_count()})
        return flushed
