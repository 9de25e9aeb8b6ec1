"""
Per-user coalescing buffer in front of the mirror store.

One slot per user. A second write for a user with a pending slot is merged
into it (deltas summed, newest summary wins, streak operations appended in
order, urgency OR-ed), so a burst of toggles becomes one transaction with no
lost or doubled points. Flushing pops the slot and applies it in one
optimistic mirror transaction; a failed flush puts the write back so nothing
is dropped, unless the user has no mirror document to write to.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from typing import AsyncIterator, Callable, Dict, List, Optional

from attendrix.core.config import settings
from attendrix.core.errors import BufferFlushFailure, MirrorDocumentNotFound
from attendrix.core.logging import log_event
from attendrix.core.metrics import (
    mirror_buffer_enqueued_total,
    mirror_buffer_flush_failures_total,
    mirror_buffer_flushed_total,
    mirror_buffer_pending,
    mirror_buffer_skipped_total,
    mirror_buffer_superseded_total,
)
from attendrix.features.mirror.store import MirrorStore
from attendrix.features.mirror.updates import apply_attendance_write
from attendrix.models.attendance import PendingWrite

logger = logging.getLogger("attendrix")


def write_digest(write: PendingWrite) -> str:
    summary = sorted(
        f"{item.course_id}:{item.attended_classes}/{item.total_classes}" for item in write.summary
    )
    payload = {
        "summary": summary,
        "amplix_delta": write.amplix_delta,
        "streak": [[op.kind, op.day, op.today] for op in write.streak_ops],
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()


def merge_writes(previous: PendingWrite, latest: PendingWrite) -> PendingWrite:
    return PendingWrite(
        user_id=latest.user_id,
        summary=list(latest.summary) if latest.summary else list(previous.summary),
        amplix_delta=previous.amplix_delta + latest.amplix_delta,
        streak_ops=list(previous.streak_ops) + list(latest.streak_ops),
        urgent=previous.urgent or latest.urgent,
    )


@dataclass
class _Slot:
    write: PendingWrite
    digest: str
    enqueued_at: float


class WriteBuffer:
    def __init__(
        self,
        store: MirrorStore,
        *,
        debounce_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._debounce = settings.WRITE_BUFFER_DEBOUNCE_SECONDS if debounce_seconds is None else debounce_seconds
        self._clock = clock
        self._pending: Dict[str, _Slot] = {}
        self._slot_lock = asyncio.Lock()
        self._flush_locks: Dict[str, asyncio.Lock] = {}
        self._flush_users: Dict[str, int] = {}

    @property
    def store(self) -> MirrorStore:
        return self._store

    def pending_count(self) -> int:
        return len(self._pending)

    def peek(self, user_id: str) -> Optional[PendingWrite]:
        slot = self._pending.get(user_id)
        return replace(slot.write) if slot else None

    def pending_users(self) -> List[str]:
        return list(self._pending)

    async def enqueue(self, write: PendingWrite) -> bool:
        """Buffer ``write``; returns False when it was a no-op duplicate of the pending slot."""
        if not write.user_id:
            raise ValueError("PendingWrite.user_id is required")

        digest = write_digest(write)
        async with self._slot_lock:
            existing = self._pending.get(write.user_id)
            if existing is None:
                self._pending[write.user_id] = _Slot(write=write, digest=digest, enqueued_at=self._clock())
            elif write.amplix_delta == 0 and existing.digest == digest:
                mirror_buffer_skipped_total.inc()
                if write.urgent and not existing.write.urgent:
                    existing.write = replace(existing.write, urgent=True)
                return False
            else:
                merged = merge_writes(existing.write, write)
                # enqueued_at keeps the oldest time so staleness stays bounded
                self._pending[write.user_id] = _Slot(
                    write=merged, digest=write_digest(merged), enqueued_at=existing.enqueued_at
                )
                mirror_buffer_superseded_total.inc()
                logger.debug("mirror.buffer.coalesced", extra={"user_id": write.user_id})
            mirror_buffer_pending.set(len(self._pending))
        mirror_buffer_enqueued_total.inc()
        return True

    async def _requeue(self, failed: PendingWrite) -> None:
        async with self._slot_lock:
            newer = self._pending.get(failed.user_id)
            write = merge_writes(failed, newer.write) if newer else failed
            enqueued_at = newer.enqueued_at if newer else self._clock()
            self._pending[failed.user_id] = _Slot(write=write, digest=write_digest(write), enqueued_at=enqueued_at)
            mirror_buffer_pending.set(len(self._pending))

    @asynccontextmanager
    async def _flushing(self, user_id: str) -> AsyncIterator[None]:
        """Serialize flushes per user; the lock is dropped once nobody holds or waits on it."""
        lock = self._flush_locks.get(user_id)
        if lock is None:
            lock = self._flush_locks[user_id] = asyncio.Lock()
        self._flush_users[user_id] = self._flush_users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._flush_users[user_id] - 1
            if remaining:
                self._flush_users[user_id] = remaining
            else:
                del self._flush_users[user_id]
                del self._flush_locks[user_id]

    def active_flush_locks(self) -> int:
        return len(self._flush_locks)

    async def flush_now(self, user_id: str, *, trigger: str = "urgent") -> dict:
        """Apply the pending write for ``user_id`` now and clear its slot.

        Returns the field updates written (empty if nothing was pending or
        nothing changed). Raises BufferFlushFailure after re-enqueueing. A
        write for a user without a mirror document is dropped, since retrying
        can never succeed.
        """
        async with self._flushing(user_id):
            async with self._slot_lock:
                slot = self._pending.pop(user_id, None)
                mirror_buffer_pending.set(len(self._pending))
            if slot is None:
                return {}

            try:
                updates = await apply_attendance_write(self._store, slot.write)
            except MirrorDocumentNotFound as exc:
                mirror_buffer_flush_failures_total.inc()
                log_event(
                    "error",
                    "mirror.flush.dropped",
                    user_id=user_id,
                    error_code=exc.code,
                    extra={"amplix_delta": slot.write.amplix_delta},
                )
                raise BufferFlushFailure(f"No mirror document for {user_id}; update dropped") from exc
            except Exception as exc:
                await self._requeue(slot.write)
                mirror_buffer_flush_failures_total.inc()
                log_event(
                    "error",
                    "mirror.flush.failed",
                    user_id=user_id,
                    error_code=BufferFlushFailure.code,
                    extra={"reason": repr(exc), "amplix_delta": slot.write.amplix_delta},
                )
                raise BufferFlushFailure(f"Mirror update for {user_id} failed; it will be retried") from exc

        mirror_buffer_flushed_total.inc(labels={"trigger": trigger})
        log_event(
            "info",
            "mirror.flush.applied",
            user_id=user_id,
            extra={"fields": ",".join(sorted(updates)) or "-", "trigger": trigger},
        )
        return updates

    async def flush_due(self) -> int:
        """Flush urgent slots and slots older than the debounce window.

        Failures are logged and left queued for the next pass. Returns the
        number of slots flushed.
        """
        now = self._clock()
        due = [
            user_id
            for user_id, slot in list(self._pending.items())
            if slot.write.urgent or now - slot.enqueued_at >= self._debounce
        ]
        flushed = 0
        for user_id in due:
            try:
                await self.flush_now(user_id, trigger="interval")
                flushed += 1
            except BufferFlushFailure:
                continue
        return flushed

    async def flush_all(self) -> int:
        """Flush every pending slot regardless of age (shutdown path)."""
        flushed = 0
        for user_id in self.pending_users():
            try:
                await self.flush_now(user_id, trigger="shutdown")
                flushed += 1
            except BufferFlushFailure:
                continue
        return flushed
