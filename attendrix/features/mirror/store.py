"""
Mirror document store.

Two backends share one contract: ``get_document`` for reads and ``transact``
for read-then-conditionally-write updates guarded by a per-document version.
A transaction whose version moved underneath it is recomputed from a fresh
read, up to ``max_retries`` times, then fails with MirrorConflictError.
"""
from __future__ import annotations

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy import insert, select, update
from sqlalchemy.orm import sessionmaker

from attendrix.core.config import settings
from attendrix.core.database import (
    create_all_tables,
    get_database_url,
    get_session_factory,
    init_engine,
    mirror_documents,
)
from attendrix.core.errors import MirrorConflictError, MirrorDocumentNotFound
from attendrix.core.metrics import mirror_tx_conflicts_total

logger = logging.getLogger("attendrix")

ComputeUpdates = Callable[[Dict[str, Any]], Dict[str, Any]]


class MirrorStore(ABC):
    def __init__(self, max_retries: Optional[int] = None):
        self.max_retries = settings.MIRROR_TX_MAX_RETRIES if max_retries is None else max_retries

    @abstractmethod
    async def get_document(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Return a copy of the user's document, or None if it does not exist."""

    @abstractmethod
    async def upsert_document(self, user_id: str, document: Dict[str, Any]) -> None:
        """Provisioning only; attendance writes never create documents."""

    @abstractmethod
    async def transact(self, user_id: str, compute: ComputeUpdates) -> Dict[str, Any]:
        """Apply ``compute(fresh_document)`` atomically and return the applied updates."""

    def _on_conflict(self, user_id: str, attempt: int) -> None:
        mirror_tx_conflicts_total.inc()
        logger.info(
            "mirror.tx.conflict",
            extra={"user_id": user_id, "attempt": attempt},
        )

    def _exhausted(self, user_id: str) -> MirrorConflictError:
        return MirrorConflictError(
            f"Mirror transaction for {user_id} conflicted {self.max_retries + 1} times"
        )


class InMemoryMirrorStore(MirrorStore):
    """Process-local store used when no mirror database is configured."""

    def __init__(self, max_retries: Optional[int] = None):
        super().__init__(max_retries)
        self._documents: Dict[str, Tuple[int, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()
        self.commit_count = 0

    async def get_document(self, user_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            entry = self._documents.get(user_id)
            return copy.deepcopy(entry[1]) if entry else None

    async def upsert_document(self, user_id: str, document: Dict[str, Any]) -> None:
        async with self._lock:
            version = self._documents[user_id][0] + 1 if user_id in self._documents else 0
            self._documents[user_id] = (version, copy.deepcopy(document))

    async def version_of(self, user_id: str) -> Optional[int]:
        async with self._lock:
            entry = self._documents.get(user_id)
            return entry[0] if entry else None

    async def _before_commit(self, user_id: str) -> None:
        # Suspension point between read and write, where other writers interleave.
        await asyncio.sleep(0)

    async def transact(self, user_id: str, compute: ComputeUpdates) -> Dict[str, Any]:
        for attempt in range(self.max_retries + 1):
            async with self._lock:
                entry = self._documents.get(user_id)
            if entry is None:
                raise MirrorDocumentNotFound(f"Mirror document for {user_id} not found")
            version, document = entry

            updates = compute(copy.deepcopy(document))
            if not updates:
                return {}

            await self._before_commit(user_id)
            async with self._lock:
                current = self._documents.get(user_id)
                if current is None:
                    raise MirrorDocumentNotFound(f"Mirror document for {user_id} not found")
                if current[0] != version:
                    self._on_conflict(user_id, attempt)
                    continue
                self._documents[user_id] = (version + 1, {**document, **copy.deepcopy(updates)})
                self.commit_count += 1
                return updates
        raise self._exhausted(user_id)


class SqlMirrorStore(MirrorStore):
    """SQLAlchemy-backed store over the ``mirror_documents`` table.

    Blocking session work runs in a worker thread so the event loop stays free.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None, max_retries: Optional[int] = None):
        super().__init__(max_retries)
        self._session_factory = session_factory

    def _session(self):
        factory = self._session_factory or get_session_factory()
        return factory()

    def _read(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._session() as session:
            row = session.execute(
                select(mirror_documents.c.document).where(mirror_documents.c.user_id == user_id)
            ).first()
            return copy.deepcopy(row.document) if row else None

    def _upsert(self, user_id: str, document: Dict[str, Any]) -> None:
        with self._session() as session:
            existing = session.execute(
                select(mirror_documents.c.version).where(mirror_documents.c.user_id == user_id)
            ).first()
            if existing:
                session.execute(
                    update(mirror_documents)
                    .where(mirror_documents.c.user_id == user_id)
                    .values(document=document, version=existing.version + 1)
                )
            else:
                session.execute(
                    insert(mirror_documents).values(user_id=user_id, document=document, version=0)
                )
            session.commit()

    def _transact(self, user_id: str, compute: ComputeUpdates) -> Dict[str, Any]:
        for attempt in range(self.max_retries + 1):
            with self._session() as session:
                row = session.execute(
                    select(mirror_documents.c.version, mirror_documents.c.document)
                    .where(mirror_documents.c.user_id == user_id)
                ).first()
                if row is None:
                    raise MirrorDocumentNotFound(f"Mirror document for {user_id} not found")

                document = copy.deepcopy(row.document)
                updates = compute(copy.deepcopy(document))
                if not updates:
                    session.rollback()
                    return {}

                result = session.execute(
                    update(mirror_documents)
                    .where(mirror_documents.c.user_id == user_id)
                    .where(mirror_documents.c.version == row.version)
                    .values(document={**document, **updates}, version=row.version + 1)
                )
                if result.rowcount == 1:
                    session.commit()
                    return updates
                session.rollback()
            self._on_conflict(user_id, attempt)
        raise self._exhausted(user_id)

    async def get_document(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._read, user_id)

    async def upsert_document(self, user_id: str, document: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._upsert, user_id, document)

    async def transact(self, user_id: str, compute: ComputeUpdates) -> Dict[str, Any]:
        return await asyncio.to_thread(self._transact, user_id, compute)


def build_mirror_store(database_url: Optional[str] = None) -> MirrorStore:
    """SQL store when a mirror database is configured, in-memory otherwise."""
    url = database_url or get_database_url()
    if not url:
        logger.warning("MIRROR_DATABASE_URL not set; using in-memory mirror store")
        return InMemoryMirrorStore()
    engine = init_engine(url)
    create_all_tables(engine)
    return SqlMirrorStore()
