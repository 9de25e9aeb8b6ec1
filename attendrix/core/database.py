"""
Mirror document table and engine lifecycle.

The mirror store keeps one row per user: the denormalized document as JSON
plus a ``version`` counter that backs optimistic read-then-write transactions.
"""
from typing import Optional
import logging
import os

from sqlalchemy import JSON, Column, DateTime, Integer, MetaData, String, Table, create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.sql import func

from attendrix.core.config import settings

logger = logging.getLogger("attendrix")

metadata = MetaData()

mirror_documents = Table(
    "mirror_documents",
    metadata,
    Column("user_id", String(128), primary_key=True),
    Column("version", Integer, nullable=False, server_default=text("0")),
    Column("document", JSON, nullable=False),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
)

# Pool sizing for server databases
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600

_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def get_database_url() -> Optional[str]:
    """TEST_MIRROR_DATABASE_URL wins over MIRROR_DATABASE_URL."""
    return os.getenv("TEST_MIRROR_DATABASE_URL") or settings.TEST_MIRROR_DATABASE_URL or settings.MIRROR_DATABASE_URL


def build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
            # One shared connection, otherwise each session sees an empty database
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        pool_pre_ping=True,
    )


def init_engine(database_url: Optional[str] = None) -> Engine:
    global _engine, _SessionLocal

    url = database_url or get_database_url()
    if not url:
        raise ValueError("MIRROR_DATABASE_URL is not configured")

    dispose_engine()
    _engine = build_engine(url)
    _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)
    logger.info("mirror.db.engine_ready", extra={"dialect": _engine.dialect.name})
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory() -> sessionmaker:
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


def dispose_engine() -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def create_all_tables(engine: Optional[Engine] = None) -> None:
    """Idempotent: existing tables are left alone."""
    metadata.create_all(bind=engine or get_engine())
