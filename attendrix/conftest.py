# attendrix/conftest.py
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add repo root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from attendrix.core.database import metadata  # noqa: E402
from attendrix.core.metrics import METRICS  # noqa: E402
from attendrix.features.mirror.store import InMemoryMirrorStore, SqlMirrorStore  # noqa: E402
from attendrix.tests.mocks import WEDNESDAY, FakeAuthoritativeStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_metrics():
    METRICS.reset()
    yield
    METRICS.reset()


@pytest.fixture
def fake_source():
    return FakeAuthoritativeStore()


@pytest.fixture
def memory_store():
    return InMemoryMirrorStore()


@pytest.fixture
def sqlite_engine():
    """
    In-memory SQLite with the mirror table created.

    StaticPool keeps one connection so every session sees the same database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    metadata.create_all(bind=engine)
    yield engine
    metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def sql_store(sqlite_engine):
    factory = sessionmaker(autocommit=False, autoflush=False, bind=sqlite_engine)
    return SqlMirrorStore(session_factory=factory)


@pytest.fixture
def today():
    """Fixed clock: 'today' is WEDNESDAY."""
    return lambda: WEDNESDAY
