import sys
from pathlib import Path

# Ensure the project's `src/` directory is on sys.path so test modules
# can import `common`, `reconciliation`, etc. without installing the
# package first.
root_dir = Path(__file__).resolve().parents[1]
src_dir = root_dir / "src"
if src_dir.exists() and str(src_dir) not in sys.path:
    sys.path.insert(0, str(src_dir))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from common.models import Base
from reconciliation.context import ReconciliationContext

from factories import FakeClock, FakeGoogleSource, FakeOpenLibrarySource, MemoryCatalogStore


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def context(clock):
    return ReconciliationContext(clock=clock)


@pytest.fixture
def store():
    return MemoryCatalogStore()


@pytest.fixture
def google():
    return FakeGoogleSource()


@pytest.fixture
def open_library():
    return FakeOpenLibrarySource()


@pytest.fixture
def session_factory():
    """SQLite in-memory database shared across connections."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()
