# tests/conftest.py
import pytest

from helpers import FakeComputeProvider
from orchestrate.database.database import make_engine, make_session_factory
from orchestrate.database.db_init import initialize_db


@pytest.fixture
def fake_provider() -> FakeComputeProvider:
    return FakeComputeProvider()


@pytest.fixture
def session_factory():
    """A scoped session factory over a fresh in-memory SQLite database."""
    engine = make_engine("sqlite://")
    initialize_db(engine)
    factory = make_session_factory(engine)
    yield factory
    factory.remove()
    engine.dispose()


@pytest.fixture
def file_session_factory(tmp_path):
    """Like session_factory, but on disk so every worker thread gets its own connection."""
    engine = make_engine(f"sqlite:///{tmp_path / 'orchestrate.db'}")
    initialize_db(engine)
    factory = make_session_factory(engine)
    yield factory
    factory.remove()
    engine.dispose()
