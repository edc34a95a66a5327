# orchestrate/database/database.py
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

# Declarative base shared by every mapped model.
Base = declarative_base()


def make_engine(database_url: str):
    """
    Creates the SQLAlchemy engine for the metadata store.

    SQLite connections are shared across the worker threads, so the
    same-thread check is disabled; an in-memory database must also keep a
    single connection or every thread would see its own empty database.
    """
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, pool_pre_ping=True)

    kwargs = {"connect_args": {"check_same_thread": False}}
    if ":memory:" in database_url or database_url == "sqlite://":
        kwargs["poolclass"] = StaticPool
    return create_engine(database_url, **kwargs)


def make_session_factory(engine) -> scoped_session:
    # Thread-local sessions: the façade thread and each worker get their own.
    return scoped_session(sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False))
