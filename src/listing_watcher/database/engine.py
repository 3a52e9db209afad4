"""Database engine and session management."""

import os
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from listing_watcher.models.db_models import Base

DEFAULT_DB_PATH = Path(__file__).parent.parent.parent.parent / "data" / "listing_watcher.db"

# Seconds SQLite waits on a locked database before raising
SQLITE_BUSY_TIMEOUT = 30


def _get_db_path() -> Path:
    """Get database path from WATCHER_DB_PATH or default."""
    env_path = os.environ.get("WATCHER_DB_PATH")
    if env_path:
        return Path(env_path)
    return DEFAULT_DB_PATH


def get_database_url(db_path: Path | None = None) -> str:
    """Resolve the database URL.

    Priority:
        1. DATABASE_URL environment variable
        2. Explicit db_path argument
        3. WATCHER_DB_PATH environment variable
        4. Default path (data/listing_watcher.db)
    """
    if url := os.environ.get("DATABASE_URL"):
        return url
    path = db_path or _get_db_path()
    return f"sqlite:///{path}"


def _configure_sqlite(dbapi_connection: Any, _record: Any) -> None:
    """Per-connection pragmas: WAL for concurrent readers, enforced FKs."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine for the URL and make sure all tables exist.

    Worker threads share this engine, so SQLite connections are opened
    with check_same_thread disabled and a busy timeout.
    """
    engine_kwargs: dict[str, Any] = {"echo": echo}

    if database_url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {
            "check_same_thread": False,
            "timeout": SQLITE_BUSY_TIMEOUT,
        }
    else:
        engine_kwargs["pool_size"] = 10
        engine_kwargs["pool_pre_ping"] = True
        engine_kwargs["pool_recycle"] = 3600

    engine = create_engine(database_url, **engine_kwargs)

    if database_url.startswith("sqlite"):
        event.listen(engine, "connect", _configure_sqlite)

    Base.metadata.create_all(engine)
    return engine


_engine: Engine | None = None
_SessionLocal: sessionmaker[Session] | None = None


def get_engine(db_path: Path | str | None = None, echo: bool = False) -> Engine:
    """Get or create the process-wide engine.

    Args:
        db_path: Path to SQLite database file. Ignored when DATABASE_URL is set.
        echo: Whether to echo SQL statements.
    """
    global _engine

    if _engine is None:
        path_obj = Path(db_path) if db_path else None
        database_url = get_database_url(db_path=path_obj)

        if database_url.startswith("sqlite") and not os.environ.get("DATABASE_URL"):
            (path_obj or _get_db_path()).parent.mkdir(parents=True, exist_ok=True)

        _engine = build_engine(database_url, echo=echo)

    return _engine


def get_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Get or create the process-wide session factory."""
    global _SessionLocal

    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            bind=engine or get_engine(),
            autoflush=False,
            expire_on_commit=False,
        )

    return _SessionLocal


@contextmanager
def get_session(engine: Engine | None = None) -> Generator[Session, None, None]:
    """Get a database session as a context manager.

    The session is closed on exit; callers commit explicitly.
    """
    session = get_session_factory(engine)()
    try:
        yield session
    finally:
        session.close()


def init_db(db_path: Path | str | None = None, echo: bool = False) -> Engine:
    """Initialize the database, creating all tables."""
    return get_engine(db_path, echo)


def reset_engine() -> None:
    """Reset the global engine and session factory. Useful for testing."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None
