"""Database engine and sessions for the job/listing store and the build queue.

SQLite is the default backend. Worker threads, the web process and the CLI
may open the same file at once, so every SQLite connection runs in WAL mode
with a busy timeout and enforced foreign keys.
"""

import logging
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from bundlepipe.config import get_settings

logger = logging.getLogger(__name__)

# Milliseconds a connection waits on a locked database before failing
SQLITE_BUSY_TIMEOUT_MS = 5000


class Base(DeclarativeBase):
    """Base class for build, queue, listing and publish records."""


def _set_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


def get_engine(db_url: str | None = None) -> Engine:
    """Create an engine for the record store or the queue.

    For a SQLite file the parent directory is created, connections may be
    shared across worker threads, and the connection pragmas are installed.

    Args:
        db_url: Database URL; settings.db_url if not provided.

    Returns:
        SQLAlchemy Engine.
    """
    if db_url is None:
        db_url = get_settings().db_url

    url = make_url(db_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(url, pool_pre_ping=True)

    if url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(url, connect_args={"check_same_thread": False})
    event.listen(engine, "connect", _set_sqlite_pragmas)
    logger.debug("SQLite engine at %s", url.database or ":memory:")
    return engine


def get_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Session factory shared by the API, the CLI and the worker pool.

    Objects stay usable after commit so workers can read a job's fields
    once its session has closed.
    """
    if engine is None:
        engine = get_engine()
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """One transaction: committed on exit, rolled back if the block raises."""
    if session_factory is None:
        session_factory = get_session_factory()

    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Engine | None = None) -> None:
    """Create the build, queue, listing and publish tables if missing."""
    # Register every model with the mapper before creating tables
    from bundlepipe.builds import models as builds_models  # noqa: F401
    from bundlepipe.listings import models as listings_models  # noqa: F401
    from bundlepipe.publish import models as publish_models  # noqa: F401

    if engine is None:
        engine = get_engine()
    Base.metadata.create_all(bind=engine)


__all__ = [
    "Base",
    "SQLITE_BUSY_TIMEOUT_MS",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
]
