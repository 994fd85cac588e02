"""Database engine and session factory for the abuse-protection tables.

Provides a database-agnostic (SQLite + PostgreSQL) persistence layer
using SQLAlchemy 2.0 declarative base, engine initialization, and a
context-managed session with automatic commit/rollback.

Configuration:
    GUARD_DATABASE_URL env var (default: ``sqlite:///usr/guard.db``)
"""

import logging
import os
from collections.abc import Callable, Generator
from contextlib import AbstractContextManager, contextmanager
from datetime import datetime, timezone

from sqlalchemy import DateTime, create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.types import TypeDecorator

from harborguard.helpers.errors import ConfigurationError, StorageError

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager[Session]]

# ---------------------------------------------------------------------------
# Declarative base, imported by the store modules
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all guard ORM models."""


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, returns aware UTC.

    SQLite drops tzinfo on round-trip; normalizing at the column keeps
    comparisons consistent between SQLite and PostgreSQL.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, str):
            value = datetime.fromisoformat(value)
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Module-level engine / session factory (initialized lazily via init_db)
# ---------------------------------------------------------------------------

_engine: Engine | None = None
_SessionLocal: sessionmaker[Session] | None = None

_DEFAULT_URL = "sqlite:///usr/guard.db"

# Backends with an atomic INSERT ... ON CONFLICT DO UPDATE
SUPPORTED_BACKENDS = ("sqlite", "postgresql")


def build_engine(url: str) -> Engine:
    """Create an engine for *url* with SQLite thread-safety relaxed.

    Raises:
        ConfigurationError: the URL names a backend other than SQLite or
            PostgreSQL, or cannot be parsed.
    """
    try:
        backend = make_url(url).get_backend_name()
    except ArgumentError as e:
        raise ConfigurationError(f"Invalid guard database URL: {e}") from e
    if backend not in SUPPORTED_BACKENDS:
        raise ConfigurationError(
            f"Unsupported guard database backend '{backend}' "
            f"(supported: {', '.join(SUPPORTED_BACKENDS)})"
        )

    connect_args: dict = {}
    if backend == "sqlite":
        # SQLite is not thread-safe by default; allow multi-threaded access
        connect_args["check_same_thread"] = False
    return create_engine(url, echo=False, connect_args=connect_args)


def session_scope(maker: sessionmaker[Session]) -> SessionFactory:
    """Wrap a sessionmaker in a commit/rollback/close context manager."""

    @contextmanager
    def _scope() -> Generator[Session, None, None]:
        session = maker()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return _scope


def init_db(url: str | None = None) -> None:
    """Initialize the guard database engine and session factory.

    Args:
        url: SQLAlchemy connection string.  Falls back to the
            ``GUARD_DATABASE_URL`` env var, then to the built-in default
            (``sqlite:///usr/guard.db``).
    """
    global _engine, _SessionLocal

    url = url or os.environ.get("GUARD_DATABASE_URL", _DEFAULT_URL)

    _engine = build_engine(url)
    _SessionLocal = sessionmaker(bind=_engine)

    logger.info("Guard database initialized (%s backend)", url.split("://")[0])


def create_tables() -> None:
    """Create the attempt and ban tables if they do not exist yet."""
    # Register models on Base before create_all
    import harborguard.helpers.attempt_store  # noqa: F401
    import harborguard.helpers.ban_store  # noqa: F401

    Base.metadata.create_all(get_engine())


def get_engine() -> Engine:
    """Return the guard database engine.

    Raises:
        ConfigurationError: If :func:`init_db` has not been called yet.
    """
    if _engine is None:
        raise ConfigurationError(
            "Guard database not initialized. Call init_db() before requesting the engine."
        )
    return _engine


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Context manager yielding a SQLAlchemy session.

    Commits on clean exit, rolls back on exception, and always closes
    the session.

    Raises:
        ConfigurationError: If :func:`init_db` has not been called yet.
    """
    if _SessionLocal is None:
        raise ConfigurationError(
            "Guard database not initialized. Call init_db() before requesting a session."
        )

    with session_scope(_SessionLocal)() as session:
        yield session


@contextmanager
def storage_errors(operation: str) -> Generator[None, None, None]:
    """Re-raise SQLAlchemy failures from *operation* as StorageError."""
    try:
        yield
    except SQLAlchemyError as e:
        logger.error("Guard store %s failed: %s", operation, e)
        raise StorageError(f"{operation} failed: {e}") from e
