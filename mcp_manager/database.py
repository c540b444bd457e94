import logging
from contextlib import contextmanager
from typing import Any
from typing import Iterator
from typing import Optional

from sqlalchemy import Engine
from sqlalchemy import create_engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import Session
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from mcp_manager.config import get_settings

logger = logging.getLogger(__name__)

# Create Base class
Base = declarative_base()


def make_engine(db_url: str, **kwargs) -> Engine:
    """Create a SQLAlchemy engine with the given URL and options.

    Args:
        db_url: Database connection URL
        **kwargs: Additional arguments for create_engine

    Returns:
        A SQLAlchemy Engine instance
    """
    db_url = (db_url or "").strip()
    if not db_url:
        raise ValueError("API_MCP_MANAGER_DATABASE_URL is not set (empty)")

    # Values exported from `.env` sometimes keep their surrounding quotes.
    if (db_url.startswith('"') and db_url.endswith('"')) or (db_url.startswith("'") and db_url.endswith("'")):
        db_url = db_url[1:-1].strip()

    # Many platforms emit `postgres://...` but SQLAlchemy expects `postgresql://...`.
    if db_url.startswith("postgres://"):
        db_url = "postgresql://" + db_url[len("postgres://") :]

    try:
        parsed = make_url(db_url)
    except Exception as e:  # pragma: no cover - depends on SQLAlchemy parsing
        raise ValueError(f"Invalid database URL: {e}") from e

    if parsed.drivername.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        if parsed.database in (None, "", ":memory:"):
            # In-memory SQLite lives inside a single connection; share it.
            kwargs.setdefault("poolclass", StaticPool)
    else:
        # pre_ping verifies connections before use, pool_recycle handles DB restarts
        kwargs.setdefault("pool_pre_ping", True)
        kwargs.setdefault("pool_recycle", 300)

    return create_engine(db_url, **kwargs)


def make_sessionmaker(engine: Engine) -> sessionmaker:
    """Create a sessionmaker bound to the given engine.

    ``expire_on_commit=False`` keeps attributes readable after a commit, which
    the async services rely on when they hand rows back after awaiting network
    calls.
    """
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


# Lazily created defaults ---------------------------------------------------

default_engine: Optional[Engine] = None
default_session_factory: Optional[sessionmaker] = None


def get_session_factory() -> sessionmaker:
    """Return the process-wide session factory, creating it on first use."""
    global default_engine, default_session_factory

    if default_session_factory is None:
        default_engine = make_engine(get_settings().database_url)
        default_session_factory = make_sessionmaker(default_engine)
    return default_session_factory


def get_db(session_factory: Any = None) -> Iterator[Session]:
    """Dependency provider for database sessions.

    Args:
        session_factory: Optional custom session factory

    Yields:
        SQLAlchemy Session object
    """
    factory = session_factory or get_session_factory()
    db = factory()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def db_session(session_factory: Any = None):
    """Session context manager for code running outside a request.

    Commits on success, rolls back and re-raises on error, always closes.

    Usage:
        with db_session() as db:
            crud_integrations.get_integration(db, ...)
    """
    factory = session_factory or get_session_factory()
    session = factory()

    try:
        yield session
        session.commit()

    except Exception as e:
        session.rollback()
        logger.error(f"Database session rolled back due to error: {e}")
        raise

    finally:
        session.close()


def initialize_database(engine: Engine = None) -> None:
    """Create all tables on *engine* (defaults to the process-wide engine)."""
    # Import models so they register with Base
    from mcp_manager.models.connection import Connection  # noqa: F401
    from mcp_manager.models.integration import Integration  # noqa: F401
    from mcp_manager.models.integration import IntegrationOAuthState  # noqa: F401

    if engine is None:
        get_session_factory()
        engine = default_engine

    Base.metadata.create_all(bind=engine)
    logger.info("Database tables initialized")
