"""
State Database Connection Management

Synchronous SQLAlchemy 2.0 engine and session handling for the durable
pipeline state (checkpoints, processed manifest files).
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

import structlog
from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from printbatch.storage.models import Base

logger = structlog.get_logger(__name__)


def create_state_engine(url: str, echo: bool = False) -> Engine:
    """
    Create the engine for the state database.

    In-memory SQLite shares one connection so every session sees the same
    database; file-backed SQLite gets its parent directory created.
    """
    parsed = make_url(url)
    engine_config = {"echo": echo, "future": True}

    if parsed.get_backend_name() == "sqlite":
        engine_config["connect_args"] = {"check_same_thread": False}
        if parsed.database in (None, "", ":memory:"):
            engine_config["poolclass"] = StaticPool
        else:
            Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
    else:
        engine_config["pool_pre_ping"] = True

    return create_engine(url, **engine_config)


def init_state_database(url: str, echo: bool = False, engine: Optional[Engine] = None) -> sessionmaker:
    """
    Initialize the state database and return a session factory.

    Creates the state tables if they do not exist yet.
    """
    engine = engine or create_state_engine(url, echo=echo)
    Base.metadata.create_all(engine)

    logger.info("State database initialized", backend=engine.url.get_backend_name())

    return sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)


@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Provide a transactional scope around a series of operations.

    Commits on success, rolls back and re-raises on error.

    Example:
        with session_scope(factory) as session:
            session.add(obj)
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception as e:
        logger.error("State session error, rolling back", error=str(e), error_type=type(e).__name__)
        session.rollback()
        raise
    finally:
        session.close()
