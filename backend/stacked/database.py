"""SQLAlchemy plumbing for the persistent local store.

The sync core treats its key/value store as an interface; ``SqlStore`` is the
durable implementation and keeps its rows in the ``local_storage`` table
declared in :mod:`stacked.models.storage`.
"""

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import Engine
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker

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
    connect_args = kwargs.pop("connect_args", {})
    if "sqlite" in db_url:
        if "check_same_thread" not in connect_args:
            connect_args["check_same_thread"] = False
        # Several processes may share one file (one per "browser session")
        connect_args["timeout"] = 30

    return create_engine(db_url, connect_args=connect_args, **kwargs)


def make_sessionmaker(engine: Engine) -> sessionmaker:
    """Create a sessionmaker bound to the given engine.

    ``expire_on_commit=False`` keeps attributes readable after the short-lived
    sessions used by the store have committed.
    """
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


def initialize_database(engine: Engine) -> None:
    """Create tables if they don't exist."""
    # Import models so they register with Base.metadata
    from stacked.models import storage  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.debug("Local storage tables ensured on %s", engine.url)


@contextmanager
def db_session(factory: sessionmaker) -> Iterator[Session]:
    """Context manager that commits on success and rolls back on error."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
