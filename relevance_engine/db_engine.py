"""
Engine and transaction handling for the relevance store.

The engine is built on first use from $RELEVANCE_ENGINE_DB_URL, falling back
to a SQLite file in the working directory. Tests swap in their own engine with
set_engine().
"""

import os
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from relevance_engine.constants import DB_NAME
from relevance_engine.errors import PersistenceError
from util.logging_util import setup_logger

logger = setup_logger(__name__)

DB_URL_VARIABLE = "RELEVANCE_ENGINE_DB_URL"
SQLITE_BUSY_TIMEOUT_SECONDS = 30

_engine: Optional[Engine] = None
_make_session: Optional[sessionmaker] = None


def database_url() -> str:
    return os.environ.get(DB_URL_VARIABLE) or f"sqlite:///{DB_NAME}"


def _build_engine(url: str) -> Engine:
    connect_args = {}
    if url.startswith("sqlite"):
        # Concurrent runs for different users share one file
        connect_args["timeout"] = SQLITE_BUSY_TIMEOUT_SECONDS
    return create_engine(url, connect_args=connect_args)


def _bind(engine: Engine) -> None:
    global _engine, _make_session
    _engine = engine
    _make_session = sessionmaker(bind=engine, expire_on_commit=False)


def get_engine() -> Engine:
    """Return the shared engine, building it on first call."""
    if _engine is None:
        url = database_url()
        logger.info(f"Opening relevance store at {url}")
        _bind(_build_engine(url))
    return _engine


def set_engine(engine: Engine) -> None:
    _bind(engine)


def reset_engine() -> None:
    """Dispose of the shared engine so the next call rebuilds it."""
    global _engine, _make_session
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _make_session = None


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """One transaction per ``with`` block.

    Commits on a clean exit. Store failures roll back and surface as
    PersistenceError; any other exception rolls back and propagates unchanged.
    """
    get_engine()
    session = _make_session()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Store transaction rolled back: {e}")
        raise PersistenceError(str(e)) from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
