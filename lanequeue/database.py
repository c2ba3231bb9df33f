"""Engine and session helpers.

SQLite is used for local development and tests; a ``postgres://`` URL
switches to PostgreSQL through psycopg2.  Each unit of work opens its own
session and closes it right away, so no connection is shared between
concurrent requests.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine

from . import models  # noqa: F401  (registers the tables on SQLModel.metadata)
from .errors import Internal

logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT_SECONDS = 30


def normalize_database_url(database_url: str) -> str:
    """Turn a bare file path or a Heroku/Railway style URL into a SQLAlchemy URL."""
    if database_url.startswith("postgres://"):
        return "postgresql://" + database_url[len("postgres://"):]
    if "://" not in database_url:
        return f"sqlite:///{database_url}"
    return database_url


def _sqlite_on_connect(dbapi_connection, connection_record) -> None:
    cur = dbapi_connection.cursor()
    cur.execute("PRAGMA foreign_keys = ON")
    cur.execute("PRAGMA journal_mode = WAL")
    cur.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_SECONDS * 1000}")
    cur.close()


def create_db_engine(database_url: str, *, echo: bool = False) -> Engine:
    url = normalize_database_url(database_url)
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS},
        )
        event.listen(engine, "connect", _sqlite_on_connect)
    else:
        engine = create_engine(url, echo=echo, pool_pre_ping=True)
    return engine


def init_db(engine: Engine) -> None:
    """Create tables if they do not exist."""
    SQLModel.metadata.create_all(engine)


@contextmanager
def session_scope(engine: Engine) -> Iterator[Session]:
    """Session for one unit of work.

    Storage failures that escape the block are rolled back and re-raised as
    :class:`~lanequeue.errors.Internal`; domain errors pass through untouched.
    """
    session = Session(engine)
    try:
        yield session
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error("Storage failure: %s", exc)
        raise Internal("Storage failure") from exc
    finally:
        session.close()
