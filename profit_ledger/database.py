"""
Engine, session factory and transaction scope.

Nothing here is module-level state: callers build a session factory once and
hand it to LedgerService, which lets tests inject an in-memory database.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import Config
from .errors import PersistenceError
from .tables import Base

logger = logging.getLogger(__name__)


def create_db_engine(database_url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    url = database_url or Config.DATABASE_URL
    echo = Config.DATABASE_ECHO if echo is None else echo

    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False, "timeout": 30}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # Single shared connection so every session sees the same database
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, echo=echo, **kwargs)
        event.listen(engine, "connect", _configure_sqlite_connection)
        event.listen(engine, "begin", _begin_immediate)
        return engine

    return create_engine(
        url,
        echo=echo,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=30,
    )


def _configure_sqlite_connection(dbapi_connection, connection_record):
    # Stop pysqlite from deferring BEGIN; _begin_immediate emits it instead
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _begin_immediate(conn):
    # SQLite ignores FOR UPDATE, so take the write lock when the transaction
    # starts. Transactions on one database file then run one at a time.
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_schema(engine: Engine) -> None:
    Base.metadata.create_all(engine)
    logger.info("Ledger schema ready on %s", engine.url.render_as_string(hide_password=True))


@contextmanager
def managed_session(session_factory: sessionmaker) -> Iterator[Session]:
    """One atomic unit of work: commit on success, roll back on any error.

    Database failures are re-raised as PersistenceError so that no driver
    or SQL error escapes the ledger core. Domain errors pass through as-is.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error("Database session error: %s", e)
        raise PersistenceError("Ledger transaction failed") from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
