from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, sessionmaker

from config import get_settings
from errors import OperationCancelled
from logs import get_logger
from models import Base

logger = get_logger(__name__)

# Configure SQLAlchemy
SessionLocal = sessionmaker(autoflush=False, expire_on_commit=False)
engine: Optional[Engine] = None

# SQLSTATEs a serializable transaction may fail with under contention
_RETRYABLE_SQLSTATES = {"40001", "40P01"}

# execution option read by the SQLite "begin" hook
SQLITE_BEGIN_OPTION = "sqlite_begin_mode"


def _install_sqlite_hooks(sqlite_engine: Engine) -> None:
    # pysqlite's implicit BEGIN is replaced so the transaction mode can be
    # chosen per transaction; WAL keeps readers from blocking the writer.
    @event.listens_for(sqlite_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(sqlite_engine, "begin")
    def _on_begin(conn):
        mode = conn.get_execution_options().get(SQLITE_BEGIN_OPTION, "DEFERRED")
        conn.exec_driver_sql(f"BEGIN {mode}")


def init_engine(database_url: Optional[str] = None, *, create_schema: bool = False) -> Engine:
    """Create the process engine and bind the session factory to it."""
    global engine
    settings = get_settings()
    url = database_url or settings.database_url
    if url.startswith("sqlite"):
        new_engine = create_engine(
            url,
            connect_args={
                "check_same_thread": False,
                "timeout": settings.db_busy_timeout_seconds,
            },
        )
        _install_sqlite_hooks(new_engine)
    else:
        new_engine = create_engine(url, pool_pre_ping=True)
    if engine is not None:
        engine.dispose()
    engine = new_engine
    SessionLocal.configure(bind=engine)
    if create_schema:
        Base.metadata.create_all(bind=engine)
    logger.info("database_engine_ready", dialect=engine.dialect.name)
    return engine


def get_engine() -> Engine:
    if engine is None:
        return init_engine()
    return engine


# Dependency for getting a database session
def get_db() -> Iterator[Session]:
    get_engine()
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Short unit of work: commits on success, rolls back on any failure."""
    get_engine()
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except BaseException:
        db.rollback()
        raise
    finally:
        db.close()


def begin_serializable(db: Session) -> None:
    """Start the session's transaction at SERIALIZABLE isolation.

    The session must not have a transaction open yet. On SQLite the
    transaction starts with the write lock held (BEGIN IMMEDIATE), so
    concurrent serializable units queue instead of interleaving.
    """
    if db.in_transaction():
        raise RuntimeError("begin_serializable() needs a session with no open transaction")
    bind = db.get_bind()
    if bind.dialect.name == "sqlite":
        db.connection(execution_options={SQLITE_BEGIN_OPTION: "IMMEDIATE"})
    else:
        db.connection(execution_options={"isolation_level": "SERIALIZABLE"})


def is_serialization_failure(exc: DBAPIError) -> bool:
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate in _RETRYABLE_SQLSTATES:
        return True
    return "database is locked" in str(orig or exc).lower()


def ensure_not_cancelled(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled("Client closed request.")
