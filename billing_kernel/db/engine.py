"""
Module: billing_kernel.db.engine
Responsibility: SQLAlchemy engine initialization, session factory management,
    and transactional scope utilities.  Single point of database connection
    configuration for the billing pipeline.
Architecture position: Kernel > DB.  May import from db/base.py.  MUST NOT
    import from services/ or outer packages (create_tables imports models).

Invariants enforced:
    - PostgreSQL is the production backend (READ COMMITTED + conditional
      UPDATEs for optimistic concurrency).  SQLite is accepted for tests and
      local runs; the SQLite engine is configured so SAVEPOINTs behave
      (pysqlite otherwise defers BEGIN and breaks nested transactions).
    - session_scope() gives atomic commit-or-rollback semantics.

Failure modes:
    - RuntimeError if get_engine/get_session_factory is called
      before init_engine_from_url().
"""

import atexit
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from billing_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None


def _enable_sqlite_savepoints(engine: Engine) -> None:
    """Let SQLAlchemy own BEGIN so SAVEPOINT / ROLLBACK TO work on pysqlite."""

    @event.listens_for(engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_sqlite_engine(database_url: str = "sqlite://", echo: bool = False) -> Engine:
    """
    Build a SQLite engine with working SAVEPOINT semantics.

    In-memory URLs share one connection (StaticPool) so every session in the
    process sees the same database, which the multi-threaded tenant runner
    relies on in tests.
    """
    engine = create_engine(
        database_url,
        echo=echo,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool if database_url in ("sqlite://", "sqlite:///:memory:") else None,
    )
    _enable_sqlite_savepoints(engine)
    return engine


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 10,
    max_overflow: int = 5,
    pool_pre_ping: bool = True,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
) -> Engine:
    """
    Initialize the module-level engine and session factory.

    A second call overwrites the first.

    Args:
        database_url: PostgreSQL URL in production, ``sqlite://`` in tests.
        echo: If True, log all SQL statements.
        pool_size: Connections kept in the pool (PostgreSQL only).
        max_overflow: Connections allowed beyond pool_size (PostgreSQL only).
        pool_pre_ping: Test connections before use.
        pool_timeout: Seconds to wait for a pooled connection.
        pool_recycle: Seconds after which a connection is recycled.

    Returns:
        SQLAlchemy Engine instance.
    """
    global _engine, _SessionFactory

    if database_url.startswith("sqlite"):
        _engine = create_sqlite_engine(database_url, echo=echo)
    else:
        _engine = create_engine(
            database_url,
            echo=echo,
            poolclass=QueuePool,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=pool_pre_ping,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
            isolation_level="READ COMMITTED",
        )

    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={"dialect": _engine.dialect.name, "echo": echo},
    )

    return _engine


def get_engine() -> Engine:
    """
    Get the current engine instance.

    Raises:
        RuntimeError: If engine has not been initialized.
    """
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """
    Get the session factory.

    Used by the tenant runner, where each worker thread needs its own session.

    Raises:
        RuntimeError: If engine has not been initialized.
    """
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory


@contextmanager
def session_scope(
    factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """
    Provide a transactional scope around a series of operations.

    On normal exit the session is committed and closed.  On exception it is
    rolled back, closed and the exception re-raised.

    Usage:
        with session_scope() as session:
            session.add(entity)
    """
    session = (factory or get_session_factory())()
    logger.debug("transaction_started")
    try:
        yield session
        session.commit()
        logger.debug("transaction_committed")
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables(engine: Engine | None = None) -> None:
    """
    Create all tables defined in the models.

    All ORM models are imported first so Base.metadata is complete.
    """
    from billing_kernel.db.base import Base
    import billing_kernel.models  # noqa: F401

    Base.metadata.create_all(engine or get_engine())


def reset_engine() -> None:
    """
    Reset the engine and session factory.

    Useful for test cleanup.
    """
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
        _engine = None

    _SessionFactory = None


def _atexit_dispose():
    """Dispose the engine on process exit to release pooled connections."""
    if _engine is not None:
        _engine.dispose()


atexit.register(_atexit_dispose)
