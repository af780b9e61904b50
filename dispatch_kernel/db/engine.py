"""
Module: dispatch_kernel.db.engine
Responsibility: SQLAlchemy engine initialization, session factory management,
    and transactional scope utilities.  Single point of database connection
    configuration for the kernel, the orchestrator and the CLI.
Architecture position: Kernel > DB.  May import from db/base.py and
    db/immutability.py.  MUST NOT import from services/, selectors/, or outer
    layers (create_tables imports models/ lazily to register their tables).

Invariants enforced:
    - PostgreSQL runs at READ COMMITTED with explicit row locks
      (SELECT ... FOR UPDATE) on stock rows during reservation.
    - SQLite (tests, local runs) opens every transaction with BEGIN
      IMMEDIATE and a busy timeout, so concurrent writers queue instead of
      failing; row-lock clauses are ignored there.
    - Immutability listeners are registered whenever an engine is built.

Failure modes:
    - RuntimeError if get_engine/get_session/get_session_factory is called
      before init_engine_from_url().
"""

import atexit
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from dispatch_kernel.db.immutability import register_immutability_listeners
from dispatch_kernel.logging_config import get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None


def build_engine(
    database_url: str,
    echo: bool = False,
    pool_size: int = 10,
    max_overflow: int = 10,
    pool_pre_ping: bool = True,
    pool_timeout: int = 30,
    sqlite_busy_timeout: float = 30.0,
) -> Engine:
    """
    Create an engine for ``database_url`` without touching module state.

    Tests use this directly so that each test owns an isolated database.

    Args:
        database_url: SQLAlchemy URL (postgresql+psycopg://..., sqlite:///path).
        echo: If True, log all SQL statements.
        pool_size: Connections kept in the pool (PostgreSQL only).
        max_overflow: Connections beyond pool_size (PostgreSQL only).
        pool_pre_ping: Test connections before use.
        pool_timeout: Seconds to wait for a pooled connection.
        sqlite_busy_timeout: Seconds a SQLite writer waits for the write lock.

    Returns:
        SQLAlchemy Engine instance.
    """
    register_immutability_listeners()
    url = make_url(database_url)

    if url.get_backend_name() == "sqlite":
        if url.database in (None, "", ":memory:"):
            engine = create_engine(
                url,
                echo=echo,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        else:
            engine = create_engine(
                url,
                echo=echo,
                connect_args={
                    "check_same_thread": False,
                    "timeout": sqlite_busy_timeout,
                },
            )
        _serialize_sqlite_writers(engine)
    else:
        engine = create_engine(
            url,
            echo=echo,
            poolclass=QueuePool,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=pool_pre_ping,
            pool_timeout=pool_timeout,
            isolation_level="READ COMMITTED",
        )

    logger.info(
        "engine_built",
        extra={"dialect": engine.dialect.name, "echo": echo},
    )
    return engine


def _serialize_sqlite_writers(engine: Engine) -> None:
    """
    Take SQLite's write lock when each transaction begins.

    pysqlite defers BEGIN until the first DML statement, so two sessions
    can both read and then deadlock upgrading to the write lock.  Issuing
    BEGIN IMMEDIATE makes the second session wait on the busy timeout
    instead, and then read the first session's committed state.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Session factory bound to ``engine``; objects survive commit."""
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_engine_from_url(database_url: str, **kwargs) -> Engine:
    """
    Initialize the module-level engine and session factory.

    Idempotent -- a second call replaces the first.
    """
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
    _engine = build_engine(database_url, **kwargs)
    _SessionFactory = make_session_factory(_engine)
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


def get_session() -> Session:
    """
    Get a new session instance.

    Raises:
        RuntimeError: If engine has not been initialized.
    """
    return get_session_factory()()


def get_session_factory() -> sessionmaker[Session]:
    """
    Get the session factory.  Each thread should create its own session.

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

    Commits on normal exit; rolls back and re-raises on exception.

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
        logger.debug("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables(engine: Engine | None = None) -> None:
    """
    Create every table defined by dispatch_kernel.models.

    Args:
        engine: Engine to use; defaults to the module-level engine.
    """
    from dispatch_kernel.db.base import Base
    import dispatch_kernel.models  # noqa: F401  registers all tables

    target = engine or get_engine()
    Base.metadata.create_all(target)
    logger.info("tables_created", extra={"table_count": len(Base.metadata.tables)})


def drop_tables(engine: Engine | None = None) -> None:
    """Drop all tables. Use with caution - primarily for testing."""
    from dispatch_kernel.db.base import Base
    import dispatch_kernel.models  # noqa: F401

    Base.metadata.drop_all(engine or get_engine())


def reset_engine() -> None:
    """Dispose the module-level engine and forget the session factory."""
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
        _engine = None
    _SessionFactory = None


atexit.register(reset_engine)


def is_postgres(engine: Engine | None = None) -> bool:
    """Check whether the given (or module-level) engine is PostgreSQL."""
    target = engine or _engine
    return target is not None and target.dialect.name == "postgresql"
