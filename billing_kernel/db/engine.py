"""
Engine and session plumbing for the billing database.

PostgreSQL is the production backend.  It runs at READ COMMITTED, and the
module services take ``SELECT ... FOR UPDATE`` row locks wherever two
checkouts or callbacks could race.  SQLite is used by the test suite and
for local runs.  It cannot lock rows, so every SQLite transaction opens
with ``BEGIN IMMEDIATE`` and holds the database write lock.  Savepoints
then nest the way they do on PostgreSQL.

Sessions are created with ``expire_on_commit=False``.  The reconciliation
service commits in the middle of a settlement and keeps reading the rows
it already holds.

Calling ``get_engine``, ``get_session`` or ``get_session_factory`` before
``init_engine_from_url`` raises RuntimeError.
"""

import atexit
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from billing_kernel.db.immutability import register_immutability_listeners
from billing_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def _sqlite_engine(url: str, echo: bool, busy_timeout_s: float) -> Engine:
    kwargs = {}
    if url in _MEMORY_URLS:
        # a second pooled connection would open a second, empty database
        kwargs["poolclass"] = StaticPool
    engine = create_engine(
        url,
        echo=echo,
        connect_args={"check_same_thread": False, "timeout": busy_timeout_s},
        **kwargs,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # pysqlite never opens a transaction for SELECT or SAVEPOINT
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def _postgres_engine(
    url: str,
    echo: bool,
    pool_size: int,
    max_overflow: int,
    pool_timeout: int,
    pool_recycle: int,
    statement_timeout_ms: int | None,
) -> Engine:
    connect_args = {}
    if statement_timeout_ms is not None:
        connect_args["options"] = f"-c statement_timeout={statement_timeout_ms}"
    return create_engine(
        url,
        echo=echo,
        poolclass=QueuePool,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        isolation_level="READ COMMITTED",
        connect_args=connect_args,
    )


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    statement_timeout_ms: int | None = 15000,
) -> Engine:
    """
    Create the process-wide engine and session factory.

    ``statement_timeout_ms`` is PostgreSQL's ``statement_timeout``; on SQLite
    it becomes the busy timeout a writer waits for the database lock.  Pool
    arguments only apply to PostgreSQL.
    """
    global _engine, _session_factory

    if database_url.startswith("sqlite"):
        _engine = _sqlite_engine(
            database_url, echo, (statement_timeout_ms or 30000) / 1000
        )
    else:
        _engine = _postgres_engine(
            database_url,
            echo,
            pool_size,
            max_overflow,
            pool_timeout,
            pool_recycle,
            statement_timeout_ms,
        )

    _session_factory = sessionmaker(bind=_engine, expire_on_commit=False)
    register_immutability_listeners()

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={"dialect": _engine.dialect.name, "pool_size": pool_size, "echo": echo},
    )
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError("Database engine is not initialized; call init_engine_from_url()")
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """Factory for callers that open one session per thread."""
    if _session_factory is None:
        raise RuntimeError("Database engine is not initialized; call init_engine_from_url()")
    return _session_factory


def get_session() -> Session:
    return get_session_factory()()


@contextmanager
def session_scope() -> Iterator[Session]:
    """
    One unit of work: commit when the block exits normally, roll back and
    re-raise when it raises.  The session is closed either way.
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.warning("session_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables() -> None:
    from billing_kernel.db.base import Base
    from billing_modules._orm_registry import import_all_orm_models

    import_all_orm_models()
    Base.metadata.create_all(get_engine())


def drop_tables() -> None:
    """Drop every billing table.  Test teardown only."""
    from billing_kernel.db.base import Base

    Base.metadata.drop_all(get_engine())


def reset_engine() -> None:
    """Dispose the engine and forget the session factory."""
    global _engine, _session_factory

    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


@atexit.register
def _dispose_at_exit() -> None:
    if _engine is not None:
        _engine.dispose()
