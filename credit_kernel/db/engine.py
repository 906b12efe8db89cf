"""
Module: credit_kernel.db.engine
Responsibility: Build SQLAlchemy engines for the ledger, hold the optional
    process-wide engine, and provide the commit-or-rollback session scope.
Architecture position: Kernel > DB.  May import from db/base.py.  MUST NOT
    import from services/, selectors/ or outer layers (create_tables imports
    models lazily so that Base.metadata is populated).

Backends:
    - PostgreSQL (production): READ COMMITTED with explicit row locks
      (SELECT ... FOR UPDATE) around the account read-modify-write.
    - SQLite (tests, embedded): every transaction opens with BEGIN IMMEDIATE
      so concurrent writers queue on the busy timeout instead of failing
      on a lock upgrade.  Row locks are a no-op there; the in-process
      account lock registry serialises per-account critical sections.

Most callers build their own engine with ``build_engine`` and hand a
``sessionmaker`` to the LedgerEngine.  ``init_engine_from_url`` installs a
process-wide default for scripts that prefer ``get_session()``.
"""

import atexit
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from credit_kernel.logging_config import get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_factory: sessionmaker[Session] | None = None


# =============================================================================
# Engine construction
# =============================================================================


def build_engine(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_pre_ping: bool = True,
    pool_timeout: int = 30,
    busy_timeout: float = 30.0,
) -> Engine:
    """
    Create an Engine for ``database_url`` without touching module state.

    SQLite URLs get the immediate-transaction hooks; pool settings apply to
    every other backend, which runs a pre-pinged QueuePool at READ COMMITTED.
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": busy_timeout},
        )
        _install_sqlite_hooks(engine)
        return engine

    return create_engine(
        database_url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=pool_pre_ping,
        pool_timeout=pool_timeout,
        isolation_level="READ COMMITTED",
    )


def _install_sqlite_hooks(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def is_postgres(engine: Engine | None = None) -> bool:
    target = engine or _engine
    return target is not None and target.dialect.name == "postgresql"


# =============================================================================
# Process-wide default engine
# =============================================================================


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_pre_ping: bool = True,
    pool_timeout: int = 30,
) -> Engine:
    """Install the process-wide engine.  A second call replaces the first."""
    global _engine, _factory

    reset_engine()
    _engine = build_engine(
        database_url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=pool_pre_ping,
        pool_timeout=pool_timeout,
    )
    _factory = sessionmaker(bind=_engine, expire_on_commit=False)
    logger.info(
        "engine_initialized",
        extra={"dialect": _engine.dialect.name, "pool_size": pool_size, "echo": echo},
    )
    return _engine


def _require_initialized() -> sessionmaker[Session]:
    if _factory is None:
        raise RuntimeError("No ledger database engine; call init_engine_from_url() first")
    return _factory


def get_engine() -> Engine:
    _require_initialized()
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """The process-wide factory.  Each worker thread opens its own session."""
    return _require_initialized()


def get_session() -> Session:
    return _require_initialized()()


def reset_engine() -> None:
    """Dispose the process-wide engine, if any."""
    global _engine, _factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _factory = None


atexit.register(reset_engine)


# =============================================================================
# Sessions and schema
# =============================================================================


@contextmanager
def session_scope(factory: sessionmaker[Session] | None = None) -> Iterator[Session]:
    """
    Commit on normal exit, roll back and re-raise on error, always close.

    Uses ``factory`` when given, else the process-wide factory.
    """
    session = factory() if factory is not None else get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.debug("session_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def _metadata():
    from credit_kernel.db.base import Base
    import credit_kernel.models  # noqa: F401  (registers every table)

    return Base.metadata


def create_tables(engine: Engine | None = None) -> None:
    _metadata().create_all(engine or get_engine())


def drop_tables(engine: Engine | None = None) -> None:
    """Drop every ledger table.  Tests and throwaway databases only."""
    _metadata().drop_all(engine or get_engine())
