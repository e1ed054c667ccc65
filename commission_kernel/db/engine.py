"""
Engine and transaction plumbing for the commission ledger.

Production runs on PostgreSQL at READ COMMITTED. Manual intake takes
``SELECT ... FOR UPDATE`` locks on the candidate debts, and settlement writes
are compare-and-set UPDATEs, so nothing here relies on a stronger isolation
level. SQLite is accepted for tests; ``FOR UPDATE`` is dropped there.

Services that own a transaction boundary (intake, decision, card settlement,
collection cycle) receive a session factory and open one
``transaction_scope`` per unit of work. Kernel services below them only
flush.
"""

import atexit
from contextlib import contextmanager
from typing import Callable, Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from commission_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None

_NOT_INITIALIZED = "Ledger database not initialized; call init_engine_from_url() first."


def build_engine(
    database_url: str,
    echo: bool = False,
    pool_size: int = 10,
    max_overflow: int = 5,
) -> Engine:
    """Engine for ``database_url`` without touching module state."""
    if database_url.startswith("sqlite"):
        # Collection tests run worker threads against the same file.
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
        )

    return create_engine(
        database_url,
        echo=echo,
        poolclass=QueuePool,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=1800,
        isolation_level="READ COMMITTED",
    )


def init_engine_from_url(database_url: str, echo: bool = False) -> Engine:
    """
    Initialize the process-wide engine and session factory.

    A second call replaces the first; the previous engine is disposed.
    """
    global _engine, _session_factory

    if _engine is not None:
        _engine.dispose()

    _engine = build_engine(database_url, echo=echo)
    _session_factory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "ledger_engine_initialized",
        extra={"dialect": _engine.dialect.name, "echo": echo},
    )
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    if _session_factory is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _session_factory


@contextmanager
def transaction_scope(session_factory: Callable[[], Session]) -> Iterator[Session]:
    """
    Commit on normal exit, roll back and re-raise on error, always close.

    Usage::

        with transaction_scope(factory) as session:
            DebtLedgerService(session, clock, config).cancel_debt(...)
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.debug("ledger_transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """``transaction_scope`` on the process-wide session factory."""
    with transaction_scope(get_session_factory()) as session:
        yield session


def create_tables(engine: Engine | None = None) -> None:
    """Create every ledger table declared under ``commission_kernel.models``."""
    from commission_kernel.db.base import Base
    import commission_kernel.models  # noqa: F401

    Base.metadata.create_all(engine or get_engine())


@atexit.register
def _dispose_on_exit() -> None:
    if _engine is not None:
        _engine.dispose()
