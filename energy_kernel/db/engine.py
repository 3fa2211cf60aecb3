"""
Module: energy_kernel.db.engine
Responsibility: Engine and session construction for the SQL ledger store,
    plus the unit-of-work helper its operations run in.
Architecture position: Kernel > DB. May import db/base.py and models/.

Invariants enforced:
    - No module-level engine. Callers build one and hand the session
      factory to ``SqlLedgerStore``.
    - ``session_scope`` commits on clean exit and rolls back on any
      exception, which then propagates.

Failure modes:
    - sqlalchemy.exc.ArgumentError for a malformed URL.
    - OperationalError when the database is unreachable on first use.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

from energy_kernel.logging_config import get_logger

logger = get_logger("db.engine")

# Server databases only; SQLite keeps SQLAlchemy's own pool choice.
DEFAULT_POOL_OPTIONS: dict[str, Any] = {
    "pool_size": 10,
    "max_overflow": 10,
    "pool_pre_ping": True,
    "pool_recycle": 1800,
}


def create_ledger_engine(database_url: str, echo: bool = False, **pool_options: Any) -> Engine:
    """
    Engine for the ledger database.

    SQLite connections may be shared with the coordinator's write threads,
    so ``check_same_thread`` is disabled for them.
    """
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        engine = create_engine(url, echo=echo, connect_args={"check_same_thread": False})
    else:
        engine = create_engine(url, echo=echo, **{**DEFAULT_POOL_OPTIONS, **pool_options})

    logger.info("ledger_engine_created", extra={
        "dialect": engine.dialect.name,
        "database": url.database,
    })
    return engine


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Sessions keep loaded rows readable after commit."""
    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Iterator[Session]:
    """One unit of work: commit on success, roll back and re-raise on failure."""
    with factory() as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise


def create_tables(engine: Engine) -> None:
    """Create the ledger tables if they do not exist."""
    from energy_kernel.db.base import Base
    from energy_kernel.models import ledger_item  # noqa: F401

    Base.metadata.create_all(engine)
