"""
Module: migration_kernel.db.engine
Responsibility: Build engines and session factories for the migration
    database, create its tables, and provide the transactional scope every
    store uses.
Architecture position: Kernel > DB.  The model modules live in the outer
    layers, so ``import_all_orm_models`` imports them inside the function.

No process-wide engine is kept.  A MigrationService owns its engine and
session factory; the job store, staging store and SQL destination each open
short sessions from that factory, one per unit of work.

Invariants enforced:
    - PostgreSQL runs at READ COMMITTED with a pre-pinged pool sized for the
      importer's worker threads.
    - ``sqlite://`` (memory) shares one connection across threads; a SQLite
      file gives each thread its own connection and waits on the file lock.
Failure modes:
    - OperationalError on deadlock during table creation is retried up to
      3 times; anything else propagates.
"""

import time
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from migration_kernel.logging_config import get_logger

logger = get_logger("db.engine")

CREATE_TABLES_ATTEMPTS = 3


def create_migration_engine(
    database_url: str,
    *,
    echo: bool = False,
    pool_size: int = 10,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    sqlite_busy_timeout: float = 30.0,
) -> Engine:
    """
    Engine for the job, staging and destination tables.

    ``pool_size`` should be at least the importer's ``max_concurrency`` plus
    one for the coordinating thread.
    """
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
                connect_args={"check_same_thread": False, "timeout": sqlite_busy_timeout},
            )
    else:
        engine = create_engine(
            url,
            echo=echo,
            poolclass=QueuePool,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=True,
            pool_timeout=pool_timeout,
            isolation_level="READ COMMITTED",
        )
    logger.info(
        "engine_created",
        extra={
            "backend": url.get_backend_name(),
            "database": url.database,
            "pool_size": pool_size,
        },
    )
    return engine


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    # Stores hand DTOs out after commit; expiring would force a reload.
    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Commit on normal exit; roll back and re-raise on exception."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.debug("session_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def import_all_orm_models() -> None:
    """Import every model module so Base.metadata knows all tables."""
    import migration_batch.models  # noqa: F401
    import migration_ingestion.models  # noqa: F401
    import migration_jobs.models  # noqa: F401


def create_tables(engine: Engine) -> None:
    from migration_kernel.db.base import Base

    import_all_orm_models()
    for attempt in range(1, CREATE_TABLES_ATTEMPTS + 1):
        try:
            Base.metadata.create_all(engine)
            return
        except OperationalError as exc:
            if "deadlock" not in str(exc).lower() or attempt == CREATE_TABLES_ATTEMPTS:
                raise
            logger.warning(
                "create_tables_deadlock_retry",
                extra={"attempt": attempt, "max_attempts": CREATE_TABLES_ATTEMPTS},
            )
            engine.dispose()
            time.sleep(0.5 * attempt)


def drop_tables(engine: Engine) -> None:
    """Drop every migration table.  Test and dry-run cleanup only."""
    from migration_kernel.db.base import Base

    import_all_orm_models()
    Base.metadata.drop_all(engine)
