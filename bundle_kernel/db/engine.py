"""
Module: bundle_kernel.db.engine
Responsibility: SQLAlchemy engine construction and schema creation.  Single
    point of database connection configuration for the pipeline; callers
    own their engine and build session factories from it.
Architecture position: Kernel > DB.  May import from db/base.py.  MUST NOT
    import from services/ or outer layers (create_tables imports models
    lazily so Base.metadata is populated).

Supported backends:
    - SQLite (file databases): WAL journal and a busy timeout are applied on
      every new connection so concurrent writers queue instead of failing
      immediately.  In-memory URLs share one connection via StaticPool and
      are only suitable for single-threaded use.
    - PostgreSQL: QueuePool with pre-ping, READ COMMITTED isolation.
"""

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.pool import QueuePool, StaticPool

from bundle_kernel.logging_config import get_logger

logger = get_logger("db.engine")


def _is_memory_sqlite(database_url: str) -> bool:
    url = make_url(database_url)
    return url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:")


def build_engine(
    database_url: str,
    echo: bool = False,
    busy_timeout_seconds: float = 30.0,
    pool_size: int = 20,
    max_overflow: int = 10,
) -> Engine:
    """
    Build an engine for ``database_url``.

    Args:
        database_url: SQLAlchemy URL (sqlite:///path.db or postgresql://...).
        echo: If True, log all SQL statements.
        busy_timeout_seconds: SQLite only; how long a writer waits for a lock.
        pool_size: PostgreSQL only; connections kept in the pool.
        max_overflow: PostgreSQL only; connections allowed beyond pool_size.
    """
    backend = make_url(database_url).get_backend_name()

    if backend == "sqlite":
        if _is_memory_sqlite(database_url):
            engine = create_engine(
                database_url,
                echo=echo,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        else:
            engine = create_engine(
                database_url,
                echo=echo,
                connect_args={
                    "check_same_thread": False,
                    "timeout": busy_timeout_seconds,
                },
            )
        busy_timeout_ms = int(busy_timeout_seconds * 1000)

        @event.listens_for(engine, "connect")
        def _apply_sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute(f"PRAGMA busy_timeout={busy_timeout_ms}")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    else:
        engine = create_engine(
            database_url,
            echo=echo,
            poolclass=QueuePool,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=True,
            isolation_level="READ COMMITTED",
        )

    logger.info(
        "engine_built",
        extra={"dialect": engine.dialect.name, "echo": echo},
    )
    return engine


def create_tables(engine: Engine) -> None:
    """Create every table registered on Base.metadata."""
    from bundle_kernel.db.base import Base
    from bundle_kernel.models import bundle  # noqa: F401  registers tables

    Base.metadata.create_all(engine)
    logger.info("tables_created", extra={"tables": sorted(Base.metadata.tables)})
