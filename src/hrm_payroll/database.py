"""Database connection and session management."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import event, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from hrm_payroll.config import get_settings
from hrm_payroll.models.base import Base

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

# PostgreSQL SQLSTATE for lock_not_available
PG_LOCK_NOT_AVAILABLE = "55P03"


def _install_sqlite_write_lock(engine: AsyncEngine) -> None:
    """Make every SQLite transaction start with BEGIN IMMEDIATE.

    SQLite has no row locks; taking the database write lock at BEGIN is the
    closest equivalent of SELECT ... FOR UPDATE and serializes competing
    transitions the same way.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # noqa: ARG001
        # disable the driver's own BEGIN so ours is the only one emitted
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_for_url(database_url: str, **engine_kwargs) -> AsyncEngine:
    """Create async database engine."""
    if database_url.startswith("sqlite"):
        engine = create_async_engine(database_url, echo=False, **engine_kwargs)
        _install_sqlite_write_lock(engine)
        return engine

    return create_async_engine(
        database_url,
        echo=False,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        **engine_kwargs,
    )


def get_engine() -> AsyncEngine:
    """Create async database engine from settings."""
    return create_engine_for_url(get_settings().database_url)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build the session factory used by services and request handlers."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# Global engine and session factory
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_db() -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Initialize database engine and session factory."""
    global _engine, _session_factory
    if _engine is None:
        _engine = get_engine()
        _session_factory = create_session_factory(_engine)
    return _engine, _session_factory


async def dispose_db() -> None:
    """Dispose the global engine, if one was created."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables known to the ORM metadata."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def set_lock_timeout(session: AsyncSession, timeout_ms: int) -> None:
    """Bound how long the current transaction may wait for row locks.

    Only PostgreSQL honours this; SQLite waits up to the driver's busy
    timeout instead.
    """
    if session.get_bind().dialect.name != "postgresql":
        return
    await session.execute(text(f"SET LOCAL lock_timeout = '{int(timeout_ms)}ms'"))


def dialect_insert(session: AsyncSession):
    """Return the dialect-specific insert construct supporting ON CONFLICT."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"ON CONFLICT inserts are not supported on {dialect}")


def is_lock_timeout(exc: BaseException) -> bool:
    """Return True if a driver error means a lock wait expired."""
    if not isinstance(exc, DBAPIError):
        return False
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate == PG_LOCK_NOT_AVAILABLE:
        return True
    return "database is locked" in str(orig).lower()
