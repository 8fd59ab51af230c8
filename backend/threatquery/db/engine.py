"""Database engines, session factory, and base model.

Two engines share one database URL:

- ``engine`` backs the ORM session (users, query history, schema setup);
- ``reader_engine`` runs analyst query text and refuses writes at the
  connection level (``PRAGMA query_only`` on SQLite, read-only default
  transactions on PostgreSQL).

Uses async SQLAlchemy with aiosqlite for local dev and asyncpg for production PostgreSQL.
"""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool, StaticPool

from threatquery.config import settings

_is_sqlite = settings.DATABASE_URL.startswith("sqlite")
_is_memory = _is_sqlite and ":memory:" in settings.DATABASE_URL


def _make_engine(read_only: bool = False) -> AsyncEngine:
    kwargs: dict = dict(echo=settings.DEBUG, future=True)

    if _is_sqlite:
        kwargs["connect_args"] = {"timeout": 60, "check_same_thread": False}
        # one connection per session; an in-memory database lives on a single one
        kwargs["poolclass"] = StaticPool if _is_memory else NullPool
    else:
        kwargs["pool_size"] = 5
        kwargs["max_overflow"] = 10
        if read_only:
            kwargs["connect_args"] = {
                "server_settings": {"default_transaction_read_only": "on"}
            }

    new_engine = create_async_engine(settings.DATABASE_URL, **kwargs)

    if _is_sqlite:
        @event.listens_for(new_engine.sync_engine, "connect")
        def _set_sqlite_pragmas(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            if not _is_memory:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=30000")
            if read_only:
                cursor.execute("PRAGMA query_only=ON")
            cursor.close()

    return new_engine


engine = _make_engine()
# An in-memory database exists only on its one connection; share it.
reader_engine = engine if _is_memory else _make_engine(read_only=True)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


async def get_db() -> AsyncSession:  # type: ignore[misc]
    """FastAPI dependency that yields an async DB session."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create missing tables (dev / first run). In production use Alembic."""
    from sqlalchemy import inspect as sa_inspect

    from . import models  # noqa: F401

    def _create_missing(sync_conn):
        existing = set(sa_inspect(sync_conn).get_table_names())
        missing = [t for t in Base.metadata.sorted_tables if t.name not in existing]
        Base.metadata.create_all(sync_conn, tables=missing)

    async with engine.begin() as conn:
        await conn.run_sync(_create_missing)


async def dispose_db() -> None:
    """Dispose of both engines on shutdown."""
    await engine.dispose()
    if reader_engine is not engine:
        await reader_engine.dispose()
