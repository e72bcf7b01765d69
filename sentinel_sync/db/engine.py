"""Database engine, session factory, and base model.

Uses async SQLAlchemy with aiosqlite for local dev and asyncpg for production
PostgreSQL. Engines are built by ``create_engine_for`` so that entry points
and tests can construct their own storage handle. The module-level engine
serves the API process.
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

from sentinel_sync.config import settings


def _is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (":memory:" in url or url.endswith("://"))


def create_engine_for(url: str, echo: bool = False) -> AsyncEngine:
    """Build an async engine with the pool and pragmas suited to *url*."""
    is_sqlite = url.startswith("sqlite")
    engine_kwargs: dict = dict(echo=echo, future=True)

    if is_sqlite:
        engine_kwargs["connect_args"] = {"timeout": 60, "check_same_thread": False}
        if _is_memory_sqlite(url):
            # One shared connection, otherwise every session sees an empty database.
            engine_kwargs["poolclass"] = StaticPool
        else:
            # NullPool: each session gets its own connection.
            # Combined with WAL mode, this allows concurrent reads while a write is in progress.
            engine_kwargs["poolclass"] = NullPool
    else:
        engine_kwargs["pool_size"] = 5
        engine_kwargs["max_overflow"] = 10

    engine = create_async_engine(url, **engine_kwargs)

    if is_sqlite:
        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragmas(dbapi_conn, connection_record):
            """Enable WAL mode, foreign keys and a busy-timeout for SQLite connections."""
            cursor = dbapi_conn.cursor()
            if not _is_memory_sqlite(url):
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


engine = create_engine_for(settings.DATABASE_URL, echo=settings.DEBUG)
async_session_factory = create_session_factory(engine)


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """FastAPI dependency returning the session factory engine components need."""
    return async_session_factory


async def get_db() -> AsyncSession:  # type: ignore[misc]
    """FastAPI dependency that yields an async DB session."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db(target: AsyncEngine | None = None) -> None:
    """Create all tables (for dev / first-run). In production use Alembic."""
    from sqlalchemy import inspect as sa_inspect

    # Register models on Base.metadata
    from sentinel_sync.db import models  # noqa: F401

    async with (target or engine).begin() as conn:
        # Only create tables that don't already exist (safe alongside Alembic)
        def _create_missing(sync_conn):
            inspector = sa_inspect(sync_conn)
            existing = set(inspector.get_table_names())
            tables_to_create = [
                t for t in Base.metadata.sorted_tables
                if t.name not in existing
            ]
            Base.metadata.create_all(sync_conn, tables=tables_to_create)

        await conn.run_sync(_create_missing)


async def dispose_db(target: AsyncEngine | None = None) -> None:
    """Dispose of the engine on shutdown."""
    await (target or engine).dispose()
