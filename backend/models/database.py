"""
Database connection and session management.

Uses SQLAlchemy async with a local connection pool.

Connection Pool Strategy:
- PostgreSQL (asyncpg): local pool keeps connections open and reusable
- PgBouncer transaction mode (port 6543): NullPool (external pooler manages connections)
- SQLite (aiosqlite, local/test use): a single shared connection via StaticPool
- Sessions are lightweight wrappers that checkout connections from the pool
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional
from urllib.parse import urlparse

from sqlalchemy import JSON
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool, StaticPool

from config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Global singletons - created once, reused until disposed
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def _database_url() -> str:
    """Normalise DATABASE_URL to an async driver URL."""
    db_url = settings.DATABASE_URL
    if db_url.startswith("postgresql://"):
        db_url = db_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif db_url.startswith("sqlite://"):
        db_url = db_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return db_url


def get_engine() -> AsyncEngine:
    """Get the database engine (singleton - created once, reused)."""
    global _engine
    if _engine is None:
        db_url = _database_url()

        if db_url.startswith("sqlite"):
            _engine = create_async_engine(
                db_url,
                echo=False,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
            logger.info("Database engine created for SQLite (StaticPool)")
            return _engine

        parsed_url = urlparse(db_url)
        db_port: int = parsed_url.port or 5432

        # Disable prepared statement cache for pgbouncer compatibility
        connect_args: dict[str, int] = {
            "statement_cache_size": 0,
            "prepared_statement_cache_size": 0,
        }

        if db_port == 6543:
            # Transaction mode: external pooler manages connections
            _engine = create_async_engine(
                db_url,
                echo=False,
                poolclass=NullPool,
                connect_args=connect_args,
            )
            logger.info("Database engine created with NullPool (transaction mode, port %d)", db_port)
        else:
            _engine = create_async_engine(
                db_url,
                echo=False,
                pool_size=5,        # Base connections kept warm
                max_overflow=10,    # Up to 15 total under burst load
                pool_recycle=300,   # Recycle connections every 5 min
                pool_pre_ping=True, # Verify connection is alive before checkout
                connect_args=connect_args,
            )
            logger.info(
                "Database engine created with connection pool (port %d, pool_size=5, max_overflow=10)",
                db_port,
            )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the async session factory (singleton - created once, reused)."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,  # Don't auto-flush, we control when to commit
        )
        logger.info("Session factory created (will reuse pooled connections)")
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Yield an async database session.

    Usage:
        async with get_session() as session:
            result = await session.execute(query)
            await session.commit()  # Explicit commit if needed

    The session is automatically closed when the context exits.
    Any uncommitted changes are rolled back on error.
    """
    factory = get_session_factory()
    session: AsyncSession = factory()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        # This returns the connection to the pool, doesn't close it
        await session.close()


def upsert_insert(session: AsyncSession, model: Any) -> Any:
    """
    Return a dialect-native INSERT for ``model`` supporting ON CONFLICT.

    PostgreSQL in production, SQLite for local runs and tests. Both expose
    ``on_conflict_do_nothing`` / ``on_conflict_do_update`` and ``.excluded``.
    """
    dialect_name = session.get_bind().dialect.name
    if dialect_name == "sqlite":
        return sqlite.insert(model)
    return postgresql.insert(model)


async def init_db() -> None:
    """Create all tables."""
    # Make sure every model is registered on Base.metadata
    import models  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """
    Close the database engine and release all pooled connections.
    Call this on application shutdown.
    """
    global _engine, _session_factory
    if _engine is not None:
        pool_status = get_pool_status()
        logger.info(
            "Closing database pool: %s checked_in, %s checked_out",
            pool_status["checked_in"],
            pool_status["checked_out"],
        )
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database engine disposed, all connections closed")


def dispose_engine() -> None:
    """
    Drop the engine without awaiting connection close.

    Celery tasks run each coroutine on a fresh event loop; pooled asyncpg
    connections are bound to the loop that created them and must not be reused.
    """
    global _engine, _session_factory
    if _engine is not None:
        _engine.sync_engine.dispose(close=False)
        _engine = None
        _session_factory = None


def get_pool_status() -> dict[str, int | str]:
    """Get current connection pool status for monitoring."""
    if _engine is None:
        return {"pool_type": "not_initialized", "pool_size": 0, "checked_in": 0, "checked_out": 0, "overflow": 0}

    pool = _engine.pool
    if isinstance(pool, (NullPool, StaticPool)):
        return {"pool_type": type(pool).__name__, "pool_size": 0, "checked_in": 0, "checked_out": 0, "overflow": 0}

    return {
        "pool_type": type(pool).__name__,
        "pool_size": pool.size(),
        "checked_in": pool.checkedin(),
        "checked_out": pool.checkedout(),
        "overflow": pool.overflow(),
    }
