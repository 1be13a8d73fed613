# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# DESIGN DECISION: Async SQLAlchemy Engine
# The query pipeline is async end-to-end, so the SQL record store uses
# SQLAlchemy's async engine with the asyncpg driver. Every query is awaited
# and never blocks the event loop.
#
# DESIGN DECISION: Lazy initialization.
# The SQL backend is one of three record store backends. Creating the
# engine at import time would require asyncpg (and a reachable database)
# even when the in-memory or Elasticsearch store is configured. The engine
# is built on first use and cached.
#
# SESSION LIFECYCLE:
#   1. The store opens a session per operation via session_scope()
#   2. Session commits on exit
#   3. On exception, the transaction is rolled back and the error re-raised
# =============================================================================

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from loan_rag.config import settings

_async_engine: AsyncEngine | None = None


def build_async_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for `database_url`.

    SQLite engines keep the dialect's default pool (in-memory databases
    use a static pool that takes no sizing arguments).
    """
    if make_url(database_url).get_backend_name() == "sqlite":
        return create_async_engine(database_url, echo=echo)
    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=5,
        max_overflow=10,
    )


def get_async_engine() -> AsyncEngine:
    """Lazily create and cache the engine for the global settings."""
    global _async_engine
    if _async_engine is None:
        _async_engine = build_async_engine(settings.database_url, echo=settings.debug)
    return _async_engine


def create_session_factory(
    engine: AsyncEngine,
) -> async_sessionmaker[AsyncSession]:
    """
    Build a session factory bound to `engine`.

    expire_on_commit=False: loaded rows stay readable after commit, which
    the store needs when converting rows to LoanRecord after a write.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Provide a transactional session: commit on success, rollback on error."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
