"""
NoteX Backend — Database Session Management
=============================================

What:  Async SQLAlchemy engine, session factory, transaction scope and the
       FastAPI session dependency.
Why:   Every ledger operation (credits, wallet, referrals, webhook
       reconciliation) relies on "one request = one transaction": all of its
       statements commit together or roll back together.
How:   `session_scope()` opens a session, commits when the block exits cleanly
       and rolls back on any exception. `get_db_session()` wraps it for
       FastAPI's Depends().
Who:   Routes via Depends(get_db_session); tests via session_scope(factory).

Connection Pooling Strategy (PostgreSQL):
    pool_size=20, max_overflow=10, pool_pre_ping, pool_recycle=3600.
    SQLite URLs (tests, local experiments) use the driver's default pool.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from notex.config import settings


def _engine_options() -> Dict[str, Any]:
    options: Dict[str, Any] = {"echo": settings.log_level == "DEBUG"}
    if not settings.is_sqlite:
        options.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=settings.db_pool_pre_ping,
            pool_recycle=3600,
        )
    return options


# ── Engine Configuration ──────────────────────────────────────────────────
engine = create_async_engine(settings.database_url, **_engine_options())

# ── Session Factory ───────────────────────────────────────────────────────
# expire_on_commit=False: ORM objects stay readable after the request commits
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Base class for all NoteX ORM models (shared metadata for Alembic)."""
    pass


def utcnow() -> datetime:
    """Timezone-aware current UTC time; every stored timestamp uses it."""
    return datetime.now(timezone.utc)


# ── Transaction Scope ─────────────────────────────────────────────────────
@asynccontextmanager
async def session_scope(
    factory: Optional[async_sessionmaker] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a session whose work commits or rolls back as a unit.

    How it works:
        1. Creates a new session from the factory
        2. Yields it to the caller
        3. On success: commits the transaction
        4. On error: rolls back and re-raises
        5. Always: closes the session (returns connection to pool)

    Ledger operations never commit on their own; they rely on this scope so
    a failure half-way through a referral or a webhook leaves no partial
    credit or debit behind.

    Args:
        factory: Session factory to use (tests pass one bound to a temp DB).
    """
    factory = factory or async_session_factory
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ── Session Dependency ────────────────────────────────────────────────────
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that provides a transactional session per request.

    Example usage in a route:
        @router.get("/notes")
        async def list_notes(db: AsyncSession = Depends(get_db_session)):
            ...
    """
    async with session_scope() as session:
        yield session


# ── Lifecycle Helpers ─────────────────────────────────────────────────────
async def dispose_engine() -> None:
    """Close all pooled connections (called on application shutdown)."""
    await engine.dispose()
