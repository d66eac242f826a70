"""
Inkwell Backend: Database Session Management
============================================

What:  Async SQLAlchemy engine, session factory, and transaction scope.
How:   Creates an async engine with connection pooling and exposes
       `transaction()`, an async context manager that commits on success,
       rolls back on error, and runs post-commit hooks only after the commit
       has returned.
Who:   Used by AssetLifecycle (one transaction per lifecycle operation) and
       by the health check.
When:  Engine is created at module import; transactions are opened per
       operation, never per request.

Post-commit hooks:
    Side effects that must not happen for a rolled-back write (enqueueing an
    OCR job, deleting a blob) are registered with `scope.after_commit(fn)`.

        async with transaction() as scope:
            ...write through scope.session...
            scope.after_commit(lambda: pool.submit(job))
        # hook has run here, and only if COMMIT succeeded

    A hook that raises is logged and the remaining hooks still run; the
    committed data is never affected by hook failures.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, List, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from inkwell.config import settings

logger = logging.getLogger(__name__)


# ── Engine Configuration ──────────────────────────────────────────────────
def build_engine(database_url: str) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    Pool sizing applies to server databases only. SQLite (used by the test
    suite through aiosqlite) picks its own pool class per URL.
    """
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        return create_async_engine(database_url, echo=settings.log_level == "DEBUG")

    return create_async_engine(
        database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=settings.db_pool_pre_ping,
        pool_recycle=3600,
        echo=settings.log_level == "DEBUG",
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False: snapshots are built from ORM objects after commit
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.database_url)
async_session_factory = build_session_factory(engine)


# ── Base Model ────────────────────────────────────────────────────────────
class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy ORM models.

    Shares one metadata object, which Alembic reads for autogenerate.
    """
    pass


# ── Transaction Scope ─────────────────────────────────────────────────────
class TransactionScope:
    """
    A session plus the hooks to run once its transaction has committed.

    Attributes:
        session: The AsyncSession all reads and writes of the operation use.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self._after_commit: List[Callable[[], None]] = []

    def after_commit(self, hook: Callable[[], None]) -> None:
        """Register a synchronous hook to run after a successful commit."""
        self._after_commit.append(hook)

    def discard_hooks(self) -> None:
        self._after_commit.clear()

    def run_after_commit(self) -> None:
        hooks, self._after_commit = self._after_commit, []
        for hook in hooks:
            try:
                hook()
            except Exception:
                logger.exception("Post-commit hook %r failed", hook)


@asynccontextmanager
async def transaction(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncIterator[TransactionScope]:
    """
    Open a session, yield a TransactionScope, and commit on clean exit.

    How it works:
        1. Creates a new session from the factory
        2. Yields the scope to the caller, which performs queries
        3. On success: commits, closes the session, then runs the hooks
        4. On error (including a failed COMMIT): rolls back, drops the
           hooks and re-raises
    """
    factory = session_factory or async_session_factory
    async with factory() as session:
        scope = TransactionScope(session)
        try:
            yield scope
            await session.commit()
        except Exception:
            await session.rollback()
            scope.discard_hooks()
            raise
    scope.run_after_commit()


# ── Lifecycle Helpers ─────────────────────────────────────────────────────
async def dispose_engine(bind: Optional[AsyncEngine] = None) -> None:
    """
    What:  Gracefully closes all connections in the pool.
    When:  Called during application shutdown (lifespan handler).
    """
    await (bind or engine).dispose()
