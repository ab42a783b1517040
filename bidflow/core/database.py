"""
Ledger Store
============

Owns the async engine and session factory for the service. A single
``LedgerStore`` is constructed at the entry point and handed to every engine
that needs persistence. ``bidflow.main`` builds the default application at
import, so importing it creates the store (the engine connects lazily on
first use); ``create_app`` reuses a store passed in instead. Services never
build one themselves.

All mutations run inside ``LedgerStore.transaction()``, which yields a
``TransactionScope``. The scope commits on normal exit unless it was
aborted with a ``DomainError``, and always rolls back on an exception.
Callables registered with ``TransactionScope.after_commit`` run once the
commit has succeeded, outside the transaction.

Usage::

    store = LedgerStore.from_settings(settings)
    async with store.transaction() as tx:
        job = await tx.session.get(Job, job_id)
        ...
        if job is None:
            return tx.abort(DomainError.not_found("Job not found"))
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from bidflow.core.config import Settings
from bidflow.core.result import DomainError, Result

logger = logging.getLogger(__name__)

AfterCommitHook = Callable[[], Awaitable[Any]]


class TransactionScope:
    """One unit of work against the ledger store."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.error: DomainError | None = None
        self._after_commit: list[AfterCommitHook] = []

    @property
    def aborted(self) -> bool:
        return self.error is not None

    def abort(self, error: DomainError) -> Result[Any]:
        """Mark the scope for rollback and return the failure result."""
        self.error = error
        return Result.failure(error)

    def after_commit(self, hook: AfterCommitHook) -> None:
        self._after_commit.append(hook)

    async def _run_after_commit(self) -> None:
        for hook in self._after_commit:
            try:
                await hook()
            except Exception:
                # Hooks are side effects of an already committed change.
                logger.exception("After-commit hook %r failed", hook)


class LedgerStore:
    """Transactional handle over the relational database."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self._session_factory = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> LedgerStore:
        options: dict[str, Any] = {"echo": settings.sql_echo}
        if not settings.database_url.startswith("sqlite"):
            options.update(
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_pre_ping=True,
            )
        return cls(create_async_engine(settings.database_url, **options))

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Read-only session; nothing is committed."""
        async with self._session_factory() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[TransactionScope]:
        committed = False
        async with self._session_factory() as session:
            scope = TransactionScope(session)
            try:
                yield scope
                if scope.aborted:
                    await session.rollback()
                    logger.debug(
                        "Transaction rolled back: %s (%s)",
                        scope.error.message,
                        scope.error.kind.value,
                    )
                else:
                    await session.commit()
                    committed = True
            except BaseException:
                await session.rollback()
                raise
        if committed:
            await scope._run_after_commit()

    async def dispose(self) -> None:
        await self.engine.dispose()
