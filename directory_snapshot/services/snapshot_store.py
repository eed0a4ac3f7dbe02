"""Durable snapshot storage and lazy schema bootstrap."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from directory_snapshot.database import register_sqlite_functions
from directory_snapshot.exceptions import StoreUnavailableError
from directory_snapshot.models.base import Base

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


class SnapshotStore:
    """Owns the engine, the session factory, and the "schema is ready" memo.

    SQLite engines get the ``casefold()`` SQL function the queries rely on.

    Thread-safety: safe under asyncio's single-threaded cooperative model.
    The check-and-set of the bootstrap task in :meth:`ensure_schema` has no
    await point between read and write, so concurrent callers always share
    one task. Do NOT use from multiple OS threads.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        register_sqlite_functions(engine)
        self.engine = engine
        self.session_factory = session_factory
        self._schema_task: asyncio.Task[None] | None = None
        self._schema_ready = False

    @property
    def schema_ready(self) -> bool:
        return self._schema_ready

    async def ensure_schema(self) -> None:
        """Create the snapshot tables and indexes if they don't exist.

        The first call runs the DDL; concurrent callers await the same task
        and later callers return immediately. If bootstrap fails the memo is
        cleared so the next call retries.
        """
        if self._schema_ready:
            return
        if self._schema_task is None:
            self._schema_task = asyncio.create_task(self._create_schema())
        task = self._schema_task
        try:
            await asyncio.shield(task)
        except BaseException:
            failed = task.done() and (task.cancelled() or task.exception() is not None)
            if failed and self._schema_task is task:
                self._schema_task = None
            raise
        self._schema_ready = True

    async def _create_schema(self) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Directory snapshot schema bootstrap failed: %s", exc)
            raise StoreUnavailableError("Directory snapshot store is unavailable") from exc
        logger.debug("Directory snapshot schema ready")

    async def dispose(self) -> None:
        """Release pooled connections."""
        await self.engine.dispose()
