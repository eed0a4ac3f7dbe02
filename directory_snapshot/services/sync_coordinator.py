"""Single-flight coordination of snapshot syncs."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from directory_snapshot.schemas.directory import SyncResult

logger = logging.getLogger(__name__)


class SyncCoordinator:
    """Collapse concurrent sync requests into one underlying run.

    ``sync()`` starts ``run`` if nothing is in flight, otherwise it waits for
    the run already going. Every caller waiting on a run sees the same
    ``SyncResult`` or the same exception. The in-flight marker is cleared when
    the run finishes, whatever the outcome, so the next call starts afresh.

    Thread-safety: safe under asyncio's single-threaded cooperative model.
    The in-flight check and the task creation in ``sync()`` have no await
    point between them. Do NOT share across event loops or OS threads.
    """

    def __init__(self, run: Callable[[], Awaitable[SyncResult]]) -> None:
        self._run = run
        self._in_flight: asyncio.Task[SyncResult] | None = None

    @property
    def in_flight(self) -> bool:
        """True while a run is executing."""
        return self._in_flight is not None and not self._in_flight.done()

    def start(self) -> asyncio.Task[SyncResult]:
        """Return the in-flight run, starting one if needed.

        A run that has finished but whose done-callback has not fired yet
        counts as idle.
        """
        if self._in_flight is None or self._in_flight.done():
            task = asyncio.create_task(self._execute())
            self._in_flight = task
            task.add_done_callback(self._clear)
            logger.debug("Directory sync started")
        return self._in_flight

    async def sync(self) -> SyncResult:
        """Wait for the current run (starting one if idle) and return its result.

        Cancelling a waiting caller does not cancel the shared run.
        """
        return await asyncio.shield(self.start())

    async def _execute(self) -> SyncResult:
        return await self._run()

    def _clear(self, task: asyncio.Task[SyncResult]) -> None:
        if self._in_flight is task:
            self._in_flight = None
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Directory sync run finished with error: %s", task.exception())

    async def wait(self) -> None:
        """Wait for an in-flight run to finish, ignoring its outcome."""
        task = self._in_flight
        if task is None:
            return
        await asyncio.wait({task})

    async def cancel(self) -> None:
        """Cancel any in-flight run (used at shutdown)."""
        task = self._in_flight
        if task is None:
            return
        task.cancel()
        await asyncio.wait({task})
