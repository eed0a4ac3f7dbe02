"""Directory service: the snapshot's public surface for the rest of the portal."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, TypeVar

from directory_snapshot.database import create_engine
from directory_snapshot.exceptions import SourceUnavailableError
from directory_snapshot.schemas.directory import SyncStatus
from directory_snapshot.services import query_service
from directory_snapshot.services.reconciler import reconcile
from directory_snapshot.services.snapshot_store import SnapshotStore
from directory_snapshot.services.sync_coordinator import SyncCoordinator
from directory_snapshot.sources.registry import build_source

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import datetime

    from directory_snapshot.config import Settings
    from directory_snapshot.schemas.directory import (
        DirectoryPage,
        DirectoryTreeNode,
        DirectoryUser,
        SyncMeta,
        SyncResult,
    )
    from directory_snapshot.sources.base import HierarchySource

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DirectoryService:
    """Ties the store, the source, and the single-flight coordinator together.

    Reads never call the source. ``sync()`` is safe to call from any number
    of concurrent tasks: they all share one reconciliation.
    """

    def __init__(self, store: SnapshotStore, source: HierarchySource, settings: Settings) -> None:
        self.store = store
        self.source = source
        self.settings = settings
        self.coordinator = SyncCoordinator(self._reconcile)
        self._watched: asyncio.Task[SyncResult] | None = None

    @classmethod
    def from_settings(
        cls, settings: Settings, source: HierarchySource | None = None
    ) -> DirectoryService:
        """Build a service with its own engine and the configured source."""
        engine, session_factory = create_engine(settings)
        store = SnapshotStore(engine, session_factory)
        return cls(store, source if source is not None else build_source(settings), settings)

    async def _reconcile(self) -> SyncResult:
        return await reconcile(
            self.store,
            self.source,
            timeout=self.settings.directory_source_timeout_seconds,
            allow_empty=self.settings.directory_allow_empty_sync,
        )

    async def _read(
        self,
        query: Callable[..., Awaitable[T]],
        *args: object,
    ) -> T:
        await self.store.ensure_schema()
        async with self.store.session_factory() as session:
            return await query(session, *args)

    # Sync

    async def sync(self) -> SyncResult:
        """Refresh the snapshot now (or join the refresh already running).

        Raises DirectorySyncError if the run fails.
        """
        return await self.coordinator.sync()

    async def ensure_fresh(self) -> SyncMeta:
        """Make the snapshot usable for a read.

        Never synced: sync now and wait, bounded by the first-sync timeout.
        Stale: start a background sync and answer from the current snapshot.
        Fresh: nothing to do.
        """
        meta = await self.sync_meta()
        if meta.last_synced_at is None:
            timeout = self.settings.directory_first_sync_timeout_seconds
            try:
                async with asyncio.timeout(timeout):
                    await self.coordinator.sync()
            except TimeoutError as exc:
                logger.warning("Initial directory sync still running after %ss", timeout)
                raise SourceUnavailableError(
                    f"Initial directory sync timed out after {timeout}s"
                ) from exc
            return await self.sync_meta()

        if meta.is_stale:
            self._start_background_sync()
        return meta

    def _start_background_sync(self) -> None:
        task = self.coordinator.start()
        if task is not self._watched:
            self._watched = task
            task.add_done_callback(_log_background_failure)

    # Reads

    async def is_stale(self) -> bool:
        return (await self.sync_meta()).is_stale

    async def last_synced_at(self) -> datetime | None:
        return await self._read(query_service.get_last_synced_at)

    async def sync_meta(self) -> SyncMeta:
        return await self._read(query_service.get_sync_meta, self.settings.snapshot_ttl)

    async def status(self) -> SyncStatus:
        """Freshness, row count and whether a sync is running."""
        meta = await self.sync_meta()
        count = await self.count()
        return SyncStatus(
            last_synced_at=meta.last_synced_at,
            is_stale=meta.is_stale,
            count=count,
            in_flight=self.coordinator.in_flight,
        )

    async def list_flat(self) -> list[DirectoryUser]:
        return await self._read(query_service.get_flat_users)

    async def list_page(self, page: int = 1, per_page: int = 50) -> DirectoryPage:
        return await self._read(query_service.get_users_page, page, per_page)

    async def search(self, query: str, limit: int | None = None) -> list[DirectoryUser]:
        if limit is None:
            limit = self.settings.directory_search_limit
        return await self._read(query_service.search_users, query, limit)

    async def tree(self) -> list[DirectoryTreeNode]:
        return await self._read(query_service.get_tree)

    async def count(self) -> int:
        return await self._read(query_service.get_user_count)

    async def close(self) -> None:
        """Cancel any running sync and release the source and the engine."""
        await self.coordinator.cancel()
        await self.source.aclose()
        await self.store.dispose()


def _log_background_failure(task: asyncio.Task[SyncResult]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background directory snapshot sync failed: %s", exc)
