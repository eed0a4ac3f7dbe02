"""Tests for the directory service facade."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import TYPE_CHECKING, Any

import pytest
from sqlalchemy import update

from directory_snapshot.exceptions import SourceUnavailableError
from directory_snapshot.models.directory import SYNC_STATE_ID, DirectorySyncState
from directory_snapshot.services import reconciler
from directory_snapshot.services.datetime_service import format_datetime, now_utc
from directory_snapshot.services.directory_service import DirectoryService
from directory_snapshot.sources.static import StaticHierarchySource
from tests.test_services._directory_helpers import FailingSource, GatedSource, person

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from directory_snapshot.config import Settings
    from directory_snapshot.schemas.directory import DirectoryTreeNode, DirectoryUser
    from directory_snapshot.services.snapshot_store import SnapshotStore


def _shape(node: DirectoryTreeNode) -> tuple[str, list[Any]]:
    return node.id, [_shape(report) for report in node.direct_reports]


async def _age_snapshot(service: DirectoryService, age: timedelta) -> None:
    stamp = format_datetime(now_utc() - age)
    async with service.store.session_factory() as session, session.begin():
        await session.execute(
            update(DirectorySyncState)
            .where(DirectorySyncState.id == SYNC_STATE_ID)
            .values(last_synced_at=stamp)
        )


class TestSync:
    async def test_sync_then_read(self, directory_service: DirectoryService) -> None:
        result = await directory_service.sync()

        assert result.rows_written == 2
        assert await directory_service.count() == 2
        roots = await directory_service.tree()
        assert [r.display_name for r in roots] == ["Alice"]
        assert [r.display_name for r in roots[0].direct_reports] == ["Bob"]

    async def test_concurrent_syncs_fetch_once(
        self, store: SnapshotStore, test_settings: Settings
    ) -> None:
        source = GatedSource([person("1", "Alice")])
        service = DirectoryService(store, source, test_settings)

        waiters = [asyncio.create_task(service.sync()) for _ in range(5)]
        await source.started.wait()
        source.release.set()
        results = await asyncio.gather(*waiters)

        assert source.fetch_count == 1
        assert len({r.synced_at for r in results}) == 1

    async def test_sync_failure_raises_domain_error(
        self, store: SnapshotStore, test_settings: Settings
    ) -> None:
        service = DirectoryService(store, FailingSource(OSError("no route")), test_settings)
        with pytest.raises(SourceUnavailableError):
            await service.sync()
        assert await service.last_synced_at() is None


class TestReads:
    async def test_reads_before_any_sync_are_empty(
        self, directory_service: DirectoryService, static_source: StaticHierarchySource
    ) -> None:
        assert await directory_service.list_flat() == []
        assert await directory_service.tree() == []
        assert await directory_service.count() == 0
        assert await directory_service.last_synced_at() is None
        assert await directory_service.is_stale() is True
        assert static_source.fetch_count == 0

    async def test_reads_do_not_call_source(
        self, directory_service: DirectoryService, static_source: StaticHierarchySource
    ) -> None:
        await directory_service.sync()
        await directory_service.list_flat()
        await directory_service.list_page()
        await directory_service.search("ali")
        await directory_service.tree()
        assert static_source.fetch_count == 1

    async def test_search_uses_default_limit(
        self, store: SnapshotStore, test_settings: Settings
    ) -> None:
        reports = [person(f"r{i:02d}", f"Report {i:02d}") for i in range(15)]
        settings = test_settings.model_copy(update={"directory_search_limit": 5})
        service = DirectoryService(
            store, StaticHierarchySource([person("m", "Manager", *reports)]), settings
        )
        await service.sync()

        assert len(await service.search("report")) == 5
        assert len(await service.search("report", limit=20)) == 15

    async def test_list_page(self, directory_service: DirectoryService) -> None:
        await directory_service.sync()
        page = await directory_service.list_page(1, 1)
        assert [u.display_name for u in page.users] == ["Alice"]
        assert page.total_pages == 2

    async def test_status(self, directory_service: DirectoryService) -> None:
        before = await directory_service.status()
        assert before.last_synced_at is None
        assert before.is_stale is True
        assert before.count == 0
        assert before.in_flight is False

        result = await directory_service.sync()
        after = await directory_service.status()
        assert after.last_synced_at == result.synced_at
        assert after.is_stale is False
        assert after.count == 2


class TestEnsureFresh:
    async def test_first_read_blocks_on_sync(
        self, directory_service: DirectoryService, static_source: StaticHierarchySource
    ) -> None:
        meta = await directory_service.ensure_fresh()

        assert meta.last_synced_at is not None
        assert meta.is_stale is False
        assert static_source.fetch_count == 1
        assert await directory_service.count() == 2

    async def test_fresh_snapshot_does_nothing(
        self, directory_service: DirectoryService, static_source: StaticHierarchySource
    ) -> None:
        await directory_service.sync()
        await directory_service.ensure_fresh()

        assert directory_service.coordinator.in_flight is False
        assert static_source.fetch_count == 1

    async def test_stale_snapshot_refreshes_in_background(
        self, directory_service: DirectoryService, static_source: StaticHierarchySource
    ) -> None:
        await directory_service.sync()
        await _age_snapshot(directory_service, timedelta(hours=1))
        static_source.replace([person("1", "Alice")])

        meta = await directory_service.ensure_fresh()

        # Answered from the stale snapshot; the refresh is still running.
        assert meta.is_stale is True
        assert directory_service.coordinator.in_flight is True
        await directory_service.coordinator.wait()
        assert static_source.fetch_count == 2
        assert await directory_service.count() == 1
        assert await directory_service.is_stale() is False

    async def test_repeated_stale_reads_share_one_refresh(
        self, store: SnapshotStore, test_settings: Settings
    ) -> None:
        source = GatedSource([person("1", "Alice")])
        service = DirectoryService(store, source, test_settings)
        source.release.set()
        await service.sync()
        source.release.clear()
        await _age_snapshot(service, timedelta(hours=1))

        await service.ensure_fresh()
        await service.ensure_fresh()
        source.release.set()
        await service.coordinator.wait()

        assert source.fetch_count == 2

    async def test_background_failure_is_logged(
        self,
        directory_service: DirectoryService,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        await directory_service.sync()
        await _age_snapshot(directory_service, timedelta(hours=1))
        directory_service.source = FailingSource(RuntimeError("directory offline"))

        with caplog.at_level("ERROR"):
            meta = await directory_service.ensure_fresh()
            await directory_service.coordinator.wait()
            await asyncio.sleep(0)

        assert meta.is_stale is True
        assert "Background directory snapshot sync failed" in caplog.text
        assert await directory_service.count() == 2

    async def test_first_sync_timeout(self, store: SnapshotStore, test_settings: Settings) -> None:
        source = GatedSource([person("1", "Alice")])
        settings = test_settings.model_copy(
            update={"directory_first_sync_timeout_seconds": 0.05}
        )
        service = DirectoryService(store, source, settings)

        with pytest.raises(SourceUnavailableError, match="timed out"):
            await service.ensure_fresh()

        # The sync keeps going after the caller gives up.
        assert service.coordinator.in_flight is True
        source.release.set()
        await service.coordinator.wait()
        assert await service.last_synced_at() is not None

    async def test_first_sync_failure_propagates(
        self, store: SnapshotStore, test_settings: Settings
    ) -> None:
        service = DirectoryService(store, FailingSource(RuntimeError("down")), test_settings)
        with pytest.raises(SourceUnavailableError):
            await service.ensure_fresh()


class TestClose:
    async def test_close_cancels_running_sync(
        self, store: SnapshotStore, test_settings: Settings
    ) -> None:
        source = GatedSource([person("1", "Alice")])
        service = DirectoryService(store, source, test_settings)
        task = service.coordinator.start()
        await source.started.wait()

        await service.close()
        assert task.cancelled()


class TestUnicodeSearch:
    async def test_search_is_case_insensitive_for_accented_names(
        self, store: SnapshotStore, test_settings: Settings
    ) -> None:
        source = StaticHierarchySource([person("1", "Émile Zola", person("2", "Ørjan Berg"))])
        service = DirectoryService(store, source, test_settings)
        await service.sync()

        assert [u.id for u in await service.search("ÉMILE")] == ["1"]
        assert [u.id for u in await service.search("émile")] == ["1"]
        assert [u.id for u in await service.search("ørjan")] == ["2"]


class TestReadsDuringSync:
    """Readers see the snapshot before or after a sync, never a mix."""

    OLD_TREE = [person("a", "Ann", person("b", "Ben"), person("c", "Cat"))]
    NEW_TREE = [person("a", "Ann", person("d", "Dora", person("c", "Cat")))]

    @staticmethod
    async def _snapshot(service: DirectoryService) -> tuple[list[str], int, list[Any]]:
        flat = [u.id for u in await service.list_flat()]
        count = await service.count()
        tree = [_shape(root) for root in await service.tree()]
        return flat, count, tree

    async def test_reads_while_fetch_blocked_see_old_snapshot(
        self, store: SnapshotStore, test_settings: Settings
    ) -> None:
        source = GatedSource(self.OLD_TREE)
        service = DirectoryService(store, source, test_settings)
        source.release.set()
        await service.sync()
        before = await self._snapshot(service)
        assert before == (["a", "b", "c"], 3, [("a", [("b", []), ("c", [])])])

        source.release.clear()
        source.roots = self.NEW_TREE
        running = asyncio.create_task(service.sync())
        await source.started.wait()

        assert await self._snapshot(service) == before

        source.release.set()
        await running
        flat, count, tree = await self._snapshot(service)
        assert flat == ["a", "c", "d"]
        assert count == 3
        assert tree == [("a", [("d", [("c", [])])])]

    async def test_reads_during_write_transaction_see_old_snapshot(
        self,
        store: SnapshotStore,
        test_settings: Settings,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        source = StaticHierarchySource(self.OLD_TREE)
        service = DirectoryService(store, source, test_settings)
        await service.sync()
        before = await self._snapshot(service)
        synced_before = await service.last_synced_at()

        written = asyncio.Event()
        commit = asyncio.Event()
        original = reconciler.write_snapshot

        async def write_then_hold(
            session: AsyncSession, rows: dict[str, DirectoryUser], synced_at: str
        ) -> int:
            removed = await original(session, rows, synced_at)
            written.set()
            await commit.wait()
            return removed

        monkeypatch.setattr(reconciler, "write_snapshot", write_then_hold)
        source.replace(self.NEW_TREE)
        running = asyncio.create_task(service.sync())
        await written.wait()

        # Rows are written but not committed.
        assert await self._snapshot(service) == before
        assert await service.last_synced_at() == synced_before

        commit.set()
        await running
        flat, _, tree = await self._snapshot(service)
        assert flat == ["a", "c", "d"]
        assert tree == [("a", [("d", [("c", [])])])]
