"""Shared test fixtures for the directory snapshot."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from directory_snapshot.config import Settings
from directory_snapshot.database import register_sqlite_functions
from directory_snapshot.services.directory_service import DirectoryService
from directory_snapshot.services.snapshot_store import SnapshotStore
from directory_snapshot.sources.static import StaticHierarchySource

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path


@pytest.fixture(autouse=True)
def _no_graph_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep real Azure credentials in the environment out of the tests."""
    for name in ("AZURE_TENANT_ID", "AZURE_CLIENT_ID", "AZURE_CLIENT_SECRET"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings backed by a temporary SQLite database."""
    db_path = tmp_path / "test.db"
    return Settings(
        _env_file=None,
        debug=True,
        database_url=f"sqlite+aiosqlite:///{db_path}",
        directory_source_timeout_seconds=5.0,
        directory_first_sync_timeout_seconds=5.0,
    )


@pytest.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create a test database engine."""
    engine = create_async_engine(
        test_settings.database_url,
        echo=False,
    )
    register_sqlite_functions(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(
    db_engine: AsyncEngine,
    session_factory: async_sessionmaker[AsyncSession],
) -> SnapshotStore:
    return SnapshotStore(db_engine, session_factory)


@pytest.fixture
def static_source() -> StaticHierarchySource:
    """A source serving Alice with one report, Bob."""
    return StaticHierarchySource(
        [
            {
                "id": "1",
                "displayName": "Alice",
                "directReports": [{"id": "2", "displayName": "Bob", "directReports": []}],
            }
        ]
    )


@pytest.fixture
async def directory_service(
    store: SnapshotStore,
    static_source: StaticHierarchySource,
    test_settings: Settings,
) -> AsyncGenerator[DirectoryService]:
    service = DirectoryService(store, static_source, test_settings)
    yield service
    await service.coordinator.cancel()
