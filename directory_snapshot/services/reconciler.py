"""Snapshot reconciliation: make the stored snapshot match one source fetch."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any

from sqlalchemy import Text, all_, bindparam, delete
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError

from directory_snapshot.exceptions import (
    SourceUnavailableError,
    StoreUnavailableError,
    TransactionFailureError,
)
from directory_snapshot.models.directory import SYNC_STATE_ID, DirectoryEntry, DirectorySyncState
from directory_snapshot.schemas.directory import SyncResult
from directory_snapshot.services.datetime_service import format_datetime, now_utc
from directory_snapshot.services.hierarchy import flatten

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from directory_snapshot.schemas.directory import DirectoryNode, DirectoryUser
    from directory_snapshot.services.snapshot_store import SnapshotStore
    from directory_snapshot.sources.base import HierarchySource

logger = logging.getLogger(__name__)

_ENTRY_COLUMNS = (
    "display_name",
    "mail",
    "user_principal_name",
    "job_title",
    "employee_type",
    "department",
    "office_location",
    "manager_id",
    "synced_at",
)


def _insert_for(session: AsyncSession) -> Any:
    """Return the dialect ``insert`` construct that supports ON CONFLICT."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise TransactionFailureError(f"Unsupported database dialect for upserts: {dialect}")


async def fetch_with_timeout(
    source: HierarchySource, timeout: float | None
) -> list[DirectoryNode]:
    """Fetch the hierarchy, translating every failure into SourceUnavailableError."""
    try:
        async with asyncio.timeout(timeout):
            return await source.fetch_hierarchy()
    except TimeoutError as exc:
        logger.error("Hierarchy fetch from %s timed out after %ss", source.name, timeout)
        raise SourceUnavailableError(
            f"Hierarchy fetch from {source.name} timed out after {timeout}s"
        ) from exc
    except SourceUnavailableError:
        raise
    except Exception as exc:
        logger.error("Hierarchy fetch from %s failed: %s", source.name, exc)
        raise SourceUnavailableError(f"Hierarchy fetch from {source.name} failed") from exc


def dedupe_rows(rows: list[DirectoryUser]) -> dict[str, DirectoryUser]:
    """Key rows by id; a later duplicate replaces an earlier one."""
    unique: dict[str, DirectoryUser] = {}
    for row in rows:
        unique[row.id] = row
    if len(unique) != len(rows):
        logger.warning(
            "Hierarchy contained %d duplicate user entries; keeping the last of each",
            len(rows) - len(unique),
        )
    return unique


def prune_statement(dialect: str, keep_ids: list[str]) -> Any:
    """DELETE every snapshot row whose id is not in ``keep_ids`` (all rows if empty).

    PostgreSQL gets the ids as one array parameter, since asyncpg caps a
    statement at 32767 bind parameters.
    """
    if not keep_ids:
        return delete(DirectoryEntry)
    if dialect == "postgresql":
        ids = bindparam("keep_ids", keep_ids, type_=postgresql.ARRAY(Text))
        return delete(DirectoryEntry).where(DirectoryEntry.id != all_(ids))
    return delete(DirectoryEntry).where(DirectoryEntry.id.not_in(keep_ids))


async def write_snapshot(
    session: AsyncSession,
    rows: dict[str, DirectoryUser],
    synced_at: str,
) -> int:
    """Upsert ``rows``, delete everything else, stamp the sync state.

    Runs inside the caller's transaction. Returns the number of rows removed.
    """
    insert = _insert_for(session)

    for row in rows.values():
        values = row.model_dump(include=set(_ENTRY_COLUMNS) | {"id"})
        values["synced_at"] = synced_at
        stmt = insert(DirectoryEntry).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={column: stmt.excluded[column] for column in _ENTRY_COLUMNS},
        )
        await session.execute(stmt)

    result = await session.execute(prune_statement(session.get_bind().dialect.name, list(rows)))
    removed = result.rowcount or 0  # type: ignore[attr-defined]

    state = insert(DirectorySyncState).values(
        id=SYNC_STATE_ID,
        last_synced_at=synced_at,
        updated_at=synced_at,
    )
    state = state.on_conflict_do_update(
        index_elements=["id"],
        set_={
            "last_synced_at": state.excluded.last_synced_at,
            "updated_at": state.excluded.updated_at,
        },
    )
    await session.execute(state)
    return removed


async def reconcile(
    store: SnapshotStore,
    source: HierarchySource,
    *,
    timeout: float | None = None,
    allow_empty: bool = True,
) -> SyncResult:
    """Run one full refresh cycle.

    1. Fetch the tree (bounded by ``timeout``); on failure nothing is written.
    2. Flatten it and collapse duplicate ids.
    3. In one transaction: upsert every row, delete rows missing from the
       fetch (all rows when the fetch is empty), stamp ``last_synced_at``.

    Any failure rolls the transaction back, leaving the previous snapshot and
    sync state exactly as they were.

    Raises SourceUnavailableError, StoreUnavailableError or
    TransactionFailureError (all DirectorySyncError).
    """
    started = time.monotonic()
    await store.ensure_schema()

    roots = await fetch_with_timeout(source, timeout)
    rows = dedupe_rows(flatten(roots))
    if not rows and not allow_empty:
        logger.error(
            "Hierarchy source %s returned no users; keeping existing snapshot", source.name
        )
        raise SourceUnavailableError(f"Hierarchy source {source.name} returned no users")

    synced_at = now_utc()
    try:
        async with store.session_factory() as session, session.begin():
            removed = await write_snapshot(session, rows, format_datetime(synced_at))
    except (OperationalError, InterfaceError) as exc:
        logger.error("Directory snapshot store unavailable during sync: %s", exc)
        raise StoreUnavailableError("Directory snapshot store is unavailable") from exc
    except SQLAlchemyError as exc:
        logger.error("Directory snapshot transaction failed and was rolled back: %s", exc)
        raise TransactionFailureError("Directory snapshot transaction failed") from exc

    result = SyncResult(
        rows_written=len(rows),
        rows_removed=removed,
        synced_at=synced_at,
        duration_ms=int((time.monotonic() - started) * 1000),
    )
    logger.info(
        "Directory snapshot synced from %s: %d rows written, %d removed, %d ms",
        source.name,
        result.rows_written,
        result.rows_removed,
        result.duration_ms,
    )
    return result
