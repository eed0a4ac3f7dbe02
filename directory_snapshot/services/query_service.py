"""Read-only queries against the directory snapshot.

Nothing here talks to the hierarchy source; every function reads whatever
snapshot was last committed.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, select

from directory_snapshot.models.directory import SYNC_STATE_ID, DirectoryEntry, DirectorySyncState
from directory_snapshot.schemas.directory import DirectoryPage, DirectoryUser, SyncMeta
from directory_snapshot.services.datetime_service import parse_datetime
from directory_snapshot.services.hierarchy import build_tree
from directory_snapshot.services.staleness import is_stale

if TYPE_CHECKING:
    from datetime import datetime, timedelta

    from sqlalchemy.ext.asyncio import AsyncSession

    from directory_snapshot.schemas.directory import DirectoryTreeNode

def _is_sqlite(session: AsyncSession) -> bool:
    return session.get_bind().dialect.name == "sqlite"


def _fold(session: AsyncSession, column: Any) -> Any:
    """Unicode case folding in SQL; see ``register_sqlite_functions``."""
    if _is_sqlite(session):
        return func.casefold(column)
    return func.lower(column)


def _name_order(session: AsyncSession) -> tuple[Any, ...]:
    return _fold(session, DirectoryEntry.display_name), DirectoryEntry.id


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


async def get_flat_users(session: AsyncSession) -> list[DirectoryUser]:
    """All snapshot rows ordered by display name."""
    result = await session.execute(select(DirectoryEntry).order_by(*_name_order(session)))
    return [DirectoryUser.from_entry(entry) for entry in result.scalars().all()]


async def get_users_page(
    session: AsyncSession, page: int = 1, per_page: int = 50
) -> DirectoryPage:
    """One page of the flat listing, ordered by display name."""
    if page < 1:
        raise ValueError("page must be >= 1")
    if per_page < 1:
        raise ValueError("per_page must be >= 1")

    total = await get_user_count(session)
    stmt = (
        select(DirectoryEntry)
        .order_by(*_name_order(session))
        .offset((page - 1) * per_page)
        .limit(per_page)
    )
    result = await session.execute(stmt)
    return DirectoryPage(
        users=[DirectoryUser.from_entry(entry) for entry in result.scalars().all()],
        total=total,
        page=page,
        per_page=per_page,
        total_pages=math.ceil(total / per_page),
    )


async def search_users(
    session: AsyncSession, query: str, limit: int = 10
) -> list[DirectoryUser]:
    """Case-insensitive substring search over display name, mail and UPN.

    Case folding is Unicode-aware: ``casefold()`` on SQLite, ``ILIKE`` elsewhere.
    ``%`` and ``_`` in the query match literally. A blank query matches nothing.
    """
    if limit < 1:
        raise ValueError("limit must be >= 1")
    needle = query.strip()
    if not needle:
        return []

    columns = (
        DirectoryEntry.display_name,
        DirectoryEntry.mail,
        DirectoryEntry.user_principal_name,
    )
    if _is_sqlite(session):
        pattern = f"%{_escape_like(needle.casefold())}%"
        matches = [func.casefold(column).like(pattern, escape="\\") for column in columns]
    else:
        pattern = f"%{_escape_like(needle)}%"
        matches = [column.ilike(pattern, escape="\\") for column in columns]

    stmt = (
        select(DirectoryEntry)
        .where(or_(*matches))
        .order_by(*_name_order(session))
        .limit(limit)
    )
    result = await session.execute(stmt)
    return [DirectoryUser.from_entry(entry) for entry in result.scalars().all()]


async def get_tree(session: AsyncSession) -> list[DirectoryTreeNode]:
    """Rebuild the org tree from the snapshot rows."""
    return build_tree(await get_flat_users(session))


async def get_user_count(session: AsyncSession) -> int:
    result = await session.execute(select(func.count()).select_from(DirectoryEntry))
    return result.scalar() or 0


async def get_last_synced_at(session: AsyncSession) -> datetime | None:
    """Timestamp of the last successful sync, or None if there never was one."""
    state = await session.get(DirectorySyncState, SYNC_STATE_ID)
    if state is None or state.last_synced_at is None:
        return None
    return parse_datetime(state.last_synced_at)


async def get_sync_meta(session: AsyncSession, ttl: timedelta) -> SyncMeta:
    last_synced_at = await get_last_synced_at(session)
    return SyncMeta(last_synced_at=last_synced_at, is_stale=is_stale(last_synced_at, ttl))
