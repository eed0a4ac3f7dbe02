"""Snapshot staleness policy."""

from __future__ import annotations

from typing import TYPE_CHECKING

from directory_snapshot.services.datetime_service import now_utc

if TYPE_CHECKING:
    from datetime import datetime, timedelta


def is_stale(
    last_synced_at: datetime | None,
    ttl: timedelta,
    now: datetime | None = None,
) -> bool:
    """Return True if the snapshot should be refreshed.

    A snapshot that has never been synced is stale. Otherwise it is stale once
    its age is strictly greater than ``ttl``; an age of exactly ``ttl`` is
    still fresh.
    """
    if last_synced_at is None:
        return True
    current = now if now is not None else now_utc()
    return current - last_synced_at > ttl
