"""SQLAlchemy ORM models for the directory snapshot."""

from directory_snapshot.models.base import Base
from directory_snapshot.models.directory import SYNC_STATE_ID, DirectoryEntry, DirectorySyncState

__all__ = [
    "SYNC_STATE_ID",
    "Base",
    "DirectoryEntry",
    "DirectorySyncState",
]
