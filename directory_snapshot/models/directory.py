"""Directory snapshot models."""

from __future__ import annotations

from sqlalchemy import Index, Text
from sqlalchemy.orm import Mapped, mapped_column

from directory_snapshot.models.base import Base

SYNC_STATE_ID = "singleton"


class DirectoryEntry(Base):
    """One employee in the flattened directory snapshot.

    ``manager_id`` deliberately carries no foreign key: a row whose manager is
    missing from the snapshot is legal and is rendered as a root.
    """

    __tablename__ = "directory_snapshots"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    mail: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_principal_name: Mapped[str] = mapped_column(Text, nullable=False)
    job_title: Mapped[str | None] = mapped_column(Text, nullable=True)
    employee_type: Mapped[str | None] = mapped_column(Text, nullable=True)
    department: Mapped[str | None] = mapped_column(Text, nullable=True)
    office_location: Mapped[str | None] = mapped_column(Text, nullable=True)
    manager_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    synced_at: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        Index("idx_directory_snapshots_manager_id", "manager_id"),
        Index("idx_directory_snapshots_display_name", "display_name"),
        Index("idx_directory_snapshots_mail", "mail"),
        Index("idx_directory_snapshots_upn", "user_principal_name"),
    )


class DirectorySyncState(Base):
    """Singleton record of the last successful reconciliation."""

    __tablename__ = "directory_snapshot_state"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=SYNC_STATE_ID)
    last_synced_at: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[str] = mapped_column(Text, nullable=False)
