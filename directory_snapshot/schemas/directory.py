"""Directory-related schemas."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from directory_snapshot.services.datetime_service import parse_datetime

if TYPE_CHECKING:
    from directory_snapshot.models.directory import DirectoryEntry


class DirectoryNode(BaseModel):
    """A node of the org tree as delivered by a hierarchy source.

    Field names follow the Graph user resource (``displayName``,
    ``directReports`` ...); snake_case names are accepted too.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(min_length=1)
    display_name: str = ""
    mail: str | None = None
    user_principal_name: str = ""
    job_title: str | None = None
    employee_type: str | None = None
    department: str | None = None
    office_location: str | None = None
    direct_reports: list[DirectoryNode] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def fill_missing_names(cls, data: object) -> object:
        """Graph may return null displayName; fall back to the UPN, then the id."""
        _ = cls
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for key in ("displayName", "display_name"):
            if key in data and data[key] is None:
                del data[key]
        for key in ("userPrincipalName", "user_principal_name"):
            if key in data and data[key] is None:
                del data[key]
        for key in ("directReports", "direct_reports"):
            if key in data and data[key] is None:
                data[key] = []
        return data

    @model_validator(mode="after")
    def default_display_name(self) -> DirectoryNode:
        if not self.display_name:
            self.display_name = self.user_principal_name or self.id
        return self


class DirectoryUser(BaseModel):
    """One flattened snapshot row."""

    id: str
    display_name: str
    mail: str | None = None
    user_principal_name: str = ""
    job_title: str | None = None
    employee_type: str | None = None
    department: str | None = None
    office_location: str | None = None
    manager_id: str | None = None
    synced_at: datetime | None = None

    @classmethod
    def from_entry(cls, entry: DirectoryEntry) -> DirectoryUser:
        """Build the row view from an ORM entry."""
        return cls(
            id=entry.id,
            display_name=entry.display_name,
            mail=entry.mail,
            user_principal_name=entry.user_principal_name,
            job_title=entry.job_title,
            employee_type=entry.employee_type,
            department=entry.department,
            office_location=entry.office_location,
            manager_id=entry.manager_id,
            synced_at=parse_datetime(entry.synced_at),
        )


class DirectoryTreeNode(BaseModel):
    """Immutable node of a tree rebuilt from the snapshot."""

    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str
    mail: str | None = None
    user_principal_name: str = ""
    job_title: str | None = None
    employee_type: str | None = None
    department: str | None = None
    office_location: str | None = None
    direct_reports: tuple[DirectoryTreeNode, ...] = ()


class DirectoryPage(BaseModel):
    """Paginated flat listing."""

    users: list[DirectoryUser]
    total: int = Field(ge=0)
    page: int = Field(ge=1)
    per_page: int = Field(ge=1)
    total_pages: int = Field(ge=0)


class SyncMeta(BaseModel):
    """Freshness of the snapshot."""

    last_synced_at: datetime | None = None
    is_stale: bool


class SyncStatus(BaseModel):
    """Snapshot freshness plus size, as reported to operators."""

    last_synced_at: datetime | None = None
    is_stale: bool
    count: int = Field(ge=0)
    in_flight: bool = False


class SyncResult(BaseModel):
    """Outcome of one completed reconciliation."""

    rows_written: int = Field(ge=0)
    rows_removed: int = Field(ge=0)
    synced_at: datetime
    duration_ms: int = Field(ge=0)
