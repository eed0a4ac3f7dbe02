"""Base protocol for hierarchy sources."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from directory_snapshot.schemas.directory import DirectoryNode


@runtime_checkable
class HierarchySource(Protocol):
    """Supplies the current org tree from a remote directory."""

    name: str

    async def fetch_hierarchy(self) -> list[DirectoryNode]:
        """Return the top-level nodes with their nested direct reports.

        Raises SourceUnavailableError when the directory cannot be read.
        """
        ...

    async def aclose(self) -> None:
        """Release any network resources held by the source."""
        ...
