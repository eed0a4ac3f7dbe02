"""In-memory hierarchy source and the built-in demo organisation."""

from __future__ import annotations

from typing import Any

from directory_snapshot.schemas.directory import DirectoryNode


def _person(
    node_id: str,
    name: str,
    title: str,
    department: str,
    office: str,
    reports: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    address = name.lower().replace(" ", ".") + "@mortgagepros.com"
    return {
        "id": node_id,
        "displayName": name,
        "mail": address,
        "userPrincipalName": address,
        "jobTitle": title,
        "department": department,
        "officeLocation": office,
        "directReports": reports or [],
    }


DEMO_HIERARCHY: list[dict[str, Any]] = [
    _person(
        "demo-1",
        "Sarah Mitchell",
        "CEO",
        "Executive",
        "HQ - Suite 100",
        [
            _person(
                "demo-2",
                "James Chen",
                "VP of Operations",
                "Operations",
                "HQ - Suite 200",
                [
                    _person("demo-4", "John Doe", "Loan Officer", "Lending", "HQ - Floor 3"),
                    _person("demo-5", "Maria Garcia", "Processor", "Processing", "HQ - Floor 3"),
                    _person("demo-8", "David Kim", "Underwriter", "Underwriting", "HQ - Floor 2"),
                ],
            ),
            _person(
                "demo-3",
                "Lisa Park",
                "VP of Sales",
                "Sales",
                "HQ - Suite 200",
                [
                    _person("demo-6", "Tom Wilson", "Senior Loan Officer", "Sales", "Branch A"),
                    _person("demo-9", "Rachel Adams", "Loan Officer", "Sales", "Branch B"),
                ],
            ),
            _person(
                "demo-7",
                "Emily Roberts",
                "Director of Compliance",
                "Compliance",
                "HQ - Suite 150",
            ),
        ],
    ),
]


def _coerce(roots: list[DirectoryNode] | list[dict[str, Any]]) -> list[DirectoryNode]:
    return [
        root if isinstance(root, DirectoryNode) else DirectoryNode.model_validate(root)
        for root in roots
    ]


class StaticHierarchySource:
    """Serve a fixed tree. Each fetch returns fresh copies.

    ``fetch_count`` records how many fetches were made.
    """

    name = "static"

    def __init__(self, roots: list[DirectoryNode] | list[dict[str, Any]]) -> None:
        self._roots = _coerce(roots)
        self.fetch_count = 0

    def replace(self, roots: list[DirectoryNode] | list[dict[str, Any]]) -> None:
        """Swap in a new tree for subsequent fetches."""
        self._roots = _coerce(roots)

    async def fetch_hierarchy(self) -> list[DirectoryNode]:
        self.fetch_count += 1
        return [root.model_copy(deep=True) for root in self._roots]

    async def aclose(self) -> None:
        return None


def demo_source() -> StaticHierarchySource:
    """Return a source serving the demo organisation."""
    source = StaticHierarchySource(DEMO_HIERARCHY)
    source.name = "demo"
    return source
