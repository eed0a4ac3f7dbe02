"""Tree <-> flat-row transforms for the org hierarchy."""

from __future__ import annotations

from typing import TYPE_CHECKING

from directory_snapshot.schemas.directory import DirectoryTreeNode, DirectoryUser

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from directory_snapshot.schemas.directory import DirectoryNode


def flatten(roots: Sequence[DirectoryNode]) -> list[DirectoryUser]:
    """Flatten a nested org tree into rows carrying an explicit ``manager_id``.

    Depth-first, pre-order. Top-level nodes get ``manager_id=None``; every
    other node gets the id of the node it was nested under. Uses an explicit
    stack so arbitrarily deep chains do not hit the recursion limit.
    """
    rows: list[DirectoryUser] = []
    # Reversed so siblings pop in their original order.
    stack: list[tuple[DirectoryNode, str | None]] = [(root, None) for root in reversed(roots)]
    while stack:
        node, manager_id = stack.pop()
        rows.append(
            DirectoryUser(
                id=node.id,
                display_name=node.display_name,
                mail=node.mail,
                user_principal_name=node.user_principal_name,
                job_title=node.job_title,
                employee_type=node.employee_type,
                department=node.department,
                office_location=node.office_location,
                manager_id=manager_id,
            )
        )
        for report in reversed(node.direct_reports):
            stack.append((report, node.id))
    return rows


def sort_key(display_name: str, node_id: str) -> tuple[str, str]:
    """Case-insensitive display-name order; the id breaks ties between namesakes."""
    return display_name.casefold(), node_id


def build_tree(rows: Iterable[DirectoryUser]) -> list[DirectoryTreeNode]:
    """Rebuild the nested tree from flat rows.

    Rows whose manager is not among ``rows`` become roots (orphan promotion).
    Roots and every sibling list are sorted by :func:`sort_key`, so identical
    input always yields an identical tree.

    Rows caught in a manager cycle (A reports to B, B reports to A, or a row
    that names itself) are unreachable from any root. The first such row in
    sort order is promoted to a root, which breaks the cycle; this repeats
    until every row is placed, so no row is ever dropped.
    """
    index: dict[str, DirectoryUser] = {}
    for row in rows:
        index[row.id] = row

    def key(node_id: str) -> tuple[str, str]:
        return sort_key(index[node_id].display_name, node_id)

    children: dict[str, list[str]] = {}
    roots: list[str] = []
    for row in index.values():
        if row.manager_id is not None and row.manager_id in index:
            children.setdefault(row.manager_id, []).append(row.id)
        else:
            roots.append(row.id)

    reached: set[str] = set()

    def mark_reachable(start: str) -> None:
        stack = [start]
        while stack:
            node_id = stack.pop()
            if node_id in reached:
                continue
            reached.add(node_id)
            stack.extend(children.get(node_id, []))

    for root_id in roots:
        mark_reachable(root_id)

    while len(reached) < len(index):
        cut = min((node_id for node_id in index if node_id not in reached), key=key)
        manager_id = index[cut].manager_id
        if manager_id is not None:
            children[manager_id].remove(cut)
        roots.append(cut)
        mark_reachable(cut)

    for sibling_ids in children.values():
        sibling_ids.sort(key=key)
    roots.sort(key=key)

    # Post-order so each node is created after its (already immutable) reports.
    built: dict[str, DirectoryTreeNode] = {}
    for root_id in roots:
        stack: list[tuple[str, bool]] = [(root_id, False)]
        while stack:
            node_id, expanded = stack.pop()
            if expanded:
                row = index[node_id]
                built[node_id] = DirectoryTreeNode(
                    id=row.id,
                    display_name=row.display_name,
                    mail=row.mail,
                    user_principal_name=row.user_principal_name,
                    job_title=row.job_title,
                    employee_type=row.employee_type,
                    department=row.department,
                    office_location=row.office_location,
                    direct_reports=tuple(built[c] for c in children.get(node_id, [])),
                )
                continue
            stack.append((node_id, True))
            for child_id in children.get(node_id, []):
                stack.append((child_id, False))

    return [built[root_id] for root_id in roots]


def count_nodes(roots: Sequence[DirectoryNode] | Sequence[DirectoryTreeNode]) -> int:
    """Count every node in a nested tree."""
    count = 0
    stack = list(roots)
    while stack:
        node = stack.pop()
        count += 1
        stack.extend(node.direct_reports)
    return count
