"""CLI for syncing and inspecting the directory snapshot."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import TYPE_CHECKING, Any

from directory_snapshot.config import Settings
from directory_snapshot.exceptions import DirectorySyncError
from directory_snapshot.logging_config import configure_logging
from directory_snapshot.services.datetime_service import format_iso
from directory_snapshot.services.directory_service import DirectoryService
from directory_snapshot.services.hierarchy import count_nodes

if TYPE_CHECKING:
    from collections.abc import Sequence

    from pydantic import BaseModel

    from directory_snapshot.schemas.directory import DirectoryTreeNode, DirectoryUser


def _dump(value: BaseModel | Sequence[BaseModel]) -> Any:
    if isinstance(value, (list, tuple)):
        return [item.model_dump(mode="json") for item in value]
    return value.model_dump(mode="json")  # type: ignore[union-attr]


def _describe(user: DirectoryUser | DirectoryTreeNode) -> str:
    details = [part for part in (user.job_title, user.mail or user.user_principal_name) if part]
    if not details:
        return user.display_name
    return f"{user.display_name} ({', '.join(details)})"


def render_tree(roots: Sequence[DirectoryTreeNode]) -> list[str]:
    """Render a tree as indented lines, two spaces per level."""
    lines: list[str] = []
    stack: list[tuple[DirectoryTreeNode, int]] = [(root, 0) for root in reversed(roots)]
    while stack:
        node, depth = stack.pop()
        lines.append(f"{'  ' * depth}{_describe(node)}")
        for report in reversed(node.direct_reports):
            stack.append((report, depth + 1))
    return lines


async def run_command(service: DirectoryService, args: argparse.Namespace) -> Any:
    """Execute one CLI command and return what should be printed."""
    if args.command == "sync":
        result = await service.sync()
        if args.json:
            return _dump(result)
        return (
            f"Sync complete. {result.rows_written} user(s) written, "
            f"{result.rows_removed} removed in {result.duration_ms} ms."
        )

    if args.command == "status":
        status = await service.status()
        if args.json:
            return _dump(status)
        last = format_iso(status.last_synced_at) if status.last_synced_at else "never"
        state = "stale" if status.is_stale else "fresh"
        return f"Last synced: {last} ({state}); {status.count} user(s)"

    if args.command == "count":
        count = await service.count()
        return {"count": count} if args.json else str(count)

    if args.command == "list":
        page = await service.list_page(args.page, args.per_page)
        if args.json:
            return _dump(page)
        lines = [_describe(user) for user in page.users]
        lines.append(f"Page {page.page}/{max(page.total_pages, 1)} ({page.total} user(s))")
        return "\n".join(lines)

    if args.command == "search":
        users = await service.search(args.query, args.limit)
        if args.json:
            return _dump(users)
        if not users:
            return "No matching users."
        return "\n".join(_describe(user) for user in users)

    if args.command == "tree":
        roots = await service.tree()
        if args.json:
            return _dump(roots)
        if not roots:
            return "Directory is empty."
        lines = render_tree(roots)
        lines.append(f"{count_nodes(roots)} user(s), {len(roots)} top-level")
        return "\n".join(lines)

    raise ValueError(f"Unknown command: {args.command}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="directory-sync",
        description="Sync and inspect the local directory snapshot",
    )
    parser.add_argument("--database-url", help="Override DATABASE_URL")
    parser.add_argument("--json", action="store_true", help="Print JSON instead of text")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("sync", help="Refresh the snapshot from the directory")
    subparsers.add_parser("status", help="Show last sync time and size")
    subparsers.add_parser("count", help="Print the number of users")
    list_parser = subparsers.add_parser("list", help="List users alphabetically")
    list_parser.add_argument("--page", type=int, default=1)
    list_parser.add_argument("--per-page", type=int, default=50)
    search_parser = subparsers.add_parser("search", help="Search by name, mail or UPN")
    search_parser.add_argument("query")
    search_parser.add_argument("--limit", type=int, default=None)
    subparsers.add_parser("tree", help="Print the org chart")
    return parser


async def _main(args: argparse.Namespace, settings: Settings) -> Any:
    service = DirectoryService.from_settings(settings)
    try:
        return await run_command(service, args)
    finally:
        await service.close()


def main(argv: Sequence[str] | None = None) -> None:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    overrides: dict[str, Any] = {}
    if args.database_url:
        overrides["database_url"] = args.database_url
    if args.debug:
        overrides["debug"] = True
    try:
        settings = Settings(**overrides)
        configure_logging(settings.debug)
        settings.validate_runtime()
        output = asyncio.run(_main(args, settings))
    except (DirectorySyncError, ValueError) as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if isinstance(output, str):
        print(output)
    else:
        print(json.dumps(output, indent=2))


if __name__ == "__main__":
    main()
