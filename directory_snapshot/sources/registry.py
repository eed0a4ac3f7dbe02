"""Hierarchy source selection."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from directory_snapshot.sources.graph import GraphHierarchySource
from directory_snapshot.sources.static import demo_source

if TYPE_CHECKING:
    import httpx

    from directory_snapshot.config import Settings
    from directory_snapshot.sources.base import HierarchySource

logger = logging.getLogger(__name__)


def build_source(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> HierarchySource:
    """Return the Graph source when credentials are configured, else the demo org."""
    if not settings.graph_configured:
        logger.warning("Microsoft Graph is not configured; serving the demo directory")
        return demo_source()

    return GraphHierarchySource(
        settings.azure_tenant_id,
        settings.azure_client_id,
        settings.azure_client_secret,
        base_url=settings.graph_base_url,
        login_url=settings.graph_login_url,
        page_size=settings.graph_page_size,
        timeout=settings.directory_source_timeout_seconds,
        transport=transport,
    )
