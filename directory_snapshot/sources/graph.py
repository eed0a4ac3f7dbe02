"""Microsoft Graph hierarchy source using the Graph REST API."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any
from urllib.parse import quote

import httpx

from directory_snapshot.exceptions import GraphAuthError, SourceUnavailableError
from directory_snapshot.schemas.directory import DirectoryNode

logger = logging.getLogger(__name__)

GRAPH_SCOPE = "https://graph.microsoft.com/.default"
GRAPH_USER_TYPE = "#microsoft.graph.user"
USER_SELECT = ",".join(
    [
        "id",
        "displayName",
        "mail",
        "userPrincipalName",
        "jobTitle",
        "employeeType",
        "department",
        "officeLocation",
    ]
)
# Refresh the token this many seconds before Graph says it expires.
_TOKEN_EXPIRY_MARGIN = 60


class GraphHierarchySource:
    """Build the org tree from Graph ``/users``, ``/manager`` and ``/directReports``.

    Top-level users are the enabled users Graph reports no manager for. Each
    one is expanded recursively through its direct reports. Requests share a
    single client and at most ``max_concurrency`` run at once.
    """

    name = "graph"

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        *,
        base_url: str = "https://graph.microsoft.com/v1.0",
        login_url: str = "https://login.microsoftonline.com",
        page_size: int = 999,
        max_concurrency: int = 8,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._tenant_id = tenant_id
        self._client_id = client_id
        self._client_secret = client_secret
        self._base_url = base_url.rstrip("/")
        self._login_url = login_url.rstrip("/")
        self._page_size = page_size
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._token: str | None = None
        self._token_expires_at = 0.0

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def _get_token(self) -> str:
        if self._token is not None and time.monotonic() < self._token_expires_at:
            return self._token

        token_url = f"{self._login_url}/{quote(self._tenant_id, safe='')}/oauth2/v2.0/token"
        try:
            resp = await self._client.post(
                token_url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "scope": GRAPH_SCOPE,
                },
            )
        except httpx.HTTPError as exc:
            logger.error("Graph token request failed: %s", exc)
            raise SourceUnavailableError("Graph token request failed") from exc

        if resp.status_code != 200:
            logger.error("Graph token request rejected: HTTP %d", resp.status_code)
            raise GraphAuthError(f"Graph token request rejected: HTTP {resp.status_code}")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise GraphAuthError("Graph token response is not valid JSON") from exc
        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token:
            raise GraphAuthError("Graph token response has no access_token")

        expires_in = payload.get("expires_in", 3600)
        try:
            lifetime = float(expires_in)
        except (TypeError, ValueError):
            lifetime = 3600.0
        self._token = access_token
        self._token_expires_at = time.monotonic() + max(lifetime - _TOKEN_EXPIRY_MARGIN, 0.0)
        return access_token

    def _url(self, path_or_url: str) -> str:
        if path_or_url.startswith("http"):
            return path_or_url
        return f"{self._base_url}{path_or_url}"

    async def _request(self, url: str, params: dict[str, Any] | None) -> httpx.Response:
        token = await self._get_token()
        resp = await self._send(url, params, token)
        if resp.status_code == 401:
            # Token revoked or expired early; fetch a new one once.
            self._token = None
            token = await self._get_token()
            resp = await self._send(url, params, token)
        return resp

    async def _send(self, url: str, params: dict[str, Any] | None, token: str) -> httpx.Response:
        try:
            async with self._semaphore:
                return await self._client.get(
                    url,
                    params=params,
                    headers={"Authorization": f"Bearer {token}"},
                )
        except httpx.HTTPError as exc:
            logger.error("Graph request failed: GET %s: %s", url, exc)
            raise SourceUnavailableError(f"Graph request failed: GET {url}") from exc

    @staticmethod
    def _decode(resp: httpx.Response) -> dict[str, Any]:
        url = str(resp.request.url)
        if not resp.is_success:
            logger.error("Graph request failed: GET %s -> HTTP %d", url, resp.status_code)
            raise SourceUnavailableError(f"Graph request failed: GET {url} -> {resp.status_code}")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise SourceUnavailableError(f"Graph returned invalid JSON for GET {url}") from exc
        if not isinstance(payload, dict):
            raise SourceUnavailableError(f"Graph returned unexpected payload for GET {url}")
        return payload

    async def _get_json(
        self, path_or_url: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        resp = await self._request(self._url(path_or_url), params)
        return self._decode(resp)

    async def _get_collection(self, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        """GET a collection, following ``@odata.nextLink`` pages."""
        items: list[dict[str, Any]] = []
        next_url: str | None = path
        next_params: dict[str, Any] | None = params
        while next_url is not None:
            payload = await self._get_json(next_url, next_params)
            value = payload.get("value", [])
            if not isinstance(value, list):
                raise SourceUnavailableError(f"Graph collection {path} has no value list")
            items.extend(item for item in value if isinstance(item, dict))
            link = payload.get("@odata.nextLink")
            next_url = link if isinstance(link, str) else None
            # nextLink already carries the query string
            next_params = None
        return items

    async def list_users(self) -> list[dict[str, Any]]:
        """All enabled users."""
        return await self._get_collection(
            "/users",
            {
                "$select": USER_SELECT,
                "$top": self._page_size,
                "$filter": "accountEnabled eq true",
            },
        )

    async def has_manager(self, user_id: str) -> bool:
        """True unless Graph answers 404 for the user's manager."""
        resp = await self._request(
            self._url(f"/users/{quote(user_id, safe='')}/manager"), {"$select": "id"}
        )
        if resp.status_code == 404:
            return False
        self._decode(resp)
        return True

    async def get_user_with_reports(
        self,
        user_id: str,
        known: dict[str, dict[str, Any]] | None = None,
        seen: set[str] | None = None,
    ) -> DirectoryNode:
        """Fetch a user and, recursively, everyone reporting to them.

        ``known`` holds user records already fetched by :meth:`list_users`, so
        only the direct-report edges cost a request. ``seen`` guards against
        manager cycles in the directory.
        """
        known = known if known is not None else {}
        seen = seen if seen is not None else set()
        seen.add(user_id)

        user = known.get(user_id)
        if user is None:
            user = await self._get_json(
                f"/users/{quote(user_id, safe='')}", {"$select": USER_SELECT}
            )

        reports = await self._get_collection(
            f"/users/{quote(user_id, safe='')}/directReports",
            {"$select": USER_SELECT},
        )
        report_ids: list[str] = []
        for report in reports:
            odata_type = report.get("@odata.type", GRAPH_USER_TYPE)
            report_id = report.get("id")
            # directReports may include org contacts; only users belong in the tree
            if odata_type != GRAPH_USER_TYPE or not isinstance(report_id, str):
                continue
            if report_id in seen:
                logger.warning("Skipping repeated directory user %s under %s", report_id, user_id)
                continue
            seen.add(report_id)
            known.setdefault(report_id, report)
            report_ids.append(report_id)

        children = await asyncio.gather(
            *(self.get_user_with_reports(rid, known, seen) for rid in report_ids)
        )
        try:
            return DirectoryNode.model_validate({**user, "directReports": list(children)})
        except ValueError as exc:
            msg = f"Graph returned an invalid user record: {user_id}"
            raise SourceUnavailableError(msg) from exc

    async def fetch_hierarchy(self) -> list[DirectoryNode]:
        started = time.monotonic()
        users = await self.list_users()
        known = {u["id"]: u for u in users if isinstance(u.get("id"), str)}

        flags = await asyncio.gather(*(self.has_manager(user_id) for user_id in known))
        top_level = [user_id for user_id, managed in zip(known, flags, strict=True) if not managed]

        seen: set[str] = set(top_level)
        roots = await asyncio.gather(
            *(self.get_user_with_reports(user_id, known, seen) for user_id in top_level)
        )
        logger.info(
            "Fetched Graph hierarchy: %d users, %d top-level, %d ms",
            len(known),
            len(top_level),
            int((time.monotonic() - started) * 1000),
        )
        return list(roots)
