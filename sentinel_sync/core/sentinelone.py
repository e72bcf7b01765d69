"""
SentinelOne Management API Client

Thin async wrapper over the v2.1 management API: cursor-paginated listing
of sites, agents and application risk (CVE) rows, plus a few single-call
lookups used for diagnostics. Records are validated into typed models
before they leave this module.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

import httpx

from sentinel_sync.config import AppConfig, settings
from sentinel_sync.errors import TransientNetworkError, UpstreamAPIError
from sentinel_sync.schemas.upstream import (
    Agent,
    Page,
    RiskRecord,
    Site,
    UpstreamModel,
    parse_records,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200


def _error_message(resp: httpx.Response) -> str | None:
    try:
        body = resp.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    if body.get("message"):
        return str(body["message"])
    errors = body.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        first = errors[0]
        return first.get("title") or first.get("detail")
    return None


class SentinelOneClient:
    """Client for the SentinelOne management API"""

    def __init__(
        self,
        base_url: str,
        api_token: str,
        *,
        timeout: float = 30.0,
        page_size: int = MAX_PAGE_SIZE,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the client

        Args:
            base_url: API root including the version path,
                e.g. https://tenant.sentinelone.net/web/api/v2.1
            api_token: API token sent as ``Authorization: ApiToken <token>``
            timeout: Read timeout in seconds for a single request
            page_size: Default page size when callers pass no limit
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.timeout = timeout
        self.page_size = self._clamp_limit(page_size)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(
        cls,
        cfg: AppConfig = settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "SentinelOneClient":
        cfg.require_sentinelone()
        return cls(
            cfg.sentinelone_base_url,
            cfg.SENTINELONE_API_KEY,
            timeout=cfg.SENTINELONE_TIMEOUT_SECONDS,
            page_size=cfg.SENTINELONE_PAGE_SIZE,
            transport=transport,
        )

    # ── HTTP plumbing ─────────────────────────────────────────────────

    def _headers(self) -> dict:
        return {
            "Authorization": f"ApiToken {self.api_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=httpx.Timeout(connect=10, read=self.timeout, write=10, pool=5),
                transport=self._transport,
            )
        return self._client

    async def cleanup(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self) -> "SentinelOneClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.cleanup()

    @staticmethod
    def _clamp_limit(limit: int | None) -> int:
        if limit is None:
            return MAX_PAGE_SIZE
        return max(1, min(int(limit), MAX_PAGE_SIZE))

    async def _send(self, path: str, query: dict, retry_connect: bool = True) -> httpx.Response:
        client = self._get_client()
        try:
            return await client.get(path, params=query)
        except httpx.ConnectError as e:
            if not retry_connect:
                raise TransientNetworkError(f"Cannot connect to SentinelOne ({path}): {e}") from e
            logger.warning("Connect to SentinelOne failed (%s), retrying once: %s", path, e)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"SentinelOne request timed out ({path})") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"SentinelOne transport error ({path}): {e}") from e
        return await self._send(path, query, retry_connect=False)

    async def _get(self, path: str, params: dict | None = None) -> dict:
        """GET *path* and return the decoded JSON body.

        A connection failure is retried once, immediately. Timeouts and
        other transport errors surface as TransientNetworkError; non-2xx
        responses as UpstreamAPIError.
        """
        query = {k: v for k, v in (params or {}).items() if v is not None}
        resp = await self._send(path, query)
        if not resp.is_success:
            raise UpstreamAPIError(resp.status_code, resp.text[:2000], _error_message(resp))

        try:
            body = resp.json()
        except ValueError as e:
            raise TransientNetworkError(f"SentinelOne returned a non-JSON body ({path})") from e
        if not isinstance(body, dict):
            raise TransientNetworkError(f"SentinelOne returned an unexpected body ({path})")
        return body

    @staticmethod
    def _to_page(body: dict, raw: Any, model: type[UpstreamModel]) -> Page:
        items, rejected = parse_records(model, raw if isinstance(raw, list) else [])
        pagination = body.get("pagination") or {}
        total = pagination.get("totalItems")
        for r in rejected:
            logger.warning("Rejected %s record %s: %s", model.__name__, r.record_id, r.reason)
        return Page(
            items=items,
            next_cursor=pagination.get("nextCursor") or None,
            total_items=int(total) if total is not None else None,
            rejected=rejected,
        )

    @staticmethod
    def _join_ids(ids: Optional[Sequence[str]]) -> str | None:
        return ",".join(ids) if ids else None

    # ── Listings ──────────────────────────────────────────────────────

    async def list_sites(self, cursor: str | None = None, limit: int | None = None) -> Page[Site]:
        """
        List one page of sites

        Args:
            cursor: Cursor from the previous page, or None for the first page
            limit: Page size (clamped to 1-200)

        Returns:
            Page of Site records
        """
        body = await self._get(
            "/sites",
            {"cursor": cursor, "limit": self._clamp_limit(limit or self.page_size)},
        )
        data = body.get("data") or {}
        raw = data.get("sites", []) if isinstance(data, dict) else data
        return self._to_page(body, raw, Site)

    async def list_agents(
        self,
        cursor: str | None = None,
        limit: int | None = None,
        *,
        site_ids: Optional[Sequence[str]] = None,
        is_active: bool | None = None,
        sort_by: str = "lastActiveDate",
        sort_order: str = "desc",
    ) -> Page[Agent]:
        """
        List one page of agents

        No activity filter is applied unless ``is_active`` is given, so
        inactive and decommissioned devices are included by default.

        Args:
            cursor: Cursor from the previous page
            limit: Page size (clamped to 1-200)
            site_ids: Restrict to these site ids
            is_active: Optional activity filter
            sort_by: Upstream sort field
            sort_order: asc | desc

        Returns:
            Page of Agent records
        """
        params = {
            "cursor": cursor,
            "limit": self._clamp_limit(limit or self.page_size),
            "siteIds": self._join_ids(site_ids),
            "sortBy": sort_by,
            "sortOrder": sort_order,
        }
        if is_active is not None:
            params["isActive"] = "true" if is_active else "false"
        body = await self._get("/agents", params)
        return self._to_page(body, body.get("data"), Agent)

    async def list_vulnerability_records(
        self,
        cursor: str | None = None,
        limit: int | None = None,
        *,
        site_ids: Optional[Sequence[str]] = None,
    ) -> Page[RiskRecord]:
        """List one page of (CVE, endpoint) rows from application management."""
        body = await self._get(
            "/application-management/risks",
            {
                "cursor": cursor,
                "limit": self._clamp_limit(limit or self.page_size),
                "siteIds": self._join_ids(site_ids),
            },
        )
        return self._to_page(body, body.get("data"), RiskRecord)

    # ── Single-call lookups ───────────────────────────────────────────

    async def _total(self, path: str, params: dict) -> int:
        body = await self._get(path, {**params, "limit": 1})
        total = (body.get("pagination") or {}).get("totalItems")
        return int(total) if total is not None else 0

    async def count_agents(self, site_id: str | None = None) -> int:
        """Total agents upstream (optionally for one site), all activity states."""
        return await self._total("/agents", {"siteIds": site_id})

    async def count_vulnerability_records(self) -> int:
        return await self._total("/application-management/risks", {})

    async def get_agent(self, agent_id: str) -> Agent | None:
        body = await self._get("/agents", {"ids": agent_id, "limit": 1})
        page = self._to_page(body, body.get("data"), Agent)
        return page.items[0] if page.items else None

    async def get_site(self, site_id: str) -> Site | None:
        try:
            body = await self._get(f"/sites/{site_id}")
        except UpstreamAPIError as e:
            if e.status_code == 404:
                return None
            raise
        data = body.get("data")
        if not isinstance(data, dict):
            return None
        items, _ = parse_records(Site, [data])
        return items[0] if items else None
