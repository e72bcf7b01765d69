"""
endoflife.date client

Fetches the Windows client and Windows Server release cycles that feed the
version registry. The API is public and unauthenticated; each product is a
single JSON array of cycle objects.
"""

from __future__ import annotations

import logging

import httpx

from sentinel_sync.config import AppConfig, settings
from sentinel_sync.errors import ReferenceFeedError

logger = logging.getLogger(__name__)

WINDOWS_PRODUCT = "windows"
WINDOWS_SERVER_PRODUCT = "windows-server"


class EndOfLifeClient:
    """Client for the endoflife.date product API"""

    def __init__(
        self,
        base_url: str = "https://endoflife.date/api",
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(
        cls,
        cfg: AppConfig = settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "EndOfLifeClient":
        return cls(cfg.ENDOFLIFE_BASE_URL, timeout=cfg.ENDOFLIFE_TIMEOUT_SECONDS, transport=transport)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Accept": "application/json", "User-Agent": f"sentinel-sync/{settings.APP_VERSION}"},
                timeout=httpx.Timeout(connect=10, read=self.timeout, write=10, pool=5),
                transport=self._transport,
            )
        return self._client

    async def cleanup(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self) -> "EndOfLifeClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.cleanup()

    async def product_cycles(self, product: str) -> list[dict]:
        """Return every release cycle listed for *product*."""
        path = f"/{product}.json"
        try:
            resp = await self._get_client().get(path)
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPStatusError as e:
            raise ReferenceFeedError(f"endoflife.date {path}: HTTP {e.response.status_code}") from e
        except httpx.TransportError as e:
            raise ReferenceFeedError(f"endoflife.date {path}: {e}") from e
        except ValueError as e:
            raise ReferenceFeedError(f"endoflife.date {path} returned a non-JSON body") from e

        if not isinstance(body, list):
            raise ReferenceFeedError(f"endoflife.date {path} returned an unexpected body")
        cycles = [c for c in body if isinstance(c, dict)]
        logger.info("Fetched %d %s cycles from endoflife.date", len(cycles), product)
        return cycles
