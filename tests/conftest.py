"""Shared pytest fixtures for Sentinel Sync tests.

Provides:
- Async test database (in-memory SQLite, fresh per test)
- A fake SentinelOne management API on httpx.MockTransport
- A fake endoflife.date feed for the Windows version registry
- Test client (httpx AsyncClient on the FastAPI app)
- Factory functions for tenants, agents, sites and CVE rows
"""

import os
from dataclasses import dataclass
from typing import AsyncGenerator, Optional

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Force test database and no real SentinelOne credentials
os.environ["SS_DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SS_SENTINELONE_ENDPOINT"] = ""
os.environ["SS_SENTINELONE_API_KEY"] = ""

from sentinel_sync.api.deps import get_job_queue, get_runtime
from sentinel_sync.config import AppConfig
from sentinel_sync.core.endoflife import EndOfLifeClient
from sentinel_sync.core.sentinelone import SentinelOneClient
from sentinel_sync.db import create_engine_for, create_session_factory, get_db, get_session_factory, init_db
from sentinel_sync.db.models import Tenant
from sentinel_sync.main import app
from sentinel_sync.services.job_queue import JobQueue
from sentinel_sync.services.runtime import SyncRuntime

API_PREFIX = "/web/api/v2.1"
TEST_TOKEN = "test-token"


# ── Fake SentinelOne ──────────────────────────────────────────────────


@dataclass
class InjectedFailure:
    path: str
    status: int = 503
    exc: Optional[type] = None
    remaining: int = 1
    skip: int = 0


class FakeSentinelOne:
    """In-memory management API: cursor = offset, filtered by siteIds / ids."""

    def __init__(self):
        self.sites: list[dict] = []
        self.agents: list[dict] = []
        self.risks: list[dict] = []
        self.requests: list[httpx.Request] = []
        self.failures: list[InjectedFailure] = []
        self.endless_cursor = False
        self.transport = httpx.MockTransport(self.handler)

    def fail_next(
        self, path: str, status: int = 503, exc: Optional[type] = None, times: int = 1, skip: int = 0
    ):
        self.failures.append(
            InjectedFailure(path=path, status=status, exc=exc, remaining=times, skip=skip)
        )

    def count(self, path: str) -> int:
        return sum(1 for r in self.requests if r.url.path == API_PREFIX + path)

    def _injected(self, request: httpx.Request, path: str) -> Optional[httpx.Response]:
        for failure in self.failures:
            if failure.remaining > 0 and path == failure.path:
                if failure.skip:
                    failure.skip -= 1
                    continue
                failure.remaining -= 1
                if failure.exc is not None:
                    raise failure.exc("injected failure", request=request)
                return httpx.Response(
                    failure.status, json={"errors": [{"title": f"injected {failure.status}"}]}
                )
        return None

    @staticmethod
    def _filtered(rows: list[dict], request: httpx.Request) -> list[dict]:
        site_ids = request.url.params.get("siteIds")
        if site_ids:
            wanted = set(site_ids.split(","))
            rows = [r for r in rows if r.get("siteId") in wanted]
        ids = request.url.params.get("ids")
        if ids:
            wanted = set(ids.split(","))
            rows = [r for r in rows if r.get("id") in wanted]
        return rows

    def _page(self, rows: list[dict], request: httpx.Request, wrap: Optional[str] = None) -> httpx.Response:
        limit = int(request.url.params.get("limit", 200))
        cursor = request.url.params.get("cursor")
        offset = 0 if self.endless_cursor or not cursor else int(cursor)
        chunk = rows[offset:offset + limit]
        if self.endless_cursor:
            next_cursor = "again"
        else:
            next_cursor = str(offset + limit) if offset + limit < len(rows) else None
        data = {wrap: chunk} if wrap else chunk
        return httpx.Response(
            200,
            json={"data": data, "pagination": {"nextCursor": next_cursor, "totalItems": len(rows)}},
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path[len(API_PREFIX):]

        injected = self._injected(request, path)
        if injected is not None:
            return injected

        if request.headers.get("Authorization") != f"ApiToken {TEST_TOKEN}":
            return httpx.Response(401, json={"errors": [{"title": "Authentication Failed"}]})

        if path == "/sites":
            return self._page(self.sites, request, wrap="sites")
        if path.startswith("/sites/"):
            site_id = path.rsplit("/", 1)[-1]
            for site in self.sites:
                if site["id"] == site_id:
                    return httpx.Response(200, json={"data": site})
            return httpx.Response(404, json={"errors": [{"title": "Site not found"}]})
        if path == "/agents":
            return self._page(self._filtered(self.agents, request), request)
        if path == "/application-management/risks":
            return self._page(self._filtered(self.risks, request), request)
        return httpx.Response(404, json={"message": "Unknown path"})


# ── Factory helpers ───────────────────────────────────────────────────


# ── Fake endoflife.date ───────────────────────────────────────────────


class FakeEndOfLife:
    """Serves ``/api/<product>.json`` from ``products``; ``status`` forces an error."""

    def __init__(self):
        self.products: dict[str, list[dict]] = {"windows": [], "windows-server": []}
        self.status: dict[str, int] = {}
        self.requests: list[httpx.Request] = []
        self.transport = httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        product = request.url.path.rsplit("/", 1)[-1].removesuffix(".json")
        if product in self.status:
            return httpx.Response(self.status[product], text="unavailable")
        if product not in self.products:
            return httpx.Response(404, json={"message": "Product not found"})
        return httpx.Response(200, json=self.products[product])


def make_cycle(cycle: str, latest: str, release: str, eol, **overrides) -> dict:
    entry = {
        "cycle": cycle,
        "releaseLabel": cycle.upper(),
        "releaseDate": release,
        "eol": eol,
        "support": eol,
        "latest": latest,
        "lts": False,
    }
    entry.update(overrides)
    return entry


def make_site(site_id: str, name: str, **overrides) -> dict:
    site = {
        "id": site_id,
        "name": name,
        "accountName": "Test Account",
        "siteType": "Paid",
        "state": "active",
    }
    site.update(overrides)
    return site


def make_agent(index: int, site_id: str = "site-a", **overrides) -> dict:
    agent = {
        "id": f"agent-{index}",
        "computerName": f"HOST-{index:04d}",
        "siteId": site_id,
        "osName": "Windows 11 Enterprise",
        "osRevision": "10.0.22631.4317",
        "isActive": True,
        "isUpToDate": True,
        "infected": False,
        "activeThreats": 0,
        "lastActiveDate": "2026-10-01T12:00:00Z",
        "externalIp": f"203.0.113.{index % 250}",
    }
    agent.update(overrides)
    return agent


def make_risk(cve_id: str, agent: dict, severity: str = "HIGH", **overrides) -> dict:
    risk = {
        "cveId": cve_id,
        "severity": severity,
        "nvdBaseScore": 7.5,
        "applicationName": "Example App",
        "applicationVendor": "Example Corp",
        "applicationVersion": "1.2.3",
        "endpointId": agent["id"],
        "endpointName": agent["computerName"],
        "siteId": agent["siteId"],
    }
    risk.update(overrides)
    return risk


async def create_tenant(session_factory, name: str, site_id: Optional[str], slug: Optional[str] = None) -> Tenant:
    async with session_factory() as db:
        tenant = Tenant(name=name, slug=slug or name.lower().replace(" ", "-"), sentinelone_site_id=site_id)
        db.add(tenant)
        await db.commit()
        return tenant


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest.fixture
def cfg() -> AppConfig:
    return AppConfig(
        SENTINELONE_ENDPOINT="https://s1.test",
        SENTINELONE_API_KEY=TEST_TOKEN,
        SYNC_RETRY_BASE_SECONDS=0.0,
        SYNC_RETRY_MAX_SECONDS=0.0,
        SYNC_PROGRESS_LOG_EVERY=100,
    )


@pytest.fixture
def fake_s1() -> FakeSentinelOne:
    return FakeSentinelOne()


@pytest.fixture
def fake_eol() -> FakeEndOfLife:
    return FakeEndOfLife()


@pytest_asyncio.fixture
async def test_engine():
    """Fresh in-memory database per test."""
    engine = create_engine_for("sqlite+aiosqlite:///:memory:")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return create_session_factory(test_engine)


@pytest_asyncio.fixture
async def s1_client(cfg, fake_s1) -> AsyncGenerator[SentinelOneClient, None]:
    client = SentinelOneClient.from_settings(cfg, transport=fake_s1.transport)
    yield client
    await client.cleanup()


@pytest.fixture
def runtime(session_factory, cfg, fake_s1, fake_eol) -> SyncRuntime:
    return SyncRuntime(
        session_factory,
        cfg,
        client_factory=lambda: SentinelOneClient.from_settings(cfg, transport=fake_s1.transport),
        feed_client_factory=lambda: EndOfLifeClient.from_settings(cfg, transport=fake_eol.transport),
    )


@pytest.fixture
def job_queue() -> JobQueue:
    """Unstarted queue: submitted jobs stay QUEUED."""
    return JobQueue(max_workers=1)


@pytest_asyncio.fixture
async def client(session_factory, runtime, job_queue) -> AsyncGenerator[AsyncClient, None]:
    """Async test client with DB, runtime and queue dependencies overridden."""

    async def _override_get_db():
        async with session_factory() as session:
            yield session
            await session.commit()

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_runtime] = lambda: runtime
    app.dependency_overrides[get_job_queue] = lambda: job_queue

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
