"""Wires clients, sessions and orchestrators for one process.

Entry points (CLI, API job handlers) build a ``SyncRuntime`` around their
session factory; each run gets a fresh SentinelOne client that is closed
when the run ends.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sentinel_sync.config import AppConfig, settings
from sentinel_sync.core.endoflife import EndOfLifeClient
from sentinel_sync.core.sentinelone import SentinelOneClient
from sentinel_sync.services.agent_sync import AgentSyncOrchestrator
from sentinel_sync.services.cve_sync import CveSyncOrchestrator
from sentinel_sync.services.identity import IdentityResolver, SiteDiagnosis, TenantSyncResult
from sentinel_sync.services.job_ledger import JobLedger
from sentinel_sync.services.sync_engine import RunSummary, run_with_retry
from sentinel_sync.services.windows_compliance import (
    EvaluationSummary,
    WindowsComplianceEvaluator,
)
from sentinel_sync.services.windows_versions import refresh_registry

logger = logging.getLogger(__name__)


@dataclass
class SyncRuntime:
    session_factory: async_sessionmaker[AsyncSession]
    cfg: AppConfig = field(default_factory=lambda: settings)
    client_factory: Optional[Callable[[], SentinelOneClient]] = None
    feed_client_factory: Optional[Callable[[], EndOfLifeClient]] = None
    ledger: JobLedger = field(init=False)

    def __post_init__(self):
        self.ledger = JobLedger(self.session_factory)

    def new_client(self) -> SentinelOneClient:
        if self.client_factory is not None:
            return self.client_factory()
        return SentinelOneClient.from_settings(self.cfg)

    def new_feed_client(self) -> EndOfLifeClient:
        if self.feed_client_factory is not None:
            return self.feed_client_factory()
        return EndOfLifeClient.from_settings(self.cfg)

    @property
    def resolver(self) -> IdentityResolver:
        return IdentityResolver(self.session_factory, self.cfg)

    async def run_agents(self, tenant_id: Optional[str] = None) -> RunSummary:
        async with self.new_client() as client:
            orchestrator = AgentSyncOrchestrator(
                client, self.session_factory, ledger=self.ledger, cfg=self.cfg
            )
            return await orchestrator.run(tenant_id)

    async def run_cves(
        self, tenant_id: Optional[str] = None, max_attempts: Optional[int] = None
    ) -> RunSummary:
        async with self.new_client() as client:
            orchestrator = CveSyncOrchestrator(
                client, self.session_factory, ledger=self.ledger, cfg=self.cfg
            )
            return await run_with_retry(
                lambda: orchestrator.run(tenant_id),
                max_attempts=max_attempts or self.cfg.SYNC_MAX_ATTEMPTS,
                base_delay=self.cfg.SYNC_RETRY_BASE_SECONDS,
                max_delay=self.cfg.SYNC_RETRY_MAX_SECONDS,
            )

    async def run_full(
        self, tenant_id: Optional[str] = None, max_attempts: Optional[int] = None
    ) -> dict:
        """Agents first so CVE rows can resolve their endpoints."""
        agents = await self.run_agents(tenant_id)
        cves = await self.run_cves(tenant_id, max_attempts=max_attempts)
        return {"agents": agents.to_dict(), "cves": cves.to_dict()}

    async def diagnose_sites(self) -> SiteDiagnosis:
        async with self.new_client() as client:
            return await self.resolver.diagnose(client)

    async def sync_tenants(self, *, dry_run: bool = False) -> TenantSyncResult:
        async with self.new_client() as client:
            resolver = self.resolver
            sites = await resolver.fetch_all_sites(client)
            return await resolver.sync_tenants(sites, create_missing=True, dry_run=dry_run)

    async def evaluate_windows(
        self, tenant_id: str, endpoint_ids: Optional[Sequence[str]] = None
    ) -> EvaluationSummary:
        return await WindowsComplianceEvaluator(self.session_factory).evaluate_tenant(
            tenant_id, endpoint_ids=endpoint_ids
        )

    async def refresh_windows_registry(self) -> dict:
        async with self.new_feed_client() as client, self.session_factory() as db:
            result = await refresh_registry(db, client)
            await db.commit()
        return result
