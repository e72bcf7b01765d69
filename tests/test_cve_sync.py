"""Tests for the CVE sync run and vulnerability rollups."""

import pytest
from sqlalchemy import select

from sentinel_sync.db.models import (
    Endpoint,
    EndpointVulnerability,
    Vulnerability,
    VulnerabilityStatus,
)
from sentinel_sync.services.agent_sync import AgentSyncOrchestrator
from sentinel_sync.services.cve_sync import CveSyncOrchestrator
from tests.conftest import create_tenant, make_agent, make_risk


@pytest.fixture
def agents():
    return [make_agent(1), make_agent(2), make_agent(3)]


async def _seed_endpoints(session_factory, cfg, fake_s1, s1_client, agents):
    await create_tenant(session_factory, "Alpha", "site-a")
    fake_s1.agents = agents
    await AgentSyncOrchestrator(s1_client, session_factory, cfg=cfg).run()


async def _endpoints_by_host(session_factory) -> dict[str, Endpoint]:
    async with session_factory() as db:
        rows = (await db.execute(select(Endpoint))).scalars().all()
    return {e.hostname: e for e in rows}


@pytest.mark.asyncio
class TestCveSync:

    async def test_links_and_rollups(self, session_factory, cfg, fake_s1, s1_client, agents):
        await _seed_endpoints(session_factory, cfg, fake_s1, s1_client, agents)
        fake_s1.risks = [
            make_risk("CVE-2024-0001", agents[0], severity="CRITICAL"),
            make_risk("CVE-2024-0001", agents[1], severity="CRITICAL"),
            make_risk("CVE-2024-0002", agents[0], severity="HIGH"),
            make_risk("NOT-A-CVE", agents[2]),
            make_risk("CVE-2024-0003", make_agent(99)),
            make_risk("CVE-2024-0004", make_agent(50, site_id="site-z")),
        ]

        summary = await CveSyncOrchestrator(s1_client, session_factory, cfg=cfg).run()

        assert summary.processed == 6
        assert summary.created == 3
        assert summary.failed == 1
        assert summary.skipped == 2
        assert summary.unmapped_sites == {"site-z": 1}
        assert summary.status_breakdown == {"CRITICAL": 2, "HIGH": 1}
        assert summary.extra["unique_cves"] == 2
        assert summary.extra["vulnerabilities_created"] == 2
        assert summary.extra["unmapped_endpoints"] == ["HOST-0099"]

        endpoints = await _endpoints_by_host(session_factory)
        assert (endpoints["HOST-0001"].critical_vulns, endpoints["HOST-0001"].high_vulns) == (1, 1)
        assert (endpoints["HOST-0002"].critical_vulns, endpoints["HOST-0002"].high_vulns) == (1, 0)
        assert endpoints["HOST-0003"].critical_vulns == 0

        async with session_factory() as db:
            vuln = (
                await db.execute(select(Vulnerability).where(Vulnerability.cve_id == "CVE-2024-0001"))
            ).scalar_one()
        assert vuln.title == "CVE-2024-0001 in Example App"
        assert vuln.cvss_score == 7.5
        assert vuln.severity == "CRITICAL"

    async def test_second_run_creates_nothing(self, session_factory, cfg, fake_s1, s1_client, agents):
        await _seed_endpoints(session_factory, cfg, fake_s1, s1_client, agents)
        fake_s1.risks = [
            make_risk("CVE-2024-0001", agents[0]),
            make_risk("CVE-2024-0002", agents[1]),
        ]
        orchestrator = CveSyncOrchestrator(s1_client, session_factory, cfg=cfg)

        await orchestrator.run()
        second = await orchestrator.run()
        assert second.created == 0
        assert second.updated == 0
        assert second.unchanged == 2
        assert second.extra["vulnerabilities_created"] == 0
        assert second.extra["vulnerabilities_updated"] == 0

    async def test_resolved_link_reopens(self, session_factory, cfg, fake_s1, s1_client, agents):
        await _seed_endpoints(session_factory, cfg, fake_s1, s1_client, agents)
        fake_s1.risks = [make_risk("CVE-2024-0001", agents[0], severity="LOW")]
        orchestrator = CveSyncOrchestrator(s1_client, session_factory, cfg=cfg)
        await orchestrator.run()

        async with session_factory() as db:
            link = (await db.execute(select(EndpointVulnerability))).scalar_one()
            link.status = VulnerabilityStatus.RESOLVED.value
            await db.commit()

        summary = await orchestrator.run()
        assert summary.updated == 1
        async with session_factory() as db:
            link = (await db.execute(select(EndpointVulnerability))).scalar_one()
        assert link.status == VulnerabilityStatus.OPEN.value

    async def test_endpoint_resolved_by_hostname_when_agent_id_differs(
        self, session_factory, cfg, fake_s1, s1_client, agents
    ):
        await _seed_endpoints(session_factory, cfg, fake_s1, s1_client, agents)
        fake_s1.risks = [make_risk("CVE-2024-0001", agents[0], endpointId="stale-id")]

        summary = await CveSyncOrchestrator(s1_client, session_factory, cfg=cfg).run()
        assert summary.created == 1
        assert summary.extra["unmapped_endpoint_count"] == 0

    async def test_catalog_updates_when_score_changes(self, session_factory, cfg, fake_s1, s1_client, agents):
        await _seed_endpoints(session_factory, cfg, fake_s1, s1_client, agents)
        fake_s1.risks = [make_risk("CVE-2024-0001", agents[0])]
        orchestrator = CveSyncOrchestrator(s1_client, session_factory, cfg=cfg)
        await orchestrator.run()

        fake_s1.risks = [make_risk("CVE-2024-0001", agents[0], nvdBaseScore=9.8)]
        summary = await orchestrator.run()
        assert summary.extra["vulnerabilities_updated"] == 1
        assert summary.unchanged == 1

    async def test_rolled_back_row_does_not_cache_catalog_entry(
        self, session_factory, cfg, fake_s1, s1_client, agents
    ):
        await _seed_endpoints(session_factory, cfg, fake_s1, s1_client, agents)
        fake_s1.risks = [
            make_risk("CVE-2024-0001", agents[0]),
            make_risk("CVE-2024-0001", agents[1]),
        ]

        class _FailFirstLink(CveSyncOrchestrator):
            async def upsert_record(self, db, record, tenant, ctx):
                result = await super().upsert_record(db, record, tenant, ctx)
                if record.endpoint_name == "HOST-0001":
                    db.add(Endpoint(tenant_id=tenant.id, hostname="HOST-0002"))
                    await db.flush()
                return result

        summary = await _FailFirstLink(s1_client, session_factory, cfg=cfg).run()

        assert (summary.created, summary.failed) == (1, 1)
        assert summary.extra["unique_cves"] == 1
        assert summary.extra["vulnerabilities_created"] == 1
        async with session_factory() as db:
            catalog = (await db.execute(select(Vulnerability))).scalars().all()
            links = (await db.execute(select(EndpointVulnerability))).scalars().all()
        assert [v.cve_id for v in catalog] == ["CVE-2024-0001"]
        assert [link.vulnerability_id for link in links] == [catalog[0].id]
