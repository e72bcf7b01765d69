"""Tests for the agent -> endpoint sync run."""

import asyncio

import pytest
from sqlalchemy import func, select

from sentinel_sync.db.models import Endpoint, SyncJob, SyncStatus
from sentinel_sync.errors import ConfigurationError, PageLimitExceededError, UpstreamAPIError
from sentinel_sync.services.agent_sync import AgentSyncOrchestrator
from sentinel_sync.services.job_ledger import JobLedger
from tests.conftest import create_tenant, make_agent


def _orchestrator(s1_client, session_factory, cfg) -> AgentSyncOrchestrator:
    return AgentSyncOrchestrator(s1_client, session_factory, cfg=cfg)


async def _endpoint_count(session_factory) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count()).select_from(Endpoint))).scalar_one()


async def _jobs(session_factory) -> list[SyncJob]:
    return await JobLedger(session_factory).list_recent()


@pytest.mark.asyncio
class TestAgentSync:

    async def test_450_agents_over_three_pages(self, session_factory, cfg, fake_s1, s1_client):
        await create_tenant(session_factory, "Alpha", "site-a")
        fake_s1.agents = [make_agent(i) for i in range(450)]

        summary = await _orchestrator(s1_client, session_factory, cfg).run()

        assert fake_s1.count("/agents") == 3
        assert summary.pages == 3
        assert summary.processed == 450
        assert summary.created == 450
        assert summary.total_available == 450
        assert summary.status == SyncStatus.COMPLETED.value
        assert summary.tenant_breakdown["alpha"]["created"] == 450
        assert summary.status_breakdown == {"compliant": 450}
        assert await _endpoint_count(session_factory) == 450

        jobs = await _jobs(session_factory)
        assert len(jobs) == 1
        assert jobs[0].status == SyncStatus.COMPLETED.value
        assert jobs[0].records_processed == 450
        assert jobs[0].records_created == 450
        assert jobs[0].tenant_id is None
        assert jobs[0].details["pages"] == 3

    async def test_second_run_is_idempotent(self, session_factory, cfg, fake_s1, s1_client):
        await create_tenant(session_factory, "Alpha", "site-a")
        fake_s1.agents = [make_agent(i) for i in range(250)]
        orchestrator = _orchestrator(s1_client, session_factory, cfg)

        await orchestrator.run()
        second = await orchestrator.run()
        assert second.created == 0
        assert second.updated == 0
        assert second.unchanged == 250

        fake_s1.agents[3] = make_agent(3, infected=True)
        third = await orchestrator.run()
        assert third.created == 0
        assert third.updated == 1
        assert third.status_breakdown == {"compliant": 249, "non_compliant": 1}
        assert await _endpoint_count(session_factory) == 250

    async def test_counters_add_up(self, session_factory, cfg, fake_s1, s1_client):
        await create_tenant(session_factory, "Alpha", "site-a")
        fake_s1.agents = [
            make_agent(1),
            make_agent(2, site_id="site-unknown"),
            {"id": "broken", "siteId": "site-a"},
        ]
        summary = await _orchestrator(s1_client, session_factory, cfg).run()

        assert summary.processed == 3
        assert summary.processed == (
            summary.created + summary.updated + summary.unchanged + summary.skipped + summary.failed
        )
        assert (summary.created, summary.skipped, summary.failed) == (1, 1, 1)

    async def test_unmapped_site_is_skipped_not_fatal(self, session_factory, cfg, fake_s1, s1_client):
        await create_tenant(session_factory, "Alpha", "site-a")
        fake_s1.agents = [make_agent(i) for i in range(3)] + [
            make_agent(100, site_id="site-z"),
            make_agent(101, site_id="site-z"),
        ]

        summary = await _orchestrator(s1_client, session_factory, cfg).run()
        assert summary.status == SyncStatus.COMPLETED.value
        assert summary.skipped == 2
        assert summary.unmapped_sites == {"site-z": 2}
        assert summary.coverage_percent == 60.0

        async with session_factory() as db:
            hostnames = set((await db.execute(select(Endpoint.hostname))).scalars().all())
        assert "HOST-0100" not in hostnames
        assert len(hostnames) == 3

        job = (await _jobs(session_factory))[0]
        assert job.status == SyncStatus.COMPLETED.value
        assert job.records_skipped == 2

    async def test_empty_mapping_fails_before_fetch(self, session_factory, cfg, fake_s1, s1_client):
        await create_tenant(session_factory, "No Site", None)
        fake_s1.agents = [make_agent(1)]

        with pytest.raises(ConfigurationError):
            await _orchestrator(s1_client, session_factory, cfg).run()
        assert fake_s1.requests == []
        assert await _jobs(session_factory) == []

    async def test_tenant_scoped_run(self, session_factory, cfg, fake_s1, s1_client):
        alpha = await create_tenant(session_factory, "Alpha", "site-a")
        await create_tenant(session_factory, "Beta", "site-b")
        fake_s1.agents = [make_agent(1), make_agent(2, site_id="site-b")]

        summary = await _orchestrator(s1_client, session_factory, cfg).run(alpha.id)
        assert summary.processed == 1
        assert fake_s1.requests[0].url.params["siteIds"] == "site-a"

        job = (await _jobs(session_factory))[0]
        assert job.tenant_id == alpha.id

    async def test_endpoint_fields_and_score(self, session_factory, cfg, fake_s1, s1_client):
        tenant = await create_tenant(session_factory, "Alpha", "site-a")
        fake_s1.agents = [make_agent(1, isActive=False, externalIp=None, lastIpToMgmt="10.1.1.1")]

        await _orchestrator(s1_client, session_factory, cfg).run()
        async with session_factory() as db:
            endpoint = (await db.execute(select(Endpoint))).scalar_one()
        assert endpoint.tenant_id == tenant.id
        assert endpoint.hostname == "HOST-0001"
        assert endpoint.sentinelone_agent_id == "agent-1"
        assert endpoint.ip_address == "10.1.1.1"
        assert endpoint.compliance_score == 75
        assert endpoint.is_compliant is False

    async def test_reenrolled_agent_keeps_endpoint_row(self, session_factory, cfg, fake_s1, s1_client):
        await create_tenant(session_factory, "Alpha", "site-a")
        orchestrator = _orchestrator(s1_client, session_factory, cfg)
        fake_s1.agents = [make_agent(1)]
        await orchestrator.run()

        fake_s1.agents = [make_agent(1, id="agent-new")]
        summary = await orchestrator.run()
        assert summary.updated == 1
        async with session_factory() as db:
            endpoint = (await db.execute(select(Endpoint))).scalar_one()
        assert endpoint.sentinelone_agent_id == "agent-new"

    async def test_runaway_cursor_hits_page_ceiling(self, session_factory, cfg, fake_s1, s1_client):
        await create_tenant(session_factory, "Alpha", "site-a")
        fake_s1.agents = [make_agent(i) for i in range(3)]
        fake_s1.endless_cursor = True

        with pytest.raises(PageLimitExceededError):
            await _orchestrator(s1_client, session_factory, cfg).run()

        # expected 1 page, ceiling is 10x
        assert fake_s1.count("/agents") == 10
        job = (await _jobs(session_factory))[0]
        assert job.status == SyncStatus.FAILED.value
        assert "PageLimitExceededError" in job.error_message
        assert await _endpoint_count(session_factory) == 3

    async def test_failure_mid_run_keeps_committed_pages(self, session_factory, cfg, fake_s1, s1_client):
        await create_tenant(session_factory, "Alpha", "site-a")
        fake_s1.agents = [make_agent(i) for i in range(450)]
        fake_s1.fail_next("/agents", status=500, skip=1)

        with pytest.raises(UpstreamAPIError):
            await _orchestrator(s1_client, session_factory, cfg).run()

        assert await _endpoint_count(session_factory) == 200
        job = (await _jobs(session_factory))[0]
        assert job.status == SyncStatus.FAILED.value
        assert job.records_processed == 200
        assert job.completed_at is not None

    async def test_storage_error_on_one_record_is_not_fatal(self, session_factory, cfg, fake_s1, s1_client):
        await create_tenant(session_factory, "Alpha", "site-a")
        fake_s1.agents = [make_agent(1), make_agent(2), make_agent(3)]

        class _CollidingAgentSync(AgentSyncOrchestrator):
            async def upsert_record(self, db, record, tenant, ctx):
                if record.computer_name == "HOST-0002":
                    # Duplicate (tenant_id, hostname): unique constraint violation
                    db.add(Endpoint(tenant_id=tenant.id, hostname="HOST-0001"))
                    await db.flush()
                return await super().upsert_record(db, record, tenant, ctx)

        summary = await _CollidingAgentSync(s1_client, session_factory, cfg=cfg).run()

        assert summary.status == SyncStatus.COMPLETED.value
        assert (summary.processed, summary.created, summary.failed) == (3, 2, 1)
        assert any(e.startswith("storage error") for e in summary.errors)
        async with session_factory() as db:
            hostnames = sorted((await db.execute(select(Endpoint.hostname))).scalars().all())
        assert hostnames == ["HOST-0001", "HOST-0003"]

        job = (await _jobs(session_factory))[0]
        assert job.status == SyncStatus.COMPLETED.value
        assert job.records_failed == 1

    async def test_cancelled_run_is_marked_failed(self, session_factory, cfg, fake_s1, s1_client):
        await create_tenant(session_factory, "Alpha", "site-a")
        fake_s1.agents = [make_agent(i) for i in range(450)]
        stalled = asyncio.Event()
        calls = 0

        class _StallingAgentSync(AgentSyncOrchestrator):
            async def fetch_page(self, cursor, site_ids):
                nonlocal calls
                calls += 1
                if calls == 2:
                    stalled.set()
                    await asyncio.Event().wait()
                return await super().fetch_page(cursor, site_ids)

        task = asyncio.create_task(_StallingAgentSync(s1_client, session_factory, cfg=cfg).run())
        await asyncio.wait_for(stalled.wait(), timeout=5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        job = (await _jobs(session_factory))[0]
        assert job.status == SyncStatus.FAILED.value
        assert "interrupted" in job.error_message
        assert job.records_processed == 200
        assert job.completed_at is not None
        assert await _endpoint_count(session_factory) == 200

    async def test_breakdown_keeps_same_named_tenants_apart(self, session_factory, cfg, fake_s1, s1_client):
        await create_tenant(session_factory, "Acme", "site-a", slug="acme-east")
        await create_tenant(session_factory, "Acme", "site-b", slug="acme-west")
        fake_s1.agents = [make_agent(1), make_agent(2, site_id="site-b"), make_agent(3, site_id="site-b")]

        summary = await _orchestrator(s1_client, session_factory, cfg).run()
        assert summary.tenant_breakdown["acme-east"]["created"] == 1
        assert summary.tenant_breakdown["acme-west"]["created"] == 2
