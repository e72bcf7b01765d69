"""Tests for the in-memory background job queue."""

import asyncio

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker

from sentinel_sync.config import settings
from sentinel_sync.services.job_queue import JobQueue, JobStatus, JobType, register_all_handlers
from sentinel_sync.services.runtime import SyncRuntime
from tests.conftest import create_tenant, make_agent


async def _wait_terminal(queue: JobQueue, job_id: str, timeout: float = 10.0):
    async def _poll():
        while queue.get_job(job_id).status in (JobStatus.QUEUED, JobStatus.RUNNING):
            await asyncio.sleep(0.01)
    await asyncio.wait_for(_poll(), timeout)
    return queue.get_job(job_id)


@pytest.mark.asyncio
class TestJobQueue:

    async def test_agent_sync_handler_runs(self, runtime, session_factory, fake_s1):
        await create_tenant(session_factory, "Alpha", "site-a")
        fake_s1.agents = [make_agent(1), make_agent(2)]
        queue = JobQueue(max_workers=1)
        register_all_handlers(runtime, queue)
        await queue.start()
        try:
            job = queue.submit(JobType.AGENT_SYNC, tenant_id=None)
            job = await _wait_terminal(queue, job.id)
        finally:
            await queue.stop()

        assert job.status == JobStatus.COMPLETED
        assert job.result["created"] == 2
        assert job.progress == 100.0

    async def test_failed_handler_records_error(self, runtime, session_factory):
        # No tenant has a site: the run fails with a configuration error
        await create_tenant(session_factory, "Orphan", None)
        queue = JobQueue(max_workers=1)
        register_all_handlers(runtime, queue)
        await queue.start()
        try:
            job = queue.submit(JobType.AGENT_SYNC)
            job = await _wait_terminal(queue, job.id)
        finally:
            await queue.stop()

        assert job.status == JobStatus.FAILED
        assert job.error

    async def test_missing_handler(self):
        queue = JobQueue(max_workers=1)
        await queue.start()
        try:
            job = queue.submit(JobType.CVE_SYNC)
            job = await _wait_terminal(queue, job.id)
        finally:
            await queue.stop()
        assert job.status == JobStatus.FAILED
        assert "No handler" in job.error

    async def test_dedupe_is_per_tenant(self, job_queue):
        a = job_queue.submit(JobType.AGENT_SYNC, tenant_id="t1")
        b = job_queue.submit(JobType.AGENT_SYNC, tenant_id="t1")
        c = job_queue.submit(JobType.AGENT_SYNC, tenant_id="t2")
        d = job_queue.submit(JobType.CVE_SYNC, tenant_id="t1")
        assert a is b
        assert len({a.id, c.id, d.id}) == 3

    async def test_dedupe_considers_endpoints_and_attempts(self, job_queue):
        a = job_queue.submit(JobType.WINDOWS_EVALUATION, tenant_id="t1", endpoint_ids=["e2", "e1"])
        b = job_queue.submit(JobType.WINDOWS_EVALUATION, tenant_id="t1", endpoint_ids=["e1", "e2"])
        c = job_queue.submit(JobType.WINDOWS_EVALUATION, tenant_id="t1", endpoint_ids=["e3"])
        d = job_queue.submit(JobType.WINDOWS_EVALUATION, tenant_id="t1")
        e = job_queue.submit(JobType.CVE_SYNC, tenant_id="t1", max_attempts=1)
        f = job_queue.submit(JobType.CVE_SYNC, tenant_id="t1", max_attempts=3)
        assert a is b
        assert len({a.id, c.id, d.id}) == 3
        assert e is not f

    async def test_cancelled_job_can_be_resubmitted(self, job_queue):
        first = job_queue.submit(JobType.AGENT_SYNC)
        assert job_queue.cancel_job(first.id)
        second = job_queue.submit(JobType.AGENT_SYNC)
        assert second.id != first.id

    async def test_cleanup_drops_old_terminal_jobs(self, job_queue):
        job = job_queue.submit(JobType.AGENT_SYNC)
        job_queue.cancel_job(job.id)
        job.created_at -= 7200
        job_queue.cleanup(max_age_seconds=3600)
        assert job_queue.get_job(job.id) is None


class TestSyncRuntime:

    def test_defaults_to_process_settings(self):
        runtime = SyncRuntime(async_sessionmaker())
        assert runtime.cfg is settings
        assert runtime.ledger is not None
