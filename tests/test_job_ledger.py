"""Tests for the sync job ledger."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from sentinel_sync.db.models import SyncJob, SyncJobType, SyncStatus
from sentinel_sync.errors import LedgerError
from sentinel_sync.services.job_ledger import JobCounters, JobLedger, job_to_dict
from tests.conftest import create_tenant


@pytest.mark.asyncio
class TestJobLedger:

    async def test_lifecycle_to_completed(self, session_factory):
        ledger = JobLedger(session_factory)
        job_id = await ledger.create(None, job_type=SyncJobType.AGENTS)

        job = await ledger.get(job_id)
        assert job.status == SyncStatus.RUNNING.value
        assert job.completed_at is None

        await ledger.update_progress(job_id, JobCounters(processed=10, created=4))
        assert (await ledger.get(job_id)).records_processed == 10

        await ledger.mark_completed(
            job_id, JobCounters(processed=20, created=5, updated=3, skipped=2), {"pages": 1}
        )
        job = await ledger.get(job_id)
        assert job.status == SyncStatus.COMPLETED.value
        assert job.completed_at is not None
        assert (job.records_created, job.records_updated, job.records_skipped) == (5, 3, 2)
        assert job.details == {"pages": 1}

    async def test_terminal_rows_are_final(self, session_factory):
        ledger = JobLedger(session_factory)
        job_id = await ledger.create(None)
        await ledger.mark_failed(job_id, "boom")

        with pytest.raises(LedgerError):
            await ledger.mark_completed(job_id, JobCounters())
        with pytest.raises(LedgerError):
            await ledger.update_progress(job_id, JobCounters(processed=1))
        with pytest.raises(LedgerError):
            await ledger.mark_failed(job_id, "again")

        job = await ledger.get(job_id)
        assert job.status == SyncStatus.FAILED.value
        assert job.error_message == "boom"

    async def test_unknown_job_raises(self, session_factory):
        with pytest.raises(LedgerError):
            await JobLedger(session_factory).mark_completed("missing", JobCounters())

    async def test_error_message_is_truncated(self, session_factory):
        ledger = JobLedger(session_factory)
        job_id = await ledger.create(None)
        await ledger.mark_failed(job_id, "x" * 10000)
        assert len((await ledger.get(job_id)).error_message) == 4000

    async def test_list_recent_and_find_running(self, session_factory):
        tenant = await create_tenant(session_factory, "Alpha", "site-a")
        ledger = JobLedger(session_factory)
        fleet = await ledger.create(None, job_type=SyncJobType.AGENTS)
        scoped = await ledger.create(tenant.id, job_type=SyncJobType.CVES)
        await ledger.mark_completed(fleet, JobCounters())

        recent = await ledger.list_recent()
        assert [j.id for j in recent] == [scoped, fleet]
        assert [j.id for j in await ledger.list_recent(tenant_id=tenant.id)] == [scoped]
        assert [j.id for j in await ledger.list_recent(job_type=SyncJobType.AGENTS)] == [fleet]

        assert (await ledger.find_running(tenant.id, job_type=SyncJobType.CVES)).id == scoped
        assert await ledger.find_running(None, job_type=SyncJobType.AGENTS) is None
        assert await ledger.find_running(tenant.id, job_type=SyncJobType.AGENTS) is None

    async def test_reconcile_stale(self, session_factory):
        ledger = JobLedger(session_factory)
        stale = await ledger.create(None)
        fresh = await ledger.create(None)
        async with session_factory() as db:
            await db.execute(
                update(SyncJob)
                .where(SyncJob.id == stale)
                .values(started_at=datetime.now(timezone.utc) - timedelta(hours=5))
            )
            await db.commit()

        assert await ledger.reconcile_stale(timedelta(hours=2)) == 1
        assert (await ledger.get(stale)).status == SyncStatus.FAILED.value
        assert (await ledger.get(fresh)).status == SyncStatus.RUNNING.value

    async def test_job_to_dict(self, session_factory):
        ledger = JobLedger(session_factory)
        job_id = await ledger.create(None, job_type=SyncJobType.CVES)
        data = job_to_dict(await ledger.get(job_id))
        assert data["job_type"] == "CVES"
        assert data["source"] == "SENTINELONE"
        assert data["started_at"].endswith("+00:00")
        assert data["details"] == {}
