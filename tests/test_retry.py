"""Tests for the run-level retry wrapper."""

import pytest

from sentinel_sync.db.models import SyncStatus
from sentinel_sync.errors import (
    ConfigurationError,
    PageLimitExceededError,
    ParseError,
    TransientNetworkError,
    UpstreamAPIError,
)
from sentinel_sync.services.agent_sync import AgentSyncOrchestrator
from sentinel_sync.services.cve_sync import CveSyncOrchestrator
from sentinel_sync.services.job_ledger import JobLedger
from sentinel_sync.services.sync_engine import is_retryable, run_with_retry
from tests.conftest import create_tenant, make_agent, make_risk


class TestIsRetryable:

    @pytest.mark.parametrize("exc,expected", [
        (TransientNetworkError("x"), True),
        (UpstreamAPIError(503), True),
        (UpstreamAPIError(429), True),
        (UpstreamAPIError(404), False),
        (PageLimitExceededError(10, 10), True),
        (ConfigurationError("x"), False),
        (ParseError("x"), False),
        (RuntimeError("storage"), True),
    ])
    def test_classification(self, exc, expected):
        assert is_retryable(exc) is expected


@pytest.mark.asyncio
class TestRunWithRetry:

    async def test_two_failures_then_success(self, session_factory, cfg, fake_s1, s1_client):
        await create_tenant(session_factory, "Alpha", "site-a")
        agent = make_agent(1)
        fake_s1.agents = [agent]
        await AgentSyncOrchestrator(s1_client, session_factory, cfg=cfg).run()

        fake_s1.risks = [make_risk("CVE-2024-0001", agent)]
        fake_s1.fail_next("/application-management/risks", status=503, times=2)
        orchestrator = CveSyncOrchestrator(s1_client, session_factory, cfg=cfg)

        calls = 0
        sleeps: list[float] = []

        async def attempt():
            nonlocal calls
            calls += 1
            return await orchestrator.run()

        async def no_sleep(seconds):
            sleeps.append(seconds)

        summary = await run_with_retry(
            attempt, max_attempts=3, base_delay=2.0, max_delay=30.0, sleep=no_sleep
        )

        assert calls == 3
        assert sleeps == [2.0, 4.0]
        assert summary.created == 1

        jobs = await JobLedger(session_factory).list_recent(job_type="CVES")
        statuses = sorted(j.status for j in jobs)
        assert statuses == [SyncStatus.COMPLETED.value, SyncStatus.FAILED.value, SyncStatus.FAILED.value]

    async def test_gives_up_and_reraises_last_error(self):
        calls = 0

        async def attempt():
            nonlocal calls
            calls += 1
            raise TransientNetworkError(f"attempt {calls}")

        async def no_sleep(seconds):
            pass

        with pytest.raises(TransientNetworkError, match="attempt 3"):
            await run_with_retry(attempt, max_attempts=3, sleep=no_sleep)
        assert calls == 3

    async def test_non_retryable_error_is_not_retried(self):
        calls = 0

        async def attempt():
            nonlocal calls
            calls += 1
            raise UpstreamAPIError(401, message="bad token")

        with pytest.raises(UpstreamAPIError):
            await run_with_retry(attempt, max_attempts=3)
        assert calls == 1

    async def test_backoff_is_capped(self):
        sleeps: list[float] = []

        async def attempt():
            raise TransientNetworkError("down")

        async def no_sleep(seconds):
            sleeps.append(seconds)

        with pytest.raises(TransientNetworkError):
            await run_with_retry(attempt, max_attempts=6, base_delay=2.0, max_delay=30.0, sleep=no_sleep)
        assert sleeps == [2.0, 4.0, 8.0, 16.0, 30.0]
