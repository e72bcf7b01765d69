"""Persisted sync job ledger.

Every sync run gets one ``sync_jobs`` row, created RUNNING and moved to
COMPLETED or FAILED exactly once. All writes are conditional on the row
still being RUNNING, so a terminal row can never be rewritten. Each call
opens its own short-lived session; concurrent runs only share the session
factory.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import Select, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sentinel_sync.db.models import SyncJob, SyncJobType, SyncSource, SyncStatus, as_utc
from sentinel_sync.errors import LedgerError

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE = 4000


@dataclass
class JobCounters:
    processed: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    skipped: int = 0

    def as_values(self) -> dict:
        return {
            "records_processed": self.processed,
            "records_created": self.created,
            "records_updated": self.updated,
            "records_failed": self.failed,
            "records_skipped": self.skipped,
        }

    def to_dict(self) -> dict:
        return asdict(self)


def _value(member) -> str:
    return member.value if hasattr(member, "value") else str(member)


def job_to_dict(job: SyncJob) -> dict:
    started = as_utc(job.started_at)
    completed = as_utc(job.completed_at)
    return {
        "id": job.id,
        "tenant_id": job.tenant_id,
        "source": job.source,
        "job_type": job.job_type,
        "status": job.status,
        "started_at": started.isoformat() if started else None,
        "completed_at": completed.isoformat() if completed else None,
        "records_processed": job.records_processed,
        "records_created": job.records_created,
        "records_updated": job.records_updated,
        "records_failed": job.records_failed,
        "records_skipped": job.records_skipped,
        "error_message": job.error_message,
        "details": job.details or {},
    }


class JobLedger:
    """Lifecycle and query surface for ``sync_jobs`` rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create(
        self,
        tenant_id: str | None,
        source: SyncSource | str = SyncSource.SENTINELONE,
        job_type: SyncJobType | str = SyncJobType.AGENTS,
    ) -> str:
        async with self._session_factory() as db:
            job = SyncJob(
                tenant_id=tenant_id,
                source=_value(source),
                job_type=_value(job_type),
                status=SyncStatus.RUNNING.value,
                started_at=datetime.now(timezone.utc),
            )
            db.add(job)
            await db.commit()
            logger.info(
                "Sync job %s created (%s/%s, tenant=%s)",
                job.id, job.source, job.job_type, tenant_id or "all",
            )
            return job.id

    async def _update_running(self, job_id: str, values: dict, action: str) -> None:
        async with self._session_factory() as db:
            result = await db.execute(
                update(SyncJob)
                .where(SyncJob.id == job_id, SyncJob.status == SyncStatus.RUNNING.value)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if not result.rowcount:
            raise LedgerError(f"Cannot {action} sync job {job_id}: not found or no longer RUNNING")

    async def update_progress(
        self, job_id: str, counters: JobCounters, details: dict | None = None
    ) -> None:
        values = counters.as_values()
        if details is not None:
            values["details"] = details
        await self._update_running(job_id, values, "update progress of")

    async def mark_completed(
        self, job_id: str, counters: JobCounters, details: dict | None = None
    ) -> None:
        values = counters.as_values()
        values.update(
            status=SyncStatus.COMPLETED.value,
            completed_at=datetime.now(timezone.utc),
            details=details or {},
        )
        await self._update_running(job_id, values, "complete")
        logger.info("Sync job %s COMPLETED %s", job_id, counters.to_dict())

    async def mark_failed(
        self, job_id: str, message: str, counters: JobCounters | None = None
    ) -> None:
        values = counters.as_values() if counters else {}
        values.update(
            status=SyncStatus.FAILED.value,
            completed_at=datetime.now(timezone.utc),
            error_message=(message or "Unknown error")[:MAX_ERROR_MESSAGE],
        )
        await self._update_running(job_id, values, "fail")
        logger.warning("Sync job %s FAILED: %s", job_id, message)

    # ── Queries ───────────────────────────────────────────────────────

    async def get(self, job_id: str) -> SyncJob | None:
        async with self._session_factory() as db:
            return await db.get(SyncJob, job_id)

    @staticmethod
    def recent_statement(
        tenant_id: str | None = None,
        source: SyncSource | str | None = None,
        job_type: SyncJobType | str | None = None,
        limit: int = 20,
    ) -> Select:
        stmt = select(SyncJob)
        if tenant_id:
            stmt = stmt.where(SyncJob.tenant_id == tenant_id)
        if source:
            stmt = stmt.where(SyncJob.source == _value(source))
        if job_type:
            stmt = stmt.where(SyncJob.job_type == _value(job_type))
        return stmt.order_by(SyncJob.started_at.desc(), SyncJob.id.desc()).limit(limit)

    async def list_recent(
        self,
        tenant_id: str | None = None,
        source: SyncSource | str | None = None,
        job_type: SyncJobType | str | None = None,
        limit: int = 20,
    ) -> list[SyncJob]:
        """Most recent jobs first; ``tenant_id=None`` lists every tenant."""
        async with self._session_factory() as db:
            result = await db.execute(self.recent_statement(tenant_id, source, job_type, limit))
            return list(result.scalars().all())

    async def find_running(
        self,
        tenant_id: str | None,
        source: SyncSource | str = SyncSource.SENTINELONE,
        job_type: SyncJobType | str | None = None,
    ) -> Optional[SyncJob]:
        """Newest RUNNING job for the scope (``tenant_id=None`` = fleet-wide)."""
        stmt = select(SyncJob).where(
            SyncJob.status == SyncStatus.RUNNING.value,
            SyncJob.source == _value(source),
        )
        if tenant_id is None:
            stmt = stmt.where(SyncJob.tenant_id.is_(None))
        else:
            stmt = stmt.where(SyncJob.tenant_id == tenant_id)
        if job_type:
            stmt = stmt.where(SyncJob.job_type == _value(job_type))
        async with self._session_factory() as db:
            result = await db.execute(stmt.order_by(SyncJob.started_at.desc()).limit(1))
            return result.scalar_one_or_none()

    async def reconcile_stale(self, older_than: timedelta) -> int:
        """Mark RUNNING jobs started before ``now - older_than`` as FAILED."""
        now = datetime.now(timezone.utc)
        cutoff = now - older_than
        async with self._session_factory() as db:
            result = await db.execute(
                update(SyncJob)
                .where(
                    SyncJob.status == SyncStatus.RUNNING.value,
                    SyncJob.started_at < cutoff,
                )
                .values(
                    status=SyncStatus.FAILED.value,
                    completed_at=now,
                    error_message="Abandoned: still RUNNING after process exit or restart",
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            updated = int(result.rowcount or 0)
        if updated:
            logger.warning("Reconciled %d stale sync jobs (RUNNING -> FAILED)", updated)
        return updated
