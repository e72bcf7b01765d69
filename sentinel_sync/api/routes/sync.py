"""API routes for triggering syncs and reading the job ledger."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from sentinel_sync.api.deps import get_job_queue, get_runtime, http_error
from sentinel_sync.db import get_db
from sentinel_sync.db.models import SyncJob, SyncJobType, Tenant
from sentinel_sync.errors import SyncError
from sentinel_sync.services.job_ledger import JobLedger, job_to_dict
from sentinel_sync.services.job_queue import JobQueue, JobType
from sentinel_sync.services.runtime import SyncRuntime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])

_LEDGER_TYPES = {
    JobType.AGENT_SYNC: (SyncJobType.AGENTS,),
    JobType.CVE_SYNC: (SyncJobType.CVES,),
    JobType.FULL_SYNC: (SyncJobType.AGENTS, SyncJobType.CVES),
}


# ── Models ────────────────────────────────────────────────────────────


class SyncRequest(BaseModel):
    tenant_id: str | None = Field(default=None, description="Limit to one tenant; omit for all")
    max_attempts: int | None = Field(default=None, ge=1, le=10)


class QueuedJobResponse(BaseModel):
    id: str
    job_type: str
    status: str
    message: str
    params: dict


class LedgerJobResponse(BaseModel):
    id: str
    tenant_id: str | None
    source: str
    job_type: str
    status: str
    started_at: str | None
    completed_at: str | None
    records_processed: int
    records_created: int
    records_updated: int
    records_failed: int
    records_skipped: int
    error_message: str | None
    details: dict


class LedgerListResponse(BaseModel):
    jobs: list[LedgerJobResponse]
    total: int


# ── Helpers ───────────────────────────────────────────────────────────


async def _submit(
    job_type: JobType,
    body: SyncRequest,
    db: AsyncSession,
    runtime: SyncRuntime,
    queue: JobQueue,
) -> QueuedJobResponse:
    if body.tenant_id and await db.get(Tenant, body.tenant_id) is None:
        raise HTTPException(status_code=404, detail="Tenant not found")

    for ledger_type in _LEDGER_TYPES[job_type]:
        running = await runtime.ledger.find_running(body.tenant_id, job_type=ledger_type)
        if running is not None:
            raise HTTPException(
                status_code=409,
                detail=f"{ledger_type.value} sync {running.id} is already RUNNING for this scope",
            )

    params = {"tenant_id": body.tenant_id}
    if body.max_attempts and job_type != JobType.AGENT_SYNC:
        params["max_attempts"] = body.max_attempts
    job = queue.submit(job_type, **params)
    return QueuedJobResponse(
        id=job.id,
        job_type=job.job_type.value,
        status=job.status.value,
        message=job.message,
        params=job.params,
    )


# ── Routes ────────────────────────────────────────────────────────────


@router.post("/agents", response_model=QueuedJobResponse, status_code=202, summary="Queue an agent sync")
async def trigger_agent_sync(
    body: SyncRequest,
    db: AsyncSession = Depends(get_db),
    runtime: SyncRuntime = Depends(get_runtime),
    queue: JobQueue = Depends(get_job_queue),
):
    return await _submit(JobType.AGENT_SYNC, body, db, runtime, queue)


@router.post("/cves", response_model=QueuedJobResponse, status_code=202, summary="Queue a CVE sync")
async def trigger_cve_sync(
    body: SyncRequest,
    db: AsyncSession = Depends(get_db),
    runtime: SyncRuntime = Depends(get_runtime),
    queue: JobQueue = Depends(get_job_queue),
):
    return await _submit(JobType.CVE_SYNC, body, db, runtime, queue)


@router.post("/full", response_model=QueuedJobResponse, status_code=202, summary="Queue agents then CVEs")
async def trigger_full_sync(
    body: SyncRequest,
    db: AsyncSession = Depends(get_db),
    runtime: SyncRuntime = Depends(get_runtime),
    queue: JobQueue = Depends(get_job_queue),
):
    return await _submit(JobType.FULL_SYNC, body, db, runtime, queue)


@router.get("/queue", summary="List queued and recent background jobs")
async def list_queue(
    limit: int = Query(50, ge=1, le=500),
    queue: JobQueue = Depends(get_job_queue),
):
    return {"jobs": queue.list_jobs(limit=limit), "stats": queue.get_stats()}


@router.get("/queue/{job_id}", summary="Get a background job")
async def get_queued_job(job_id: str, queue: JobQueue = Depends(get_job_queue)):
    job = queue.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.to_dict()


@router.delete("/queue/{job_id}", summary="Cancel a background job")
async def cancel_queued_job(job_id: str, queue: JobQueue = Depends(get_job_queue)):
    if not queue.cancel_job(job_id):
        raise HTTPException(status_code=404, detail="Job not found or already finished")
    return {"cancelled": True, "job_id": job_id}


@router.get("/jobs", response_model=LedgerListResponse, summary="Recent sync job ledger entries")
async def list_ledger_jobs(
    tenant_id: str | None = Query(None),
    job_type: SyncJobType | None = Query(None),
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(JobLedger.recent_statement(tenant_id, job_type=job_type, limit=limit))
    jobs = [LedgerJobResponse(**job_to_dict(j)) for j in result.scalars().all()]
    return LedgerListResponse(jobs=jobs, total=len(jobs))


@router.get("/jobs/{job_id}", response_model=LedgerJobResponse, summary="Get one ledger entry")
async def get_ledger_job(job_id: str, db: AsyncSession = Depends(get_db)):
    job = await db.get(SyncJob, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Sync job not found")
    return LedgerJobResponse(**job_to_dict(job))


@router.get("/sites/diagnose", summary="Report unmapped SentinelOne sites")
async def diagnose_sites(runtime: SyncRuntime = Depends(get_runtime)):
    try:
        diagnosis = await runtime.diagnose_sites()
    except SyncError as e:
        raise http_error(e)
    return diagnosis.to_dict()


@router.post("/tenants", summary="Create tenants for unmapped sites")
async def sync_tenants(
    dry_run: bool = Query(True, description="Preview without writing"),
    runtime: SyncRuntime = Depends(get_runtime),
):
    try:
        result = await runtime.sync_tenants(dry_run=dry_run)
    except SyncError as e:
        raise http_error(e)
    return result.to_dict()
