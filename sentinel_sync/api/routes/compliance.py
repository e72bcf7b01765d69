"""API routes for Windows compliance evaluation, reporting and the version registry."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from sentinel_sync.api.deps import get_job_queue, get_runtime, http_error
from sentinel_sync.db import get_db
from sentinel_sync.db.models import Endpoint, Tenant
from sentinel_sync.errors import SyncError
from sentinel_sync.services.job_queue import JobQueue, JobType
from sentinel_sync.services.runtime import SyncRuntime
from sentinel_sync.services.windows_compliance import (
    WindowsComplianceEvaluator,
    evaluation_to_dict,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/compliance/windows", tags=["compliance"])


class EvaluateRequest(BaseModel):
    tenant_id: str
    endpoint_ids: list[str] | None = Field(default=None, description="Subset; omit for all")
    background: bool = Field(default=False, description="Queue instead of evaluating inline")


@router.post("/evaluate", summary="Evaluate a tenant's Windows endpoints")
async def evaluate_windows(
    body: EvaluateRequest,
    db: AsyncSession = Depends(get_db),
    runtime: SyncRuntime = Depends(get_runtime),
    queue: JobQueue = Depends(get_job_queue),
):
    if await db.get(Tenant, body.tenant_id) is None:
        raise HTTPException(status_code=404, detail="Tenant not found")

    if body.background:
        job = queue.submit(
            JobType.WINDOWS_EVALUATION, tenant_id=body.tenant_id, endpoint_ids=body.endpoint_ids
        )
        return {"queued": True, "job": job.to_dict()}

    try:
        summary = await runtime.evaluate_windows(body.tenant_id, endpoint_ids=body.endpoint_ids)
    except SyncError as e:
        raise http_error(e)
    return summary.to_dict()


@router.get("/endpoints/{endpoint_id}/history", summary="Evaluation history, newest first")
async def evaluation_history(
    endpoint_id: str,
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    runtime: SyncRuntime = Depends(get_runtime),
):
    endpoint = await db.get(Endpoint, endpoint_id)
    if endpoint is None:
        raise HTTPException(status_code=404, detail="Endpoint not found")
    rows = await WindowsComplianceEvaluator(runtime.session_factory).evaluation_history(
        endpoint_id, limit=limit
    )
    return {
        "endpoint_id": endpoint_id,
        "hostname": endpoint.hostname,
        "current": {
            "windows_compliant": endpoint.windows_compliant,
            "windows_compliance_score": endpoint.windows_compliance_score,
        },
        "evaluations": [evaluation_to_dict(r) for r in rows],
    }


@router.get("/overview", summary="Compliance roll-up over each endpoint's latest evaluation")
async def compliance_overview(
    tenant_id: str = Query(..., description="Tenant to summarize"),
    top_issues: int = Query(10, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
    runtime: SyncRuntime = Depends(get_runtime),
):
    if await db.get(Tenant, tenant_id) is None:
        raise HTTPException(status_code=404, detail="Tenant not found")
    overview = await WindowsComplianceEvaluator(runtime.session_factory).overview(
        tenant_id, top_issues=top_issues
    )
    return overview.to_dict()


@router.post("/registry/sync", summary="Refresh the Windows version registry from endoflife.date")
async def sync_windows_registry(runtime: SyncRuntime = Depends(get_runtime)):
    try:
        return await runtime.refresh_windows_registry()
    except SyncError as e:
        raise http_error(e)
