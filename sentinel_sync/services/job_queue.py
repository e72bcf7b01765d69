"""Async job queue for background sync work.

Runs agent, CVE and full syncs plus Windows evaluations submitted through
the API as trackable in-memory jobs with status, progress and cancellation.
The durable audit trail stays in the sync job ledger; this queue only
tracks the request that triggered a run.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Coroutine

from sentinel_sync.config import settings

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobType(str, Enum):
    AGENT_SYNC = "agent_sync"
    CVE_SYNC = "cve_sync"
    FULL_SYNC = "full_sync"
    WINDOWS_EVALUATION = "windows_evaluation"


TERMINAL_STATES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


@dataclass
class Job:
    id: str
    job_type: JobType
    status: JobStatus = JobStatus.QUEUED
    progress: float = 0.0          # 0-100
    message: str = ""
    result: Any = None
    error: str | None = None
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    completed_at: float | None = None
    params: dict = field(default_factory=dict)
    _task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def elapsed_ms(self) -> int:
        end = self.completed_at or time.time()
        start = self.started_at or self.created_at
        return int((end - start) * 1000)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "job_type": self.job_type.value,
            "status": self.status.value,
            "progress": round(self.progress, 1),
            "message": self.message,
            "result": self.result,
            "error": self.error,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "elapsed_ms": self.elapsed_ms,
            "params": self.params,
        }

    @property
    def is_cancelled(self) -> bool:
        return self.status == JobStatus.CANCELLED

    def cancel(self):
        self.status = JobStatus.CANCELLED
        self.completed_at = time.time()
        self.message = "Cancelled by user"
        # Running syncs see CancelledError and mark their ledger row FAILED
        if self._task is not None and not self._task.done():
            self._task.cancel()


Handler = Callable[[Job], Coroutine[Any, Any, Any]]


class JobQueue:
    """In-memory async job queue with concurrency control."""

    def __init__(self, max_workers: int = 2):
        self._jobs: dict[str, Job] = {}
        self._queue: asyncio.Queue[str] | None = None
        self._max_workers = max_workers
        self._workers: list[asyncio.Task] = []
        self._handlers: dict[JobType, Handler] = {}
        self._started = False
        self._cleanup_task: asyncio.Task | None = None

    @property
    def queue(self) -> asyncio.Queue[str]:
        # Created lazily so the queue binds to the running loop
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    @property
    def started(self) -> bool:
        return self._started

    def register_handler(self, job_type: JobType, handler: Handler):
        self._handlers[job_type] = handler
        logger.info(f"Registered handler for {job_type.value}")

    async def start(self):
        if self._started:
            return
        self._started = True
        for i in range(self._max_workers):
            task = asyncio.create_task(self._worker(i))
            self._workers.append(task)
        if not self._cleanup_task or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(f"Job queue started with {self._max_workers} workers")

    async def stop(self):
        self._started = False
        for job in self._jobs.values():
            if job.status == JobStatus.RUNNING and job._task is not None:
                job._task.cancel()
        for w in self._workers:
            w.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        if self._cleanup_task:
            self._cleanup_task.cancel()
            await asyncio.gather(self._cleanup_task, return_exceptions=True)
            self._cleanup_task = None
        logger.info("Job queue stopped")

    def submit(self, job_type: JobType, **params) -> Job:
        # Same job type for the same tenant while one is pending: reuse it
        dedupe_job = self._find_active_duplicate(job_type, params)
        if dedupe_job is not None:
            logger.info(
                f"Job deduped: reusing {dedupe_job.id} ({job_type.value}) params={params}"
            )
            return dedupe_job

        if self.queue.qsize() >= settings.JOB_QUEUE_MAX_BACKLOG:
            logger.warning(
                "Job queue backlog high (%d >= %d). Accepting job but system may be degraded.",
                self.queue.qsize(), settings.JOB_QUEUE_MAX_BACKLOG,
            )

        job = Job(id=uuid.uuid4().hex, job_type=job_type, params=params)
        self._jobs[job.id] = job
        self.queue.put_nowait(job.id)
        logger.info(f"Job submitted: {job.id} ({job_type.value}) params={params}")
        return job

    def get_job(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    @staticmethod
    def _dedupe_key(params: dict) -> tuple:
        endpoint_ids = params.get("endpoint_ids")
        return (
            params.get("tenant_id"),
            params.get("max_attempts"),
            tuple(sorted(endpoint_ids)) if endpoint_ids else None,
        )

    def _find_active_duplicate(self, job_type: JobType, params: dict) -> Job | None:
        key = self._dedupe_key(params)
        for j in self._jobs.values():
            if j.job_type != job_type:
                continue
            if j.status not in (JobStatus.QUEUED, JobStatus.RUNNING):
                continue
            if self._dedupe_key(j.params) == key:
                return j
        return None

    def cancel_job(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if not job:
            return False
        if job.status in TERMINAL_STATES:
            return False
        job.cancel()
        return True

    def list_jobs(self, status=None, job_type=None, limit=50) -> list[dict]:
        jobs = sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)
        if status:
            jobs = [j for j in jobs if j.status == status]
        if job_type:
            jobs = [j for j in jobs if j.job_type == job_type]
        return [j.to_dict() for j in jobs[:limit]]

    def get_stats(self) -> dict:
        by_status = {}
        for j in self._jobs.values():
            by_status[j.status.value] = by_status.get(j.status.value, 0) + 1
        return {
            "total": len(self._jobs),
            "queued": self.queue.qsize(),
            "by_status": by_status,
            "workers": self._max_workers,
            "active_workers": sum(1 for j in self._jobs.values() if j.status == JobStatus.RUNNING),
        }

    def cleanup(self, max_age_seconds: float = 3600):
        now = time.time()
        to_remove = [
            jid for jid, j in self._jobs.items()
            if j.status in TERMINAL_STATES and (now - j.created_at) > max_age_seconds
        ]

        # Also cap retained terminal jobs to avoid unbounded memory growth
        terminal_jobs = sorted(
            [j for j in self._jobs.values() if j.status in TERMINAL_STATES],
            key=lambda j: j.created_at,
            reverse=True,
        )
        overflow = terminal_jobs[settings.JOB_QUEUE_RETAIN_COMPLETED :]
        to_remove.extend([j.id for j in overflow])

        removed = 0
        for jid in set(to_remove):
            if jid in self._jobs:
                del self._jobs[jid]
                removed += 1
        if removed:
            logger.info(f"Cleaned up {removed} old jobs")

    async def _cleanup_loop(self):
        interval = max(10, settings.JOB_QUEUE_CLEANUP_INTERVAL_SECONDS)
        while self._started:
            try:
                self.cleanup(max_age_seconds=settings.JOB_QUEUE_CLEANUP_MAX_AGE_SECONDS)
            except Exception as e:
                logger.warning(f"Job queue cleanup loop error: {e}")
            await asyncio.sleep(interval)

    async def _worker(self, worker_id: int):
        logger.info(f"Worker {worker_id} started")
        while self._started:
            try:
                job_id = await asyncio.wait_for(self.queue.get(), timeout=5.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

            job = self._jobs.get(job_id)
            if not job or job.is_cancelled:
                continue

            handler = self._handlers.get(job.job_type)
            if not handler:
                job.status = JobStatus.FAILED
                job.error = f"No handler for {job.job_type.value}"
                job.completed_at = time.time()
                logger.error(f"No handler for job type {job.job_type.value}")
                continue

            job.status = JobStatus.RUNNING
            job.started_at = time.time()
            job.progress = 5.0
            job.message = "Running..."
            logger.info(f"Worker {worker_id}: executing {job.id} ({job.job_type.value})")

            job._task = asyncio.create_task(handler(job))
            try:
                result = await job._task
                job.status = JobStatus.COMPLETED
                job.progress = 100.0
                job.result = result
                job.message = "Completed"
                job.completed_at = time.time()
                logger.info(f"Worker {worker_id}: completed {job.id} in {job.elapsed_ms}ms")
            except asyncio.CancelledError:
                if not job.is_cancelled:
                    # Worker itself is being stopped
                    job.status = JobStatus.CANCELLED
                    job.completed_at = time.time()
                    job.message = "Cancelled on shutdown"
                    raise
                logger.info(f"Worker {worker_id}: cancelled {job.id}")
            except Exception as e:
                job.status = JobStatus.FAILED
                job.error = str(e)
                job.message = f"Failed: {e}"
                job.completed_at = time.time()
                logger.error(f"Worker {worker_id}: failed {job.id}: {e}", exc_info=True)
            finally:
                job._task = None


job_queue = JobQueue(max_workers=settings.JOB_QUEUE_MAX_WORKERS)


def register_all_handlers(runtime, queue: JobQueue = job_queue) -> None:
    """Register sync and evaluation handlers bound to *runtime* (a SyncRuntime)."""

    async def _handle_agent_sync(job: Job):
        job.message = "Syncing agents"
        summary = await runtime.run_agents(job.params.get("tenant_id"))
        return summary.to_dict()

    async def _handle_cve_sync(job: Job):
        job.message = "Syncing CVEs"
        summary = await runtime.run_cves(
            job.params.get("tenant_id"), max_attempts=job.params.get("max_attempts")
        )
        return summary.to_dict()

    async def _handle_full_sync(job: Job):
        job.message = "Syncing agents, then CVEs"
        return await runtime.run_full(
            job.params.get("tenant_id"), max_attempts=job.params.get("max_attempts")
        )

    async def _handle_windows_evaluation(job: Job):
        job.message = "Evaluating Windows compliance"
        summary = await runtime.evaluate_windows(
            job.params["tenant_id"], endpoint_ids=job.params.get("endpoint_ids")
        )
        return summary.to_dict()

    queue.register_handler(JobType.AGENT_SYNC, _handle_agent_sync)
    queue.register_handler(JobType.CVE_SYNC, _handle_cve_sync)
    queue.register_handler(JobType.FULL_SYNC, _handle_full_sync)
    queue.register_handler(JobType.WINDOWS_EVALUATION, _handle_windows_evaluation)
