"""FastAPI dependencies shared by the route modules."""

from functools import lru_cache

from fastapi import HTTPException

from sentinel_sync.db import get_session_factory
from sentinel_sync.errors import (
    ConfigurationError,
    ReferenceFeedError,
    SyncError,
    TransientNetworkError,
    UpstreamAPIError,
)
from sentinel_sync.services.job_queue import JobQueue, job_queue
from sentinel_sync.services.runtime import SyncRuntime


@lru_cache(maxsize=1)
def get_runtime() -> SyncRuntime:
    return SyncRuntime(get_session_factory())


def get_job_queue() -> JobQueue:
    return job_queue


def http_error(exc: SyncError) -> HTTPException:
    """Map engine errors onto HTTP status codes."""
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, (UpstreamAPIError, ReferenceFeedError)):
        return HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, TransientNetworkError):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))
