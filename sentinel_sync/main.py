"""Sentinel Sync admin API application."""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sentinel_sync.api.deps import get_job_queue, get_runtime
from sentinel_sync.api.routes import compliance, sync
from sentinel_sync.config import settings
from sentinel_sync.db import dispose_db, init_db
from sentinel_sync.services.job_queue import register_all_handlers

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(level=settings.LOG_LEVEL)
    await init_db()
    runtime = get_runtime()
    await runtime.ledger.reconcile_stale(timedelta(minutes=settings.STALE_JOB_MINUTES))

    queue = get_job_queue()
    register_all_handlers(runtime, queue)
    await queue.start()
    logger.info("Sentinel Sync API ready (SentinelOne configured: %s)", settings.sentinelone_configured)
    yield
    await queue.stop()
    await dispose_db()


# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    description="SentinelOne endpoint telemetry sync and compliance scoring",
    version=settings.APP_VERSION,
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routes
app.include_router(sync.router)
app.include_router(compliance.router)


@app.get("/", tags=["health"])
async def root():
    """API health check."""
    return {
        "service": "Sentinel Sync API",
        "status": "running",
        "version": settings.APP_VERSION,
        "docs": "/docs",
    }
