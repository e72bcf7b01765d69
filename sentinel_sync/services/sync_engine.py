"""Shared sync run machinery.

A run resolves the site -> tenant map, opens a ledger job, then walks the
upstream cursor page by page: each record is resolved to its tenant,
transformed and upserted on its natural key inside one session per page.
Pages are committed as they complete, so a failed run keeps the pages that
landed before the failure. Counters live in a ``RunSummary`` local to the
run; orchestrator instances only hold configuration.

``run_with_retry`` wraps a whole run with exponential backoff. Each attempt
opens its own ledger job.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, NamedTuple, Optional, Sequence, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from sentinel_sync.config import AppConfig, settings
from sentinel_sync.core.sentinelone import SentinelOneClient
from sentinel_sync.db.models import SyncJobType, SyncSource, SyncStatus
from sentinel_sync.errors import (
    ConfigurationError,
    IdentityUnresolvedError,
    LedgerError,
    PageLimitExceededError,
    ParseError,
    SyncError,
)
from sentinel_sync.schemas.upstream import Page
from sentinel_sync.services.identity import IdentityResolver, TenantRef
from sentinel_sync.services.job_ledger import JobCounters, JobLedger

logger = logging.getLogger(__name__)

MAX_SUMMARY_ERRORS = 50

T = TypeVar("T")


class RecordOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"


class RecordResult(NamedTuple):
    outcome: RecordOutcome
    status_class: Optional[str] = None


@dataclass
class RunSummary:
    """Outcome of one sync run.

    ``processed`` counts every record the upstream returned, so
    ``created + updated + unchanged + skipped + failed == processed``.
    """

    job_type: str
    job_id: Optional[str] = None
    tenant_id: Optional[str] = None
    status: str = SyncStatus.RUNNING.value
    processed: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0
    pages: int = 0
    total_available: Optional[int] = None
    tenant_breakdown: dict[str, dict[str, int]] = field(default_factory=dict)
    status_breakdown: dict[str, int] = field(default_factory=dict)
    unmapped_sites: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)
    duration_ms: int = 0

    def add_error(self, message: str) -> None:
        if len(self.errors) < MAX_SUMMARY_ERRORS:
            self.errors.append(message)

    def record(self, tenant: TenantRef, result: RecordResult) -> None:
        bucket = self.tenant_breakdown.setdefault(
            tenant.slug,
            {"processed": 0, "created": 0, "updated": 0, "unchanged": 0, "skipped": 0},
        )
        bucket["processed"] += 1
        bucket[result.outcome.value] += 1
        if result.outcome == RecordOutcome.CREATED:
            self.created += 1
        elif result.outcome == RecordOutcome.UPDATED:
            self.updated += 1
        elif result.outcome == RecordOutcome.UNCHANGED:
            self.unchanged += 1
        else:
            self.skipped += 1
        if result.status_class:
            self.status_breakdown[result.status_class] = (
                self.status_breakdown.get(result.status_class, 0) + 1
            )

    def record_unmapped(self, site_id: Optional[str]) -> None:
        self.skipped += 1
        key = site_id or "<none>"
        self.unmapped_sites[key] = self.unmapped_sites.get(key, 0) + 1

    @property
    def coverage_percent(self) -> float:
        if not self.processed:
            return 100.0
        mapped = self.processed - sum(self.unmapped_sites.values())
        return round(mapped / self.processed * 100, 1)

    def counters(self) -> JobCounters:
        return JobCounters(
            processed=self.processed,
            created=self.created,
            updated=self.updated,
            failed=self.failed,
            skipped=self.skipped,
        )

    def details(self) -> dict:
        return {
            "unchanged": self.unchanged,
            "pages": self.pages,
            "total_available": self.total_available,
            "coverage_percent": self.coverage_percent,
            "tenant_breakdown": self.tenant_breakdown,
            "status_breakdown": self.status_breakdown,
            "unmapped_sites": self.unmapped_sites,
            "errors": self.errors[:10],
            **self.extra,
        }

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "job_type": self.job_type,
            "tenant_id": self.tenant_id,
            "status": self.status,
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "skipped": self.skipped,
            "failed": self.failed,
            "pages": self.pages,
            "total_available": self.total_available,
            "coverage_percent": self.coverage_percent,
            "tenant_breakdown": self.tenant_breakdown,
            "status_breakdown": self.status_breakdown,
            "unmapped_sites": self.unmapped_sites,
            "errors": self.errors,
            "duration_ms": self.duration_ms,
            **self.extra,
        }


@dataclass
class RunContext:
    """Per-run state handed to the variant hooks."""

    mapping: dict[str, TenantRef]
    summary: RunSummary
    tenant_id: Optional[str] = None
    site_ids: Optional[list[str]] = None
    scratch: dict[str, Any] = field(default_factory=dict)


class SyncOrchestrator(ABC):
    """Template for one paginated SentinelOne sync run."""

    job_type: SyncJobType
    source: SyncSource = SyncSource.SENTINELONE
    record_label: str = "records"

    def __init__(
        self,
        client: SentinelOneClient,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ledger: JobLedger | None = None,
        resolver: IdentityResolver | None = None,
        cfg: AppConfig = settings,
    ):
        self.client = client
        self._session_factory = session_factory
        self.ledger = ledger or JobLedger(session_factory)
        self.resolver = resolver or IdentityResolver(session_factory, cfg)
        self._cfg = cfg

    # ── Variant hooks ─────────────────────────────────────────────────

    @abstractmethod
    async def fetch_page(self, cursor: Optional[str], site_ids: Optional[Sequence[str]]) -> Page:
        """Fetch one upstream page."""

    @abstractmethod
    def site_of(self, record: Any) -> Optional[str]:
        """Upstream site id that owns *record*."""

    @abstractmethod
    async def upsert_record(
        self, db: AsyncSession, record: Any, tenant: TenantRef, ctx: RunContext
    ) -> RecordResult:
        """Transform and upsert one record. Raise ParseError before writing on bad input."""

    def record_stored(self, record: Any, result: RecordResult, ctx: RunContext) -> None:
        """Called once a record's savepoint has been released."""

    async def after_run(self, ctx: RunContext) -> None:
        """Post-pagination hook, still inside the RUNNING job."""

    # ── Run ───────────────────────────────────────────────────────────

    async def run(self, tenant_id: Optional[str] = None) -> RunSummary:
        """Execute one full run for *tenant_id* (or every mapped tenant)."""
        started = time.monotonic()
        mapping = await self.resolver.build_site_to_tenant_map(tenant_id)
        if not mapping:
            scope = f"tenant {tenant_id}" if tenant_id else "any tenant"
            raise ConfigurationError(
                f"No SentinelOne site is mapped to {scope}. "
                "Create tenants for sites (create-missing-tenants) or set Tenant.sentinelone_site_id."
            )

        summary = RunSummary(job_type=self.job_type.value, tenant_id=tenant_id)
        ctx = RunContext(
            mapping=mapping,
            summary=summary,
            tenant_id=tenant_id,
            site_ids=sorted(mapping) if tenant_id else None,
        )
        summary.job_id = await self.ledger.create(tenant_id, self.source, self.job_type)
        logger.info(
            "Starting %s sync (job %s, %d mapped sites, tenant=%s)",
            self.job_type.value, summary.job_id, len(mapping), tenant_id or "all",
        )

        try:
            await self._paginate(ctx)
            await self.after_run(ctx)
        except asyncio.CancelledError:
            summary.status = SyncStatus.FAILED.value
            await self._fail_best_effort(summary, "Sync interrupted before completion")
            raise
        except Exception as e:
            summary.status = SyncStatus.FAILED.value
            summary.add_error(str(e))
            await self._fail_best_effort(summary, f"{type(e).__name__}: {e}")
            raise

        summary.duration_ms = int((time.monotonic() - started) * 1000)
        summary.status = SyncStatus.COMPLETED.value
        await self.ledger.mark_completed(summary.job_id, summary.counters(), summary.details())
        self._log_report(summary)
        return summary

    def _page_ceiling(self, total_items: Optional[int]) -> int:
        max_pages = self._cfg.SYNC_MAX_PAGES
        if total_items is None:
            return max_pages
        factor = self._cfg.SYNC_PAGE_CEILING_FACTOR
        expected = max(1, math.ceil(total_items / self.client.page_size))
        return min(max_pages, max(factor * expected, factor))

    async def _paginate(self, ctx: RunContext) -> None:
        summary = ctx.summary
        cursor: Optional[str] = None
        ceiling = self._cfg.SYNC_MAX_PAGES
        while True:
            if summary.pages >= ceiling:
                raise PageLimitExceededError(summary.pages, ceiling)
            page = await self.fetch_page(cursor, ctx.site_ids)
            summary.pages += 1
            if summary.pages == 1:
                summary.total_available = page.total_items
                ceiling = self._page_ceiling(page.total_items)

            await self._process_page(page, ctx)
            await self.ledger.update_progress(summary.job_id, summary.counters())

            cursor = page.next_cursor
            if not cursor:
                break

    async def _process_page(self, page: Page, ctx: RunContext) -> None:
        summary = ctx.summary
        every = max(1, self._cfg.SYNC_PROGRESS_LOG_EVERY)

        for rejected in page.rejected:
            summary.processed += 1
            summary.failed += 1
            summary.add_error(f"rejected {rejected.record_id or '?'}: {rejected.reason}")

        async with self._session_factory() as db:
            for record in page.items:
                summary.processed += 1
                try:
                    tenant = self.resolver.resolve(ctx.mapping, self.site_of(record))
                except IdentityUnresolvedError as e:
                    summary.record_unmapped(e.site_id)
                    continue
                try:
                    # One savepoint per record: a failed write only drops this record
                    async with db.begin_nested():
                        result = await self.upsert_record(db, record, tenant, ctx)
                except ParseError as e:
                    summary.failed += 1
                    summary.add_error(str(e))
                    logger.warning("Skipping unparseable %s record: %s", self.record_label, e)
                    continue
                except SQLAlchemyError as e:
                    if getattr(e, "connection_invalidated", False):
                        raise
                    summary.failed += 1
                    summary.add_error(f"storage error: {e}")
                    logger.warning(
                        "Could not store %s record for tenant %s: %s",
                        self.record_label, tenant.slug, e,
                    )
                    continue
                self.record_stored(record, result, ctx)
                summary.record(tenant, result)

                if summary.processed % every == 0:
                    total = summary.total_available
                    logger.info(
                        "%s sync progress: %d/%s processed (%d created, %d updated, %d skipped)",
                        self.job_type.value, summary.processed,
                        total if total is not None else "?",
                        summary.created, summary.updated, summary.skipped,
                    )
            await db.commit()

    async def _fail_best_effort(self, summary: RunSummary, message: str) -> None:
        try:
            await asyncio.shield(
                self.ledger.mark_failed(summary.job_id, message, summary.counters())
            )
        except (LedgerError, asyncio.CancelledError) as e:
            logger.error("Could not mark sync job %s FAILED: %s", summary.job_id, e)
        except Exception:
            logger.exception("Could not mark sync job %s FAILED", summary.job_id)

    def _log_report(self, summary: RunSummary) -> None:
        logger.info(
            "%s sync COMPLETED in %dms: %d processed, %d created, %d updated, "
            "%d unchanged, %d skipped, %d failed over %d pages (coverage %.1f%%)",
            self.job_type.value, summary.duration_ms, summary.processed,
            summary.created, summary.updated, summary.unchanged,
            summary.skipped, summary.failed, summary.pages, summary.coverage_percent,
        )
        for tenant_slug, counts in sorted(summary.tenant_breakdown.items()):
            logger.info("  %s: %s", tenant_slug, counts)
        for site_id, count in sorted(summary.unmapped_sites.items()):
            logger.warning(
                "  unmapped site %s: %d %s skipped (create or link a tenant for this site)",
                site_id, count, self.record_label,
            )


# ── Run-level retry ───────────────────────────────────────────────────


def is_retryable(exc: BaseException) -> bool:
    if not isinstance(exc, Exception):
        return False
    if isinstance(exc, (ConfigurationError, LedgerError)):
        return False
    if isinstance(exc, SyncError):
        return bool(exc.retryable)
    return True


async def run_with_retry(
    run: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    base_delay: float = 2.0,
    max_delay: float = 30.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Call *run* until it succeeds, doubling the delay between attempts.

    Only run-level exceptions are retried; configuration errors and
    non-retryable upstream responses (4xx other than 429) raise at once.
    The last exception propagates once attempts are exhausted.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, min=base_delay, max=max_delay),
        retry=retry_if_exception(is_retryable),
        reraise=True,
        sleep=sleep,
        before_sleep=before_sleep_log(logger, logging.WARNING),
    )
    return await retrying(run)
