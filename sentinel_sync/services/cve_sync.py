"""Application risk (CVE) sync.

Each upstream row pairs one CVE with one agent. The row's site resolves the
tenant, the agent id (or hostname) resolves the endpoint inside that
tenant, then the CVE catalog entry and the OPEN exposure link are upserted.
After pagination the per-severity counters on every in-scope endpoint are
recomputed from their OPEN links.
"""

from __future__ import annotations

import logging
import re
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from sentinel_sync.db.models import SyncJobType, VulnerabilitySource
from sentinel_sync.db.repositories import (
    EndpointRepository,
    UpsertOutcome,
    VulnerabilityRepository,
)
from sentinel_sync.errors import ParseError
from sentinel_sync.schemas.upstream import Page, RiskRecord
from sentinel_sync.services.identity import TenantRef
from sentinel_sync.services.sync_engine import (
    RecordOutcome,
    RecordResult,
    RunContext,
    SyncOrchestrator,
)

logger = logging.getLogger(__name__)

CVE_PATTERN = re.compile(r"^CVE-\d{4}-\d{4,}$")
MAX_REPORTED_UNMAPPED = 50

_OUTCOMES = {
    UpsertOutcome.CREATED: RecordOutcome.CREATED,
    UpsertOutcome.UPDATED: RecordOutcome.UPDATED,
    UpsertOutcome.UNCHANGED: RecordOutcome.UNCHANGED,
}


def vulnerability_values(record: RiskRecord) -> dict:
    return {
        "title": record.title[:512],
        "description": record.description,
        "severity": record.severity.value,
        "cvss_score": record.base_score,
        "vendor": record.application_vendor,
        "product": record.application_name,
        "version": record.application_version,
    }


class CveSyncOrchestrator(SyncOrchestrator):
    job_type = SyncJobType.CVES
    record_label = "CVE rows"

    async def fetch_page(self, cursor: Optional[str], site_ids: Optional[Sequence[str]]) -> Page:
        return await self.client.list_vulnerability_records(cursor=cursor, site_ids=site_ids)

    def site_of(self, record: RiskRecord) -> Optional[str]:
        return record.site_id

    async def _resolve_endpoint_id(
        self, db: AsyncSession, record: RiskRecord, tenant: TenantRef, ctx: RunContext
    ) -> Optional[str]:
        cache: dict = ctx.scratch.setdefault("endpoint_ids", {})
        key = (tenant.id, record.endpoint_id, record.endpoint_name)
        if key in cache:
            return cache[key]

        repo = EndpointRepository(db)
        endpoint = None
        if record.endpoint_id:
            endpoint = await repo.get_by_agent_id(tenant.id, record.endpoint_id)
        if endpoint is None and record.endpoint_name:
            endpoint = await repo.get_by_hostname(tenant.id, record.endpoint_name)
        cache[key] = endpoint.id if endpoint else None
        return cache[key]

    async def upsert_record(
        self, db: AsyncSession, record: RiskRecord, tenant: TenantRef, ctx: RunContext
    ) -> RecordResult:
        ctx.scratch.pop("pending_catalog", None)
        if not CVE_PATTERN.match(record.cve_id):
            raise ParseError(f"malformed CVE id {record.cve_id!r}")

        endpoint_id = await self._resolve_endpoint_id(db, record, tenant, ctx)
        if endpoint_id is None:
            unmapped: list = ctx.scratch.setdefault("unmapped_endpoints", [])
            ref = record.endpoint_name or record.endpoint_id or "?"
            if ref not in unmapped:
                unmapped.append(ref)
            return RecordResult(RecordOutcome.SKIPPED)

        repo = VulnerabilityRepository(db)
        # First stored row per CVE in a run owns the catalog entry; later rows only link
        seen: dict[str, str] = ctx.scratch.setdefault("vulnerability_ids", {})
        vulnerability_id = seen.get(record.cve_id)
        if vulnerability_id is None:
            vuln, vuln_outcome = await repo.upsert(record.cve_id, vulnerability_values(record))
            vulnerability_id = vuln.id
            ctx.scratch["pending_catalog"] = (record.cve_id, vuln.id, vuln_outcome)

        _, link_outcome = await repo.link(endpoint_id, vulnerability_id, VulnerabilitySource.SENTINELONE)
        return RecordResult(_OUTCOMES[link_outcome], record.severity.value)

    def record_stored(self, record: RiskRecord, result: RecordResult, ctx: RunContext) -> None:
        pending = ctx.scratch.pop("pending_catalog", None)
        if pending is None:
            return
        cve_id, vulnerability_id, outcome = pending
        ctx.scratch.setdefault("vulnerability_ids", {})[cve_id] = vulnerability_id
        extra = ctx.summary.extra
        if outcome == UpsertOutcome.CREATED:
            extra["vulnerabilities_created"] = extra.get("vulnerabilities_created", 0) + 1
        elif outcome == UpsertOutcome.UPDATED:
            extra["vulnerabilities_updated"] = extra.get("vulnerabilities_updated", 0) + 1

    async def after_run(self, ctx: RunContext) -> None:
        summary = ctx.summary
        unmapped = ctx.scratch.get("unmapped_endpoints", [])
        summary.extra.setdefault("vulnerabilities_created", 0)
        summary.extra.setdefault("vulnerabilities_updated", 0)
        summary.extra["unique_cves"] = len(ctx.scratch.get("vulnerability_ids", {}))
        summary.extra["unmapped_endpoint_count"] = len(unmapped)
        summary.extra["unmapped_endpoints"] = unmapped[:MAX_REPORTED_UNMAPPED]
        if unmapped:
            logger.warning(
                "%d CVE endpoints had no local endpoint (run agent sync first): %s",
                len(unmapped), ", ".join(unmapped[:10]),
            )

        tenant_ids = sorted({t.id for t in ctx.mapping.values()})
        async with self._session_factory() as db:
            changed = await EndpointRepository(db).recount_vulnerabilities(tenant_ids)
            await db.commit()
        summary.extra["endpoints_recounted"] = changed
        logger.info("Vulnerability counts refreshed for %d endpoints", changed)
