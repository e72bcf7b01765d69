"""Agent -> Endpoint sync.

Pulls every agent (active and inactive) and upserts endpoints keyed by
``(tenant_id, hostname)`` with the derived compliance score. Vulnerability
counts are owned by the CVE sync and are left untouched here.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from sentinel_sync.db.models import SyncJobType
from sentinel_sync.db.repositories import EndpointRepository, UpsertOutcome
from sentinel_sync.schemas.upstream import Agent, Page
from sentinel_sync.services.identity import TenantRef
from sentinel_sync.services.scoring import ComplianceResult, score_agent
from sentinel_sync.services.sync_engine import (
    RecordOutcome,
    RecordResult,
    RunContext,
    SyncOrchestrator,
)

logger = logging.getLogger(__name__)

_OUTCOMES = {
    UpsertOutcome.CREATED: RecordOutcome.CREATED,
    UpsertOutcome.UPDATED: RecordOutcome.UPDATED,
    UpsertOutcome.UNCHANGED: RecordOutcome.UNCHANGED,
}


def endpoint_values(agent: Agent, result: ComplianceResult | None = None) -> dict:
    """Local endpoint columns derived from an upstream agent."""
    result = result or score_agent(agent)
    return {
        "sentinelone_agent_id": agent.id,
        "sentinelone_site_id": agent.site_id,
        "os_name": agent.os_name,
        "os_revision": agent.os_revision,
        "ip_address": agent.ip_address,
        "is_agent_active": agent.is_active,
        "is_agent_up_to_date": agent.is_up_to_date,
        "is_infected": agent.infected,
        "active_threats": agent.active_threats,
        "is_compliant": result.is_compliant,
        "compliance_score": result.compliance_score,
        "last_seen": agent.last_active_date,
    }


class AgentSyncOrchestrator(SyncOrchestrator):
    job_type = SyncJobType.AGENTS
    record_label = "agents"

    async def fetch_page(self, cursor: Optional[str], site_ids: Optional[Sequence[str]]) -> Page:
        return await self.client.list_agents(
            cursor=cursor,
            site_ids=site_ids,
            sort_by="lastActiveDate",
            sort_order="desc",
        )

    def site_of(self, record: Agent) -> Optional[str]:
        return record.site_id

    async def upsert_record(
        self, db: AsyncSession, record: Agent, tenant: TenantRef, ctx: RunContext
    ) -> RecordResult:
        score = score_agent(record)
        _, outcome = await EndpointRepository(db).upsert_by_hostname(
            tenant.id, record.computer_name, endpoint_values(record, score)
        )
        return RecordResult(_OUTCOMES[outcome], score.status_class)
