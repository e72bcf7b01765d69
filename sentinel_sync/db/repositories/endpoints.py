"""Endpoint repository - hostname-keyed upserts and vulnerability rollups."""

import logging
from collections import defaultdict
from typing import Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from sentinel_sync.db.models import (
    Endpoint,
    EndpointVulnerability,
    Vulnerability,
    VulnerabilitySeverity,
    VulnerabilityStatus,
)
from sentinel_sync.db.repositories.base import UpsertOutcome, apply_changes

logger = logging.getLogger(__name__)

_COUNT_COLUMNS = {
    VulnerabilitySeverity.CRITICAL.value: "critical_vulns",
    VulnerabilitySeverity.HIGH.value: "high_vulns",
    VulnerabilitySeverity.MEDIUM.value: "medium_vulns",
    VulnerabilitySeverity.LOW.value: "low_vulns",
}


class EndpointRepository:
    """Typed access to endpoints scoped by tenant."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, endpoint_id: str) -> Endpoint | None:
        return await self.session.get(Endpoint, endpoint_id)

    async def get_by_hostname(self, tenant_id: str, hostname: str) -> Endpoint | None:
        result = await self.session.execute(
            select(Endpoint).where(Endpoint.tenant_id == tenant_id, Endpoint.hostname == hostname)
        )
        return result.scalar_one_or_none()

    async def get_by_agent_id(self, tenant_id: str, agent_id: str) -> Endpoint | None:
        result = await self.session.execute(
            select(Endpoint)
            .where(Endpoint.tenant_id == tenant_id, Endpoint.sentinelone_agent_id == agent_id)
            .order_by(Endpoint.updated_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def upsert_by_hostname(
        self, tenant_id: str, hostname: str, values: dict
    ) -> tuple[Endpoint, UpsertOutcome]:
        """Create or update the endpoint keyed by ``(tenant_id, hostname)``.

        The agent id is just another attribute here: a re-enrolled device keeps
        its row and picks up the new agent id.
        """
        existing = await self.get_by_hostname(tenant_id, hostname)
        if existing is None:
            endpoint = Endpoint(tenant_id=tenant_id, hostname=hostname, **values)
            self.session.add(endpoint)
            await self.session.flush()
            return endpoint, UpsertOutcome.CREATED
        if apply_changes(existing, values):
            await self.session.flush()
            return existing, UpsertOutcome.UPDATED
        return existing, UpsertOutcome.UNCHANGED

    async def list_for_tenant(
        self,
        tenant_id: str,
        endpoint_ids: Sequence[str] | None = None,
        os_contains: str | None = None,
    ) -> Sequence[Endpoint]:
        stmt = select(Endpoint).where(Endpoint.tenant_id == tenant_id)
        if endpoint_ids:
            stmt = stmt.where(Endpoint.id.in_(list(endpoint_ids)))
        if os_contains:
            stmt = stmt.where(func.lower(Endpoint.os_name).contains(os_contains.lower()))
        result = await self.session.execute(stmt.order_by(Endpoint.hostname))
        return result.scalars().all()

    async def recount_vulnerabilities(self, tenant_ids: Sequence[str]) -> int:
        """Recompute ``*_vulns`` from OPEN links for every endpoint of *tenant_ids*.

        Returns the number of endpoints whose counts changed.
        """
        if not tenant_ids:
            return 0
        ids = list(tenant_ids)
        result = await self.session.execute(
            select(EndpointVulnerability.endpoint_id, Vulnerability.severity, func.count())
            .join(Vulnerability, Vulnerability.id == EndpointVulnerability.vulnerability_id)
            .join(Endpoint, Endpoint.id == EndpointVulnerability.endpoint_id)
            .where(
                Endpoint.tenant_id.in_(ids),
                EndpointVulnerability.status == VulnerabilityStatus.OPEN.value,
            )
            .group_by(EndpointVulnerability.endpoint_id, Vulnerability.severity)
        )
        counts: dict[str, dict[str, int]] = defaultdict(dict)
        for endpoint_id, severity, count in result.all():
            counts[endpoint_id][severity] = count

        endpoints = await self.session.execute(select(Endpoint).where(Endpoint.tenant_id.in_(ids)))
        changed = 0
        for endpoint in endpoints.scalars():
            per_severity = counts.get(endpoint.id, {})
            values = {
                column: per_severity.get(severity, 0)
                for severity, column in _COUNT_COLUMNS.items()
            }
            if apply_changes(endpoint, values):
                changed += 1
        await self.session.flush()
        return changed
