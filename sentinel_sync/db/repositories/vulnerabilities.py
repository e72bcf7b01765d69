"""Vulnerability catalog and endpoint exposure links."""

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from sentinel_sync.db.models import (
    EndpointVulnerability,
    Vulnerability,
    VulnerabilitySource,
    VulnerabilityStatus,
)
from sentinel_sync.db.repositories.base import UpsertOutcome, apply_changes


class VulnerabilityRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_cve(self, cve_id: str) -> Vulnerability | None:
        result = await self.session.execute(
            select(Vulnerability).where(Vulnerability.cve_id == cve_id)
        )
        return result.scalar_one_or_none()

    async def upsert(self, cve_id: str, values: dict) -> tuple[Vulnerability, UpsertOutcome]:
        existing = await self.get_by_cve(cve_id)
        if existing is None:
            vuln = Vulnerability(cve_id=cve_id, **values)
            self.session.add(vuln)
            await self.session.flush()
            return vuln, UpsertOutcome.CREATED
        # Keep richer catalog data when a later row omits it
        values = {k: v for k, v in values.items() if v is not None}
        if apply_changes(existing, values):
            await self.session.flush()
            return existing, UpsertOutcome.UPDATED
        return existing, UpsertOutcome.UNCHANGED

    async def link(
        self,
        endpoint_id: str,
        vulnerability_id: str,
        detected_by: VulnerabilitySource = VulnerabilitySource.SENTINELONE,
    ) -> tuple[EndpointVulnerability, UpsertOutcome]:
        """Ensure an OPEN exposure link. A RESOLVED link that is seen again reopens."""
        result = await self.session.execute(
            select(EndpointVulnerability).where(
                EndpointVulnerability.endpoint_id == endpoint_id,
                EndpointVulnerability.vulnerability_id == vulnerability_id,
            )
        )
        existing = result.scalar_one_or_none()
        if existing is None:
            link = EndpointVulnerability(
                endpoint_id=endpoint_id,
                vulnerability_id=vulnerability_id,
                status=VulnerabilityStatus.OPEN.value,
                detected_by=detected_by.value,
                detected_at=datetime.now(timezone.utc),
            )
            self.session.add(link)
            await self.session.flush()
            return link, UpsertOutcome.CREATED
        if existing.status == VulnerabilityStatus.RESOLVED.value:
            existing.status = VulnerabilityStatus.OPEN.value
            existing.resolved_at = None
            existing.detected_at = datetime.now(timezone.utc)
            await self.session.flush()
            return existing, UpsertOutcome.UPDATED
        return existing, UpsertOutcome.UNCHANGED
