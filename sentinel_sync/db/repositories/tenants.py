"""Tenant repository - site mappings and slug lookups."""

import logging
from typing import Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from sentinel_sync.db.models import Endpoint, Tenant

logger = logging.getLogger(__name__)


class TenantRepository:
    """Typed queries over the tenants table."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, tenant_id: str) -> Tenant | None:
        return await self.session.get(Tenant, tenant_id)

    async def get_by_site(self, site_id: str) -> Tenant | None:
        result = await self.session.execute(
            select(Tenant).where(Tenant.sentinelone_site_id == site_id)
        )
        return result.scalar_one_or_none()

    async def list_mapped(self, tenant_id: str | None = None) -> Sequence[Tenant]:
        stmt = select(Tenant).where(Tenant.sentinelone_site_id.is_not(None))
        if tenant_id:
            stmt = stmt.where(Tenant.id == tenant_id)
        result = await self.session.execute(stmt.order_by(Tenant.name))
        return result.scalars().all()

    async def list_without_site(self) -> Sequence[Tenant]:
        result = await self.session.execute(
            select(Tenant).where(Tenant.sentinelone_site_id.is_(None)).order_by(Tenant.name)
        )
        return result.scalars().all()

    async def list_all(self) -> Sequence[Tenant]:
        result = await self.session.execute(select(Tenant).order_by(Tenant.name))
        return result.scalars().all()

    async def slug_exists(self, slug: str) -> bool:
        result = await self.session.execute(
            select(func.count(Tenant.id)).where(Tenant.slug == slug)
        )
        return result.scalar_one() > 0

    async def create(self, name: str, slug: str, site_id: str | None = None) -> Tenant:
        tenant = Tenant(name=name, slug=slug, sentinelone_site_id=site_id)
        self.session.add(tenant)
        await self.session.flush()
        return tenant

    async def endpoint_counts(self) -> dict[str, int]:
        result = await self.session.execute(
            select(Endpoint.tenant_id, func.count(Endpoint.id)).group_by(Endpoint.tenant_id)
        )
        return {tenant_id: count for tenant_id, count in result.all()}
