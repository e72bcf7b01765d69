"""Site to tenant identity resolution.

A SentinelOne site maps to at most one tenant through
``Tenant.sentinelone_site_id``. The resolver builds that mapping once per
sync run, classifies upstream sites into mapped/unmapped, and can create
tenants for unmapped sites with collision-free slugs.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import asdict, dataclass, field
from typing import Awaitable, Callable, Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sentinel_sync.config import AppConfig, settings
from sentinel_sync.core.sentinelone import SentinelOneClient
from sentinel_sync.db.models import Tenant
from sentinel_sync.db.repositories import TenantRepository
from sentinel_sync.errors import (
    IdentityUnresolvedError,
    PageLimitExceededError,
    TransientNetworkError,
    UpstreamAPIError,
)
from sentinel_sync.schemas.upstream import Site

logger = logging.getLogger(__name__)


# ── Slugs ─────────────────────────────────────────────────────────────


def slugify(name: str, max_length: int = 50) -> str:
    """URL-safe slug: lowercase, ``[a-z0-9-]`` only, single hyphens, trimmed."""
    slug = (name or "").lower()
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    slug = slug.strip("-")
    slug = slug[:max_length].strip("-")
    return slug or "tenant"


async def ensure_unique_slug(
    base: str,
    exists: Callable[[str], Awaitable[bool]],
    max_attempts: int = 100,
) -> str:
    """Return *base*, else ``base-1`` ... ``base-N``, else a timestamp suffix."""
    if not await exists(base):
        return base
    for counter in range(1, max_attempts + 1):
        candidate = f"{base}-{counter}"
        if not await exists(candidate):
            return candidate
    fallback = f"{base}-{time.time_ns()}"
    logger.warning("Slug %r exhausted %d suffixes, using %r", base, max_attempts, fallback)
    return fallback


# ── Result types ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class TenantRef:
    id: str
    slug: str
    name: str
    site_id: str

    @classmethod
    def from_tenant(cls, tenant: Tenant) -> "TenantRef":
        return cls(
            id=tenant.id,
            slug=tenant.slug,
            name=tenant.name,
            site_id=tenant.sentinelone_site_id or "",
        )


@dataclass
class SiteClassification:
    mapped: list[tuple[Site, TenantRef]] = field(default_factory=list)
    unmapped: list[Site] = field(default_factory=list)


@dataclass
class UnmappedSite:
    site_id: str
    name: str
    account_name: str | None = None
    site_type: str | None = None
    state: str | None = None
    agent_count: int | None = None


@dataclass
class SiteDiagnosis:
    total_sites: int = 0
    total_tenants: int = 0
    mapped: list[dict] = field(default_factory=list)
    unmapped: list[UnmappedSite] = field(default_factory=list)
    tenants_without_site: list[dict] = field(default_factory=list)

    @property
    def unmapped_agent_estimate(self) -> int:
        return sum(s.agent_count or 0 for s in self.unmapped)

    def to_dict(self) -> dict:
        return {
            "total_sites": self.total_sites,
            "total_tenants": self.total_tenants,
            "mapped": self.mapped,
            "unmapped": [asdict(s) for s in self.unmapped],
            "tenants_without_site": self.tenants_without_site,
            "unmapped_agent_estimate": self.unmapped_agent_estimate,
        }


@dataclass
class TenantSyncResult:
    dry_run: bool = False
    matched: list[dict] = field(default_factory=list)
    updated: list[dict] = field(default_factory=list)
    created: list[dict] = field(default_factory=list)
    unmapped: list[dict] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


# ── Resolver ──────────────────────────────────────────────────────────


class IdentityResolver:
    """Builds and queries the site -> tenant mapping."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cfg: AppConfig = settings,
    ):
        self._session_factory = session_factory
        self._cfg = cfg

    async def build_site_to_tenant_map(self, tenant_id: str | None = None) -> dict[str, TenantRef]:
        async with self._session_factory() as db:
            tenants = await TenantRepository(db).list_mapped(tenant_id)
        mapping = {t.sentinelone_site_id: TenantRef.from_tenant(t) for t in tenants}
        logger.info("Site -> tenant map built: %d mapped sites", len(mapping))
        return mapping

    @staticmethod
    def classify(units: Iterable[Site], mapping: dict[str, TenantRef]) -> SiteClassification:
        result = SiteClassification()
        for site in units:
            tenant = mapping.get(site.id)
            if tenant is None:
                result.unmapped.append(site)
            else:
                result.mapped.append((site, tenant))
        return result

    @staticmethod
    def resolve(mapping: dict[str, TenantRef], site_id: str | None) -> TenantRef:
        tenant = mapping.get(site_id) if site_id else None
        if tenant is None:
            raise IdentityUnresolvedError(site_id)
        return tenant

    async def fetch_all_sites(self, client: SentinelOneClient) -> list[Site]:
        sites: list[Site] = []
        cursor: str | None = None
        pages = 0
        ceiling = self._cfg.SYNC_MAX_PAGES
        while True:
            pages += 1
            if pages > ceiling:
                raise PageLimitExceededError(pages - 1, ceiling)
            page = await client.list_sites(cursor=cursor)
            sites.extend(page.items)
            cursor = page.next_cursor
            if not cursor:
                break
        logger.info("Fetched %d SentinelOne sites in %d pages", len(sites), pages)
        return sites

    async def diagnose(self, client: SentinelOneClient) -> SiteDiagnosis:
        """Report mapped sites, unmapped sites with agent counts, and siteless tenants."""
        sites = await self.fetch_all_sites(client)
        mapping = await self.build_site_to_tenant_map()
        classification = self.classify(sites, mapping)

        async with self._session_factory() as db:
            repo = TenantRepository(db)
            counts = await repo.endpoint_counts()
            all_tenants = await repo.list_all()
            siteless = await repo.list_without_site()

        diagnosis = SiteDiagnosis(total_sites=len(sites), total_tenants=len(all_tenants))
        for site, tenant in classification.mapped:
            diagnosis.mapped.append({
                "site_id": site.id,
                "site_name": site.name,
                "tenant_id": tenant.id,
                "tenant_name": tenant.name,
                "endpoints": counts.get(tenant.id, 0),
            })

        for site in classification.unmapped:
            try:
                agent_count: int | None = await client.count_agents(site.id)
            except (UpstreamAPIError, TransientNetworkError) as e:
                logger.warning("Could not count agents for site %s: %s", site.id, e)
                agent_count = None
            diagnosis.unmapped.append(
                UnmappedSite(
                    site_id=site.id,
                    name=site.name,
                    account_name=site.account_name,
                    site_type=site.site_type,
                    state=site.state,
                    agent_count=agent_count,
                )
            )
            logger.warning(
                "Unmapped site %r (id=%s, account=%s, agents=%s)",
                site.name, site.id, site.account_name or "-",
                agent_count if agent_count is not None else "?",
            )

        diagnosis.tenants_without_site = [
            {"tenant_id": t.id, "name": t.name, "slug": t.slug} for t in siteless
        ]
        return diagnosis

    async def sync_tenants(
        self,
        sites: Iterable[Site],
        *,
        create_missing: bool = True,
        dry_run: bool = False,
    ) -> TenantSyncResult:
        """Match each site to its tenant, rename on drift, create when missing."""
        result = TenantSyncResult(dry_run=dry_run)
        reserved: set[str] = set()

        async with self._session_factory() as db:
            repo = TenantRepository(db)

            async def _taken(slug: str) -> bool:
                return slug in reserved or await repo.slug_exists(slug)

            for site in sites:
                entry = {"site_id": site.id, "site_name": site.name}
                try:
                    tenant = await repo.get_by_site(site.id)
                    if tenant is not None:
                        entry["tenant_id"] = tenant.id
                        if site.name and tenant.name != site.name:
                            entry["previous_name"] = tenant.name
                            if not dry_run:
                                tenant.name = site.name
                                await db.commit()
                            result.updated.append(entry)
                        else:
                            result.matched.append(entry)
                        continue

                    if not create_missing:
                        result.unmapped.append(entry)
                        continue

                    base = slugify(site.name or f"site-{site.id}", self._cfg.SLUG_MAX_LENGTH)
                    slug = await ensure_unique_slug(base, _taken, self._cfg.SLUG_MAX_ATTEMPTS)
                    reserved.add(slug)
                    entry["slug"] = slug
                    if not dry_run:
                        created = await repo.create(
                            name=site.name or slug, slug=slug, site_id=site.id
                        )
                        await db.commit()
                        entry["tenant_id"] = created.id
                    result.created.append(entry)
                    logger.info(
                        "Tenant %s for site %r (%s)",
                        "planned" if dry_run else "created", site.name, slug,
                    )
                except IntegrityError as e:
                    # Committed sites stay; only this site's pending write is dropped
                    await db.rollback()
                    logger.error("Failed to create tenant for site %s: %s", site.id, e)
                    result.errors.append({**entry, "error": str(e.orig) if e.orig else str(e)})

            if dry_run:
                await db.rollback()

        logger.info(
            "Tenant sync: %d matched, %d updated, %d created, %d errors%s",
            len(result.matched), len(result.updated), len(result.created),
            len(result.errors), " (dry run)" if dry_run else "",
        )
        return result
