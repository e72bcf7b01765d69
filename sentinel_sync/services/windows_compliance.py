"""Windows compliance evaluation.

``evaluate_policy`` is pure: a parsed build, a policy's rules, the version
registry and an evaluation time go in; a verdict with machine-readable
failure reasons comes out. ``WindowsComplianceEvaluator`` applies it to a
tenant's endpoints, appends one evaluation row per endpoint and refreshes
the endpoint's current Windows compliance columns.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Sequence

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sentinel_sync.db.models import (
    Tenant,
    WindowsComplianceEvaluation,
    WindowsCompliancePolicy,
    as_utc,
)
from sentinel_sync.db.repositories import EndpointRepository
from sentinel_sync.errors import ConfigurationError
from sentinel_sync.services.windows_versions import (
    WindowsBuildInfo,
    WindowsVersionRegistry,
    build_key,
    parse_windows_os,
)

logger = logging.getLogger(__name__)


class FailureReason(str, Enum):
    UNSUPPORTED_VERSION = "unsupported_version"
    VERSION_NOT_ALLOWED = "version_not_allowed"
    VERSION_BLOCKED = "version_blocked"
    BELOW_MINIMUM_VERSION = "below_minimum_version"
    EDITION_NOT_ALLOWED = "edition_not_allowed"
    EDITION_BLOCKED = "edition_blocked"
    NOT_LATEST_BUILD = "not_latest_build"
    BUILD_TOO_OLD = "build_too_old"


DEDUCTIONS = {
    FailureReason.UNSUPPORTED_VERSION: 40,
    FailureReason.VERSION_NOT_ALLOWED: 30,
    FailureReason.VERSION_BLOCKED: 50,
    FailureReason.BELOW_MINIMUM_VERSION: 25,
    FailureReason.EDITION_NOT_ALLOWED: 20,
    FailureReason.EDITION_BLOCKED: 30,
    FailureReason.NOT_LATEST_BUILD: 20,
    FailureReason.BUILD_TOO_OLD: 15,
}

DEFAULT_POLICY_NAME = "Default Windows Compliance Policy"


def compare_feature_updates(a: Optional[str], b: Optional[str]) -> int:
    """Compare ``24H2``-style labels; unparseable labels sort lowest."""
    def _parse(value: Optional[str]) -> tuple[int, int]:
        match = re.search(r"(\d+)H(\d+)", value or "", re.I)
        return (int(match.group(1)), int(match.group(2))) if match else (0, 0)

    left, right = _parse(a), _parse(b)
    return (left > right) - (left < right)


@dataclass(frozen=True)
class PolicyRules:
    require_supported: bool = True
    require_latest_build: bool = False
    allowed_versions: tuple[str, ...] = ()
    blocked_versions: tuple[str, ...] = ()
    minimum_versions: dict = field(default_factory=dict)
    allowed_editions: tuple[str, ...] = ()
    blocked_editions: tuple[str, ...] = ()
    max_build_age_days: Optional[int] = None

    @classmethod
    def from_policy(cls, policy: WindowsCompliancePolicy) -> "PolicyRules":
        return cls(
            require_supported=bool(policy.require_supported),
            require_latest_build=bool(policy.require_latest_build),
            allowed_versions=tuple(policy.allowed_versions or ()),
            blocked_versions=tuple(policy.blocked_versions or ()),
            minimum_versions=dict(policy.minimum_versions or {}),
            allowed_editions=tuple(policy.allowed_editions or ()),
            blocked_editions=tuple(policy.blocked_editions or ()),
            max_build_age_days=policy.max_build_age_days,
        )

    def snapshot(self) -> dict:
        data = asdict(self)
        for key in ("allowed_versions", "blocked_versions", "allowed_editions", "blocked_editions"):
            data[key] = list(data[key])
        return data


@dataclass
class ComplianceVerdict:
    is_compliant: bool = True
    compliance_score: int = 100
    failure_reasons: list[str] = field(default_factory=list)
    required_actions: list[str] = field(default_factory=list)
    is_supported_version: bool = False
    is_latest_build: bool = False
    is_allowed_version: bool = True
    is_allowed_edition: bool = True
    build_age_days: Optional[int] = None
    recommended_build: Optional[str] = None
    recommended_version: Optional[str] = None

    def fail(self, reason: FailureReason, action: str) -> None:
        self.is_compliant = False
        self.compliance_score -= DEDUCTIONS[reason]
        self.failure_reasons.append(reason.value)
        self.required_actions.append(action)


def _edition_matches(edition: str, candidates: Sequence[str]) -> bool:
    lowered = edition.lower()
    return any(c.lower() in lowered for c in candidates)


def evaluate_policy(
    info: WindowsBuildInfo,
    rules: PolicyRules,
    registry: WindowsVersionRegistry,
    now: datetime,
) -> ComplianceVerdict:
    now = as_utc(now)
    latest = registry.latest_entry(info.major_version, info.feature_update, info.edition)
    exact = registry.entry_for_build(info)

    verdict = ComplianceVerdict(
        is_supported_version=registry.is_supported(
            info.major_version, info.feature_update, now, info.edition
        ),
        recommended_build=latest.build_number if latest else None,
    )
    if latest is not None:
        precision = len(build_key(latest.build_number))
        verdict.is_latest_build = build_key(info.build)[:precision] >= build_key(latest.build_number)
    if exact is not None:
        verdict.build_age_days = max(0, (now - exact.release_date).days)

    if rules.require_supported and not verdict.is_supported_version:
        verdict.fail(FailureReason.UNSUPPORTED_VERSION, "Upgrade to a supported Windows version")

    if rules.allowed_versions:
        verdict.is_allowed_version = info.major_version in rules.allowed_versions
        if not verdict.is_allowed_version:
            verdict.fail(
                FailureReason.VERSION_NOT_ALLOWED,
                f"Upgrade to an allowed version: {', '.join(rules.allowed_versions)}",
            )

    if info.major_version in rules.blocked_versions:
        verdict.fail(FailureReason.VERSION_BLOCKED, "Upgrade to a non-blocked Windows version")

    minimum = rules.minimum_versions.get(info.major_version)
    if minimum and compare_feature_updates(info.feature_update, minimum) < 0:
        verdict.fail(
            FailureReason.BELOW_MINIMUM_VERSION,
            f"Upgrade to Windows {info.major_version} {minimum} or later",
        )
        verdict.recommended_version = f"{info.major_version} {minimum}"

    if rules.allowed_editions:
        verdict.is_allowed_edition = _edition_matches(info.edition, rules.allowed_editions)
        if not verdict.is_allowed_edition:
            verdict.fail(
                FailureReason.EDITION_NOT_ALLOWED,
                f"Upgrade to allowed edition: {', '.join(rules.allowed_editions)}",
            )

    if rules.blocked_editions and _edition_matches(info.edition, rules.blocked_editions):
        verdict.fail(FailureReason.EDITION_BLOCKED, "Change to a non-blocked Windows edition")

    if rules.require_latest_build and not verdict.is_latest_build:
        verdict.fail(
            FailureReason.NOT_LATEST_BUILD,
            f"Update to latest build: {verdict.recommended_build or 'unknown'}",
        )

    if (
        rules.max_build_age_days is not None
        and verdict.build_age_days is not None
        and verdict.build_age_days > rules.max_build_age_days
    ):
        verdict.fail(
            FailureReason.BUILD_TOO_OLD,
            f"Build is {verdict.build_age_days} days old (max {rules.max_build_age_days}); "
            "update to a more recent build",
        )

    verdict.compliance_score = max(0, verdict.compliance_score)
    return verdict


# ── Persistence ───────────────────────────────────────────────────────


@dataclass
class EvaluationSummary:
    tenant_id: str
    policy_id: str
    policy_name: str
    total: int = 0
    evaluated: int = 0
    compliant: int = 0
    skipped: int = 0
    skipped_endpoints: list[str] = field(default_factory=list)
    failure_breakdown: dict[str, int] = field(default_factory=dict)

    @property
    def non_compliant(self) -> int:
        return self.evaluated - self.compliant

    def to_dict(self) -> dict:
        data = asdict(self)
        data["non_compliant"] = self.non_compliant
        return data


@dataclass
class ComplianceOverview:
    """Tenant roll-up over each Windows endpoint's most recent evaluation."""

    tenant_id: str
    total_windows: int = 0
    evaluated: int = 0
    compliant: int = 0
    version_breakdown: dict[str, dict[str, int]] = field(default_factory=dict)
    common_issues: list[dict] = field(default_factory=list)

    @property
    def non_compliant(self) -> int:
        return self.evaluated - self.compliant

    @property
    def needs_evaluation(self) -> int:
        return self.total_windows - self.evaluated

    @property
    def compliance_rate(self) -> int:
        return round(self.compliant * 100 / self.evaluated) if self.evaluated else 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data.update(
            non_compliant=self.non_compliant,
            needs_evaluation=self.needs_evaluation,
            compliance_rate=self.compliance_rate,
        )
        return data


def evaluation_to_dict(row: WindowsComplianceEvaluation) -> dict:
    evaluated_at = as_utc(row.evaluated_at)
    return {
        "id": row.id,
        "endpoint_id": row.endpoint_id,
        "policy_id": row.policy_id,
        "evaluated_at": evaluated_at.isoformat() if evaluated_at else None,
        "detected_version": row.detected_version,
        "detected_feature_update": row.detected_feature_update,
        "detected_edition": row.detected_edition,
        "detected_build": row.detected_build,
        "is_compliant": row.is_compliant,
        "compliance_score": row.compliance_score,
        "failure_reasons": row.failure_reasons or [],
        "required_actions": row.required_actions or [],
        "build_age_days": row.build_age_days,
        "recommended_build": row.recommended_build,
    }


class WindowsComplianceEvaluator:
    """Evaluates a tenant's Windows endpoints against its active policy."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @staticmethod
    async def active_policy(db: AsyncSession, tenant_id: str) -> Optional[WindowsCompliancePolicy]:
        """Lowest ``priority`` among active policies; ties go to the lowest id."""
        result = await db.execute(
            select(WindowsCompliancePolicy)
            .where(
                WindowsCompliancePolicy.tenant_id == tenant_id,
                WindowsCompliancePolicy.is_active.is_(True),
            )
            .order_by(WindowsCompliancePolicy.priority.asc(), WindowsCompliancePolicy.id.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def evaluate_tenant(
        self,
        tenant_id: str,
        endpoint_ids: Optional[Sequence[str]] = None,
        now: Optional[datetime] = None,
    ) -> EvaluationSummary:
        now = as_utc(now) or datetime.now(timezone.utc)
        async with self._session_factory() as db:
            policy = await self.active_policy(db, tenant_id)
            if policy is None:
                raise ConfigurationError(f"No active Windows compliance policy for tenant {tenant_id}")
            rules = PolicyRules.from_policy(policy)
            registry = await WindowsVersionRegistry.load(db)
            endpoints = await EndpointRepository(db).list_for_tenant(
                tenant_id, endpoint_ids=endpoint_ids, os_contains="windows"
            )

            summary = EvaluationSummary(
                tenant_id=tenant_id, policy_id=policy.id, policy_name=policy.name,
                total=len(endpoints),
            )
            reasons: Counter = Counter()
            for endpoint in endpoints:
                info = parse_windows_os(endpoint.os_name, endpoint.os_revision, registry)
                if info is None:
                    summary.skipped += 1
                    summary.skipped_endpoints.append(endpoint.hostname)
                    logger.info(
                        "Skipping %s: unparseable Windows version (%r, %r)",
                        endpoint.hostname, endpoint.os_name, endpoint.os_revision,
                    )
                    continue

                verdict = evaluate_policy(info, rules, registry, now)
                db.add(
                    WindowsComplianceEvaluation(
                        endpoint_id=endpoint.id,
                        policy_id=policy.id,
                        evaluated_at=now,
                        detected_version=info.major_version,
                        detected_feature_update=info.feature_update,
                        detected_edition=info.edition,
                        detected_build=info.build,
                        os_name=endpoint.os_name,
                        os_revision=endpoint.os_revision,
                        is_compliant=verdict.is_compliant,
                        compliance_score=verdict.compliance_score,
                        failure_reasons=verdict.failure_reasons,
                        required_actions=verdict.required_actions,
                        is_supported_version=verdict.is_supported_version,
                        is_latest_build=verdict.is_latest_build,
                        is_allowed_version=verdict.is_allowed_version,
                        is_allowed_edition=verdict.is_allowed_edition,
                        build_age_days=verdict.build_age_days,
                        recommended_build=verdict.recommended_build,
                        policy_snapshot=rules.snapshot(),
                    )
                )
                endpoint.windows_compliant = verdict.is_compliant
                endpoint.windows_compliance_score = verdict.compliance_score
                endpoint.last_windows_check = now

                summary.evaluated += 1
                if verdict.is_compliant:
                    summary.compliant += 1
                reasons.update(verdict.failure_reasons)

            summary.failure_breakdown = dict(reasons)
            await db.commit()

        logger.info(
            "Windows compliance for tenant %s: %d evaluated (%d compliant), %d skipped",
            tenant_id, summary.evaluated, summary.compliant, summary.skipped,
        )
        return summary

    async def latest_evaluation(self, endpoint_id: str) -> Optional[WindowsComplianceEvaluation]:
        rows = await self.evaluation_history(endpoint_id, limit=1)
        return rows[0] if rows else None

    async def evaluation_history(
        self, endpoint_id: str, limit: int = 20
    ) -> list[WindowsComplianceEvaluation]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(WindowsComplianceEvaluation)
                .where(WindowsComplianceEvaluation.endpoint_id == endpoint_id)
                .order_by(
                    WindowsComplianceEvaluation.evaluated_at.desc(),
                    WindowsComplianceEvaluation.id.desc(),
                )
                .limit(limit)
            )
            return list(result.scalars().all())

    async def overview(self, tenant_id: str, top_issues: int = 10) -> ComplianceOverview:
        async with self._session_factory() as db:
            endpoints = await EndpointRepository(db).list_for_tenant(tenant_id, os_contains="windows")
            overview = ComplianceOverview(tenant_id=tenant_id, total_windows=len(endpoints))
            if not endpoints:
                return overview

            evaluation = WindowsComplianceEvaluation
            latest_at = (
                select(evaluation.endpoint_id, func.max(evaluation.evaluated_at).label("evaluated_at"))
                .where(evaluation.endpoint_id.in_([e.id for e in endpoints]))
                .group_by(evaluation.endpoint_id)
                .subquery()
            )
            result = await db.execute(
                select(evaluation)
                .join(
                    latest_at,
                    and_(
                        evaluation.endpoint_id == latest_at.c.endpoint_id,
                        evaluation.evaluated_at == latest_at.c.evaluated_at,
                    ),
                )
                .order_by(evaluation.id.desc())
            )
            latest: dict[str, WindowsComplianceEvaluation] = {}
            for row in result.scalars():
                latest.setdefault(row.endpoint_id, row)

        issues: Counter = Counter()
        for row in latest.values():
            key = f"{row.detected_version or 'Unknown'} {row.detected_feature_update or 'Unknown'}"
            bucket = overview.version_breakdown.setdefault(
                key, {"total": 0, "compliant": 0, "non_compliant": 0}
            )
            bucket["total"] += 1
            overview.evaluated += 1
            if row.is_compliant:
                bucket["compliant"] += 1
                overview.compliant += 1
            else:
                bucket["non_compliant"] += 1
            issues.update(row.failure_reasons or [])

        overview.common_issues = [
            {"reason": reason, "count": count} for reason, count in issues.most_common(top_issues)
        ]
        return overview


async def ensure_default_policies(db: AsyncSession, tenant_ids: Optional[Sequence[str]] = None) -> int:
    """Give every tenant without a policy the default one. Caller commits."""
    stmt = select(Tenant.id).where(~Tenant.policies.any())
    if tenant_ids:
        stmt = stmt.where(Tenant.id.in_(list(tenant_ids)))
    result = await db.execute(stmt)
    created = 0
    for tenant_id in result.scalars().all():
        db.add(
            WindowsCompliancePolicy(
                tenant_id=tenant_id,
                name=DEFAULT_POLICY_NAME,
                description="Standard Windows compliance: supported versions with current feature updates",
                require_supported=True,
                require_latest_build=False,
                allowed_versions=["11", "10"],
                blocked_versions=[],
                minimum_versions={"11": "23H2", "10": "22H2"},
                allowed_editions=["Enterprise", "Pro", "Education"],
                blocked_editions=[],
                is_active=True,
                priority=100,
            )
        )
        created += 1
    await db.flush()
    if created:
        logger.info("Created default Windows compliance policy for %d tenants", created)
    return created
