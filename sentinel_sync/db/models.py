"""SQLAlchemy ORM models for the sync engine.

Tenants own endpoints, Windows compliance policies and sync jobs. Endpoints
own their vulnerability links and their Windows evaluation history. The
Windows version registry is reference data shared by all tenants.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .engine import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC (SQLite hands back naive values)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ── Enums ──────────────────────────────────────────────────────────────


class SyncStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class SyncSource(str, Enum):
    SENTINELONE = "SENTINELONE"


class SyncJobType(str, Enum):
    AGENTS = "AGENTS"
    CVES = "CVES"


class VulnerabilitySeverity(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    INFO = "INFO"


class VulnerabilityStatus(str, Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    FALSE_POSITIVE = "FALSE_POSITIVE"
    ACCEPTED_RISK = "ACCEPTED_RISK"


class VulnerabilitySource(str, Enum):
    SENTINELONE = "SENTINELONE"
    MANUAL = "MANUAL"


# ── Tenants ────────────────────────────────────────────────────────────


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    sentinelone_site_id: Mapped[Optional[str]] = mapped_column(
        String(64), unique=True, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    # relationships
    endpoints: Mapped[list["Endpoint"]] = relationship(
        back_populates="tenant", cascade="all, delete-orphan", passive_deletes=True
    )
    policies: Mapped[list["WindowsCompliancePolicy"]] = relationship(
        back_populates="tenant", cascade="all, delete-orphan", passive_deletes=True
    )
    sync_jobs: Mapped[list["SyncJob"]] = relationship(
        back_populates="tenant", cascade="all, delete-orphan", passive_deletes=True
    )


# ── Endpoints ──────────────────────────────────────────────────────────


class Endpoint(Base):
    __tablename__ = "endpoints"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    hostname: Mapped[str] = mapped_column(String(256), nullable=False)
    sentinelone_agent_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    sentinelone_site_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    os_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    os_revision: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    is_agent_active: Mapped[bool] = mapped_column(Boolean, default=False)
    is_agent_up_to_date: Mapped[bool] = mapped_column(Boolean, default=False)
    is_infected: Mapped[bool] = mapped_column(Boolean, default=False)
    active_threats: Mapped[int] = mapped_column(Integer, default=0)
    is_compliant: Mapped[bool] = mapped_column(Boolean, default=False)
    compliance_score: Mapped[int] = mapped_column(Integer, default=0)  # 0-100

    critical_vulns: Mapped[int] = mapped_column(Integer, default=0)
    high_vulns: Mapped[int] = mapped_column(Integer, default=0)
    medium_vulns: Mapped[int] = mapped_column(Integer, default=0)
    low_vulns: Mapped[int] = mapped_column(Integer, default=0)

    last_seen: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # denormalized current Windows compliance (history lives in evaluations)
    windows_compliant: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    windows_compliance_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    last_windows_check: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    # relationships
    tenant: Mapped["Tenant"] = relationship(back_populates="endpoints")
    vulnerabilities: Mapped[list["EndpointVulnerability"]] = relationship(
        back_populates="endpoint", cascade="all, delete-orphan", passive_deletes=True
    )
    windows_evaluations: Mapped[list["WindowsComplianceEvaluation"]] = relationship(
        back_populates="endpoint", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "hostname", name="uq_endpoints_tenant_hostname"),
        Index("ix_endpoints_tenant", "tenant_id"),
    )


# ── Sync jobs ──────────────────────────────────────────────────────────


class SyncJob(Base):
    """Audit row for one sync run. Immutable once COMPLETED or FAILED."""

    __tablename__ = "sync_jobs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    tenant_id: Mapped[Optional[str]] = mapped_column(
        String(32), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=True
    )  # NULL = fleet-wide run
    source: Mapped[str] = mapped_column(String(32), nullable=False, default=SyncSource.SENTINELONE.value)
    job_type: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=SyncStatus.RUNNING.value)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    records_processed: Mapped[int] = mapped_column(Integer, default=0)
    records_created: Mapped[int] = mapped_column(Integer, default=0)
    records_updated: Mapped[int] = mapped_column(Integer, default=0)
    records_failed: Mapped[int] = mapped_column(Integer, default=0)
    records_skipped: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    tenant: Mapped[Optional["Tenant"]] = relationship(back_populates="sync_jobs")

    __table_args__ = (
        Index("ix_sync_jobs_tenant_source_started", "tenant_id", "source", "started_at"),
        Index("ix_sync_jobs_status", "status"),
    )


# ── Vulnerabilities ────────────────────────────────────────────────────


class Vulnerability(Base):
    __tablename__ = "vulnerabilities"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    cve_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    severity: Mapped[str] = mapped_column(String(16), nullable=False, default=VulnerabilitySeverity.INFO.value)
    cvss_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    vendor: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    product: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    version: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    endpoints: Mapped[list["EndpointVulnerability"]] = relationship(
        back_populates="vulnerability", cascade="all, delete-orphan", passive_deletes=True
    )


class EndpointVulnerability(Base):
    __tablename__ = "endpoint_vulnerabilities"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    endpoint_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("endpoints.id", ondelete="CASCADE"), nullable=False
    )
    vulnerability_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("vulnerabilities.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=VulnerabilityStatus.OPEN.value)
    detected_by: Mapped[str] = mapped_column(
        String(32), nullable=False, default=VulnerabilitySource.SENTINELONE.value
    )
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    endpoint: Mapped["Endpoint"] = relationship(back_populates="vulnerabilities")
    vulnerability: Mapped["Vulnerability"] = relationship(back_populates="endpoints")

    __table_args__ = (
        UniqueConstraint("endpoint_id", "vulnerability_id", name="uq_endpoint_vulnerability"),
        Index("ix_endpoint_vulnerabilities_status", "endpoint_id", "status"),
    )


# ── Windows compliance ─────────────────────────────────────────────────


class WindowsVersion(Base):
    """Registry entry for a known Windows release (reference data)."""

    __tablename__ = "windows_versions"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    cycle: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    major_version: Mapped[str] = mapped_column(String(16), nullable=False)  # 11 | 10 | Server2022
    feature_update: Mapped[str] = mapped_column(String(16), nullable=False)  # 23H2, 2022
    edition: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    build_number: Mapped[str] = mapped_column(String(32), nullable=False)  # 10.0.22631
    release_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    eol_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    is_supported: Mapped[bool] = mapped_column(Boolean, default=True)
    is_lts: Mapped[bool] = mapped_column(Boolean, default=False)

    __table_args__ = (
        Index("ix_windows_versions_major_feature", "major_version", "feature_update"),
        Index("ix_windows_versions_build", "build_number"),
    )


class WindowsCompliancePolicy(Base):
    __tablename__ = "windows_compliance_policies"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    require_supported: Mapped[bool] = mapped_column(Boolean, default=True)
    require_latest_build: Mapped[bool] = mapped_column(Boolean, default=False)
    allowed_versions: Mapped[list] = mapped_column(JSON, default=list)
    blocked_versions: Mapped[list] = mapped_column(JSON, default=list)
    minimum_versions: Mapped[dict] = mapped_column(JSON, default=dict)  # {"11": "23H2"}
    allowed_editions: Mapped[list] = mapped_column(JSON, default=list)
    blocked_editions: Mapped[list] = mapped_column(JSON, default=list)
    max_build_age_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    priority: Mapped[int] = mapped_column(Integer, default=100)  # lower wins
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    tenant: Mapped["Tenant"] = relationship(back_populates="policies")

    __table_args__ = (
        Index("ix_windows_policies_tenant_active", "tenant_id", "is_active", "priority"),
    )


class WindowsComplianceEvaluation(Base):
    """Append-only evaluation snapshot. The newest row is the current status."""

    __tablename__ = "windows_compliance_evaluations"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    endpoint_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("endpoints.id", ondelete="CASCADE"), nullable=False
    )
    policy_id: Mapped[Optional[str]] = mapped_column(
        String(32), ForeignKey("windows_compliance_policies.id", ondelete="SET NULL"), nullable=True
    )
    evaluated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    detected_version: Mapped[str] = mapped_column(String(16), nullable=False)
    detected_feature_update: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    detected_edition: Mapped[str] = mapped_column(String(64), nullable=False)
    detected_build: Mapped[str] = mapped_column(String(32), nullable=False)
    os_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    os_revision: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    is_compliant: Mapped[bool] = mapped_column(Boolean, nullable=False)
    compliance_score: Mapped[int] = mapped_column(Integer, nullable=False)
    failure_reasons: Mapped[list] = mapped_column(JSON, default=list)
    required_actions: Mapped[list] = mapped_column(JSON, default=list)

    is_supported_version: Mapped[bool] = mapped_column(Boolean, default=False)
    is_latest_build: Mapped[bool] = mapped_column(Boolean, default=False)
    is_allowed_version: Mapped[bool] = mapped_column(Boolean, default=False)
    is_allowed_edition: Mapped[bool] = mapped_column(Boolean, default=False)
    build_age_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    recommended_build: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    policy_snapshot: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    endpoint: Mapped["Endpoint"] = relationship(back_populates="windows_evaluations")

    __table_args__ = (
        Index("ix_windows_evaluations_endpoint_time", "endpoint_id", "evaluated_at"),
    )
