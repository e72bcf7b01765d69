"""initial schema: tenants, endpoints, sync jobs, CVEs, Windows compliance

Revision ID: 5e1d0c7a9b42
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "5e1d0c7a9b42"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("slug", sa.String(100), nullable=False),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("sentinelone_site_id", sa.String(64), nullable=True, unique=True),
        *_timestamps(),
    )
    op.create_index("ix_tenants_slug", "tenants", ["slug"], unique=True)

    op.create_table(
        "endpoints",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("tenant_id", sa.String(32), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("hostname", sa.String(256), nullable=False),
        sa.Column("sentinelone_agent_id", sa.String(64), nullable=True),
        sa.Column("sentinelone_site_id", sa.String(64), nullable=True),
        sa.Column("os_name", sa.String(256), nullable=True),
        sa.Column("os_revision", sa.String(128), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("is_agent_active", sa.Boolean(), nullable=True),
        sa.Column("is_agent_up_to_date", sa.Boolean(), nullable=True),
        sa.Column("is_infected", sa.Boolean(), nullable=True),
        sa.Column("active_threats", sa.Integer(), nullable=True),
        sa.Column("is_compliant", sa.Boolean(), nullable=True),
        sa.Column("compliance_score", sa.Integer(), nullable=True),
        sa.Column("critical_vulns", sa.Integer(), nullable=True),
        sa.Column("high_vulns", sa.Integer(), nullable=True),
        sa.Column("medium_vulns", sa.Integer(), nullable=True),
        sa.Column("low_vulns", sa.Integer(), nullable=True),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=True),
        sa.Column("windows_compliant", sa.Boolean(), nullable=True),
        sa.Column("windows_compliance_score", sa.Integer(), nullable=True),
        sa.Column("last_windows_check", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "hostname", name="uq_endpoints_tenant_hostname"),
    )
    op.create_index("ix_endpoints_tenant", "endpoints", ["tenant_id"])
    op.create_index("ix_endpoints_sentinelone_agent_id", "endpoints", ["sentinelone_agent_id"])

    op.create_table(
        "sync_jobs",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("tenant_id", sa.String(32), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=True),
        sa.Column("source", sa.String(32), nullable=False),
        sa.Column("job_type", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("records_processed", sa.Integer(), nullable=True),
        sa.Column("records_created", sa.Integer(), nullable=True),
        sa.Column("records_updated", sa.Integer(), nullable=True),
        sa.Column("records_failed", sa.Integer(), nullable=True),
        sa.Column("records_skipped", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
    )
    op.create_index("ix_sync_jobs_tenant_source_started", "sync_jobs", ["tenant_id", "source", "started_at"])
    op.create_index("ix_sync_jobs_status", "sync_jobs", ["status"])

    op.create_table(
        "vulnerabilities",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("cve_id", sa.String(64), nullable=False),
        sa.Column("title", sa.String(512), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("severity", sa.String(16), nullable=False),
        sa.Column("cvss_score", sa.Float(), nullable=True),
        sa.Column("vendor", sa.String(256), nullable=True),
        sa.Column("product", sa.String(256), nullable=True),
        sa.Column("version", sa.String(128), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_vulnerabilities_cve_id", "vulnerabilities", ["cve_id"], unique=True)

    op.create_table(
        "endpoint_vulnerabilities",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("endpoint_id", sa.String(32), sa.ForeignKey("endpoints.id", ondelete="CASCADE"), nullable=False),
        sa.Column("vulnerability_id", sa.String(32), sa.ForeignKey("vulnerabilities.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("detected_by", sa.String(32), nullable=False),
        sa.Column("detected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("endpoint_id", "vulnerability_id", name="uq_endpoint_vulnerability"),
    )
    op.create_index("ix_endpoint_vulnerabilities_status", "endpoint_vulnerabilities", ["endpoint_id", "status"])

    op.create_table(
        "windows_versions",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("cycle", sa.String(64), nullable=False, unique=True),
        sa.Column("major_version", sa.String(16), nullable=False),
        sa.Column("feature_update", sa.String(16), nullable=False),
        sa.Column("edition", sa.String(64), nullable=True),
        sa.Column("build_number", sa.String(32), nullable=False),
        sa.Column("release_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("eol_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_supported", sa.Boolean(), nullable=True),
        sa.Column("is_lts", sa.Boolean(), nullable=True),
    )
    op.create_index("ix_windows_versions_major_feature", "windows_versions", ["major_version", "feature_update"])
    op.create_index("ix_windows_versions_build", "windows_versions", ["build_number"])

    op.create_table(
        "windows_compliance_policies",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("tenant_id", sa.String(32), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("require_supported", sa.Boolean(), nullable=True),
        sa.Column("require_latest_build", sa.Boolean(), nullable=True),
        sa.Column("allowed_versions", sa.JSON(), nullable=True),
        sa.Column("blocked_versions", sa.JSON(), nullable=True),
        sa.Column("minimum_versions", sa.JSON(), nullable=True),
        sa.Column("allowed_editions", sa.JSON(), nullable=True),
        sa.Column("blocked_editions", sa.JSON(), nullable=True),
        sa.Column("max_build_age_days", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_windows_policies_tenant_active",
        "windows_compliance_policies",
        ["tenant_id", "is_active", "priority"],
    )

    op.create_table(
        "windows_compliance_evaluations",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("endpoint_id", sa.String(32), sa.ForeignKey("endpoints.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "policy_id",
            sa.String(32),
            sa.ForeignKey("windows_compliance_policies.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("evaluated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("detected_version", sa.String(16), nullable=False),
        sa.Column("detected_feature_update", sa.String(16), nullable=True),
        sa.Column("detected_edition", sa.String(64), nullable=False),
        sa.Column("detected_build", sa.String(32), nullable=False),
        sa.Column("os_name", sa.String(256), nullable=True),
        sa.Column("os_revision", sa.String(128), nullable=True),
        sa.Column("is_compliant", sa.Boolean(), nullable=False),
        sa.Column("compliance_score", sa.Integer(), nullable=False),
        sa.Column("failure_reasons", sa.JSON(), nullable=True),
        sa.Column("required_actions", sa.JSON(), nullable=True),
        sa.Column("is_supported_version", sa.Boolean(), nullable=True),
        sa.Column("is_latest_build", sa.Boolean(), nullable=True),
        sa.Column("is_allowed_version", sa.Boolean(), nullable=True),
        sa.Column("is_allowed_edition", sa.Boolean(), nullable=True),
        sa.Column("build_age_days", sa.Integer(), nullable=True),
        sa.Column("recommended_build", sa.String(32), nullable=True),
        sa.Column("policy_snapshot", sa.JSON(), nullable=True),
    )
    op.create_index(
        "ix_windows_evaluations_endpoint_time",
        "windows_compliance_evaluations",
        ["endpoint_id", "evaluated_at"],
    )


def downgrade() -> None:
    op.drop_table("windows_compliance_evaluations")
    op.drop_table("windows_compliance_policies")
    op.drop_table("windows_versions")
    op.drop_table("endpoint_vulnerabilities")
    op.drop_table("vulnerabilities")
    op.drop_table("sync_jobs")
    op.drop_table("endpoints")
    op.drop_table("tenants")
