"""Typed SentinelOne payloads, validated at the client boundary.

Upstream JSON is camelCase and loosely typed (ids arrive as strings or
numbers, flags may be null). Each model accepts the upstream aliases and
normalizes to the shape the orchestrators rely on. Records that fail
validation are reported as ``RejectedRecord`` instead of raising.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, Optional, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from sentinel_sync.db.models import VulnerabilitySeverity


class UpstreamModel(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        coerce_numbers_to_str=True,
        frozen=True,
    )


class Site(UpstreamModel):
    id: str = Field(..., min_length=1)
    name: str = ""
    account_name: Optional[str] = Field(default=None, alias="accountName")
    site_type: Optional[str] = Field(default=None, alias="siteType")
    state: Optional[str] = None

    @field_validator("name", mode="before")
    @classmethod
    def _name_default(cls, v: Any) -> Any:
        return "" if v is None else v


class Agent(UpstreamModel):
    id: str = Field(..., min_length=1)
    computer_name: str = Field(..., alias="computerName", min_length=1)
    site_id: Optional[str] = Field(default=None, alias="siteId")
    os_name: Optional[str] = Field(default=None, alias="osName")
    os_revision: Optional[str] = Field(default=None, alias="osRevision")
    is_active: bool = Field(default=False, alias="isActive")
    is_up_to_date: bool = Field(default=False, alias="isUpToDate")
    infected: bool = False
    active_threats: int = Field(default=0, ge=0, alias="activeThreats")
    last_active_date: Optional[datetime] = Field(default=None, alias="lastActiveDate")
    external_ip: Optional[str] = Field(default=None, alias="externalIp")
    last_ip_to_mgmt: Optional[str] = Field(default=None, alias="lastIpToMgmt")

    @field_validator("computer_name", mode="before")
    @classmethod
    def _strip_hostname(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    @field_validator("is_active", "is_up_to_date", "infected", mode="before")
    @classmethod
    def _null_flag(cls, v: Any) -> Any:
        return False if v is None else v

    @field_validator("active_threats", mode="before")
    @classmethod
    def _null_threats(cls, v: Any) -> Any:
        return 0 if v is None else v

    @property
    def ip_address(self) -> Optional[str]:
        return self.external_ip or self.last_ip_to_mgmt


_SEVERITY_ALIASES = {
    "CRITICAL": VulnerabilitySeverity.CRITICAL,
    "HIGH": VulnerabilitySeverity.HIGH,
    "MEDIUM": VulnerabilitySeverity.MEDIUM,
    "MODERATE": VulnerabilitySeverity.MEDIUM,
    "LOW": VulnerabilitySeverity.LOW,
}


class RiskRecord(UpstreamModel):
    """One (CVE, endpoint) row from application-management/risks."""

    cve_id: str = Field(..., alias="cveId", min_length=1)
    severity: VulnerabilitySeverity = VulnerabilitySeverity.INFO
    base_score: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices("nvdBaseScore", "baseScore", "riskScore", "base_score"),
    )
    application_name: Optional[str] = Field(default=None, alias="applicationName")
    application_vendor: Optional[str] = Field(default=None, alias="applicationVendor")
    application_version: Optional[str] = Field(default=None, alias="applicationVersion")
    endpoint_id: Optional[str] = Field(default=None, alias="endpointId")
    endpoint_name: Optional[str] = Field(default=None, alias="endpointName")
    site_id: Optional[str] = Field(default=None, alias="siteId")
    description: Optional[str] = None

    @field_validator("cve_id", mode="before")
    @classmethod
    def _normalize_cve(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize_severity(cls, v: Any) -> VulnerabilitySeverity:
        if isinstance(v, VulnerabilitySeverity):
            return v
        return _SEVERITY_ALIASES.get(str(v or "").strip().upper(), VulnerabilitySeverity.INFO)

    @field_validator("endpoint_name", mode="before")
    @classmethod
    def _strip_endpoint_name(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    @property
    def title(self) -> str:
        if self.application_name:
            return f"{self.cve_id} in {self.application_name}"
        return self.cve_id


# ── Pagination ────────────────────────────────────────────────────────

T = TypeVar("T", bound=UpstreamModel)


@dataclass
class RejectedRecord:
    record_id: Optional[str]
    reason: str


@dataclass
class Page(Generic[T]):
    items: list[T] = field(default_factory=list)
    next_cursor: Optional[str] = None
    total_items: Optional[int] = None
    rejected: list[RejectedRecord] = field(default_factory=list)

    @property
    def has_more(self) -> bool:
        return bool(self.next_cursor)


def parse_records(model: type[T], raw: list[Any]) -> tuple[list[T], list[RejectedRecord]]:
    """Validate raw dicts into *model*; invalid ones become RejectedRecord."""
    items: list[T] = []
    rejected: list[RejectedRecord] = []
    for entry in raw or []:
        if not isinstance(entry, dict):
            rejected.append(RejectedRecord(record_id=None, reason=f"not an object: {type(entry).__name__}"))
            continue
        try:
            items.append(model.model_validate(entry))
        except ValidationError as e:
            first = e.errors()[0]
            loc = ".".join(str(p) for p in first.get("loc", ()))
            rejected.append(
                RejectedRecord(
                    record_id=str(entry.get("id")) if entry.get("id") is not None else None,
                    reason=f"{loc}: {first.get('msg', 'invalid')}",
                )
            )
    return items, rejected
