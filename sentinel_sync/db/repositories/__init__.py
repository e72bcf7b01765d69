"""Repositories over the async session."""

from .base import UpsertOutcome, apply_changes
from .endpoints import EndpointRepository
from .tenants import TenantRepository
from .vulnerabilities import VulnerabilityRepository

__all__ = [
    "UpsertOutcome",
    "apply_changes",
    "EndpointRepository",
    "TenantRepository",
    "VulnerabilityRepository",
]
