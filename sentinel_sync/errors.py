"""Exception taxonomy for the sync engine.

Per-record errors (IdentityUnresolvedError, ParseError) are counted and
skipped by orchestrators. Everything else aborts the current run and is a
candidate for the run-level retry wrapper, unless ``retryable`` says no.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all sync engine errors."""

    retryable: bool = False


class TransientNetworkError(SyncError):
    """Connection failure or timeout talking to the upstream API."""

    retryable = True


class UpstreamAPIError(SyncError):
    """Upstream returned a non-2xx response."""

    def __init__(self, status_code: int, body: str = "", message: str | None = None):
        self.status_code = status_code
        self.body = body
        self.message = message or f"HTTP {status_code}"
        super().__init__(f"SentinelOne API error {status_code}: {self.message}")

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.status_code == 429 or self.status_code >= 500


class IdentityUnresolvedError(SyncError):
    """A record's site has no tenant mapping."""

    def __init__(self, site_id: str | None, detail: str = ""):
        self.site_id = site_id
        super().__init__(detail or f"No tenant mapped for site {site_id!r}")


class ParseError(SyncError):
    """A single record could not be parsed or normalized."""


class ConfigurationError(SyncError):
    """Missing credentials, mappings or policy. Fatal before any fetch."""


class PageLimitExceededError(SyncError):
    """The pagination loop ran past its safety ceiling."""

    retryable = True

    def __init__(self, pages: int, ceiling: int):
        self.pages = pages
        self.ceiling = ceiling
        super().__init__(
            f"Pagination exceeded safety ceiling of {ceiling} pages "
            f"(fetched {pages}); upstream cursor is not terminating"
        )


class LedgerError(SyncError):
    """Invalid job ledger transition (missing job or already terminal)."""


class ReferenceFeedError(SyncError):
    """A reference data feed (endoflife.date) could not be fetched or decoded."""

    retryable = True
