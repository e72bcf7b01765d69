"""Windows version registry and OS string parsing.

SentinelOne reports Windows as a product name (``Windows 11 Enterprise``)
plus a revision (``10.0.22631.4317``, ``22631.4317`` or just ``22631``).
``parse_windows_os`` turns that pair into a ``WindowsBuildInfo``, using
the registry to name the feature update and a small built-in table when
the registry has no match.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from sentinel_sync.core.endoflife import WINDOWS_PRODUCT, WINDOWS_SERVER_PRODUCT, EndOfLifeClient
from sentinel_sync.db.models import WindowsVersion, as_utc
from sentinel_sync.db.repositories.base import apply_changes
from sentinel_sync.errors import ParseError

logger = logging.getLogger(__name__)

FALLBACK_FEATURE_UPDATES = {
    "10.0.26100": "24H2",
    "10.0.22631": "23H2",
    "10.0.22621": "22H2",
    "10.0.19045": "22H2",
    "10.0.19044": "21H2",
    "10.0.19043": "21H1",
    "10.0.19042": "20H2",
}

_FULL_BUILD = re.compile(r"(\d+\.\d+\.\d+)\.?(\d+)?")
_SHORT_BUILD = re.compile(r"(\d+)\.(\d+)")
_BARE_BUILD = re.compile(r"^\s*(\d{4,5})\s*$")


# ── Parsing ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class WindowsBuildInfo:
    major_version: str          # "11", "10", "Server2022"
    feature_update: Optional[str]  # "23H2"; None when no registry/fallback match
    edition: str                # Enterprise | Pro | Education | Home | Server | Unknown
    major_build: str            # "10.0.22631"
    minor_build: str            # "4317"

    @property
    def build(self) -> str:
        return f"{self.major_build}.{self.minor_build}"


def extract_major_version(os_name: str) -> Optional[str]:
    if re.search(r"windows\s*11", os_name, re.I):
        return "11"
    if re.search(r"windows\s*10", os_name, re.I):
        return "10"
    server = re.search(r"server\s*(\d{4})", os_name, re.I)
    if server:
        return f"Server{server.group(1)}"
    return None


def extract_edition(os_name: str) -> str:
    if re.search(r"enterprise", os_name, re.I):
        return "Enterprise"
    if re.search(r"professional|pro\b", os_name, re.I):
        return "Pro"
    if re.search(r"education", os_name, re.I):
        return "Education"
    if re.search(r"home", os_name, re.I):
        return "Home"
    if re.search(r"server", os_name, re.I):
        return "Server"
    return "Unknown"


def parse_build_number(os_revision: str) -> Optional[tuple[str, str]]:
    """Split a revision into ``(major_build, minor_build)``."""
    if not os_revision:
        return None
    full = _FULL_BUILD.search(os_revision)
    if full:
        return full.group(1), full.group(2) or "0"
    short = _SHORT_BUILD.search(os_revision)
    if short:
        return f"10.0.{short.group(1)}", short.group(2)
    bare = _BARE_BUILD.match(os_revision)
    if bare:
        return f"10.0.{bare.group(1)}", "0"
    return None


def build_key(build: str) -> tuple[int, ...]:
    return tuple(int(part) for part in re.findall(r"\d+", build or ""))


def parse_windows_os(
    os_name: Optional[str],
    os_revision: Optional[str],
    registry: Optional["WindowsVersionRegistry"] = None,
) -> Optional[WindowsBuildInfo]:
    """Parse an OS name/revision pair, or None when it is not a readable Windows build."""
    if not os_name or "windows" not in os_name.lower():
        return None
    major = extract_major_version(os_name)
    if not major:
        return None
    parsed = parse_build_number(os_revision or "")
    if not parsed:
        return None
    major_build, minor_build = parsed
    if registry is not None:
        feature = registry.feature_update_for(major, major_build)
    else:
        feature = FALLBACK_FEATURE_UPDATES.get(major_build)
    return WindowsBuildInfo(
        major_version=major,
        feature_update=feature,
        edition=extract_edition(os_name),
        major_build=major_build,
        minor_build=minor_build,
    )


# ── Registry ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RegistryEntry:
    cycle: str
    major_version: str
    feature_update: str
    build_number: str
    release_date: datetime
    eol_date: Optional[datetime] = None
    edition: Optional[str] = None
    is_supported: bool = True
    is_lts: bool = False

    @classmethod
    def from_row(cls, row: WindowsVersion) -> "RegistryEntry":
        return cls(
            cycle=row.cycle,
            major_version=row.major_version,
            feature_update=row.feature_update,
            build_number=row.build_number,
            release_date=as_utc(row.release_date),
            eol_date=as_utc(row.eol_date),
            edition=row.edition,
            is_supported=row.is_supported,
            is_lts=row.is_lts,
        )

    def covers_edition(self, edition: Optional[str]) -> bool:
        if not self.edition or self.edition.lower() == "all" or not edition:
            return True
        return edition.lower() in self.edition.lower()

    def supported_at(self, at: datetime) -> bool:
        return self.is_supported and (self.eol_date is None or as_utc(at) < self.eol_date)


class WindowsVersionRegistry:
    """In-memory snapshot of the ``windows_versions`` table."""

    def __init__(self, entries: Iterable[RegistryEntry]):
        self.entries = list(entries)

    @classmethod
    async def load(cls, db: AsyncSession) -> "WindowsVersionRegistry":
        result = await db.execute(select(WindowsVersion))
        return cls(RegistryEntry.from_row(row) for row in result.scalars())

    def _for_edition(self, entries: list[RegistryEntry], edition: Optional[str]) -> list[RegistryEntry]:
        matching = [e for e in entries if e.covers_edition(edition)]
        return matching or entries

    def feature_update_for(self, major_version: str, major_build: str) -> Optional[str]:
        for entry in self.entries:
            if entry.major_version == major_version and build_key(entry.build_number)[:3] == build_key(major_build)[:3]:
                return entry.feature_update
        return FALLBACK_FEATURE_UPDATES.get(major_build)

    def entries_for(
        self, major_version: str, feature_update: Optional[str], edition: Optional[str] = None
    ) -> list[RegistryEntry]:
        if not feature_update:
            return []
        entries = [
            e for e in self.entries
            if e.major_version == major_version and e.feature_update == feature_update
        ]
        return self._for_edition(entries, edition)

    def latest_entry(
        self, major_version: str, feature_update: Optional[str], edition: Optional[str] = None
    ) -> Optional[RegistryEntry]:
        entries = self.entries_for(major_version, feature_update, edition)
        if not entries:
            return None
        return max(entries, key=lambda e: (e.release_date, build_key(e.build_number)))

    def entry_for_build(
        self, info: WindowsBuildInfo
    ) -> Optional[RegistryEntry]:
        """Registry entry whose build is exactly the detected build (full or major)."""
        candidates = [
            e for e in self.entries
            if e.major_version == info.major_version
            and e.build_number in (info.build, info.major_build)
        ]
        if not candidates:
            return None
        candidates = self._for_edition(candidates, info.edition)
        # Full-revision entries are more specific than major-build entries
        return max(candidates, key=lambda e: (e.build_number == info.build, e.release_date))

    def is_supported(
        self,
        major_version: str,
        feature_update: Optional[str],
        at: datetime,
        edition: Optional[str] = None,
    ) -> bool:
        return any(e.supported_at(at) for e in self.entries_for(major_version, feature_update, edition))


# ── Seed data ─────────────────────────────────────────────────────────


def _d(value: str) -> datetime:
    return datetime.fromisoformat(value).replace(tzinfo=timezone.utc)


DEFAULT_WINDOWS_VERSIONS: list[dict] = [
    dict(cycle="11-24h2-e", major_version="11", feature_update="24H2", edition="Enterprise",
         build_number="10.0.26100", release_date=_d("2024-10-01"), eol_date=_d("2027-10-12"),
         is_supported=True, is_lts=False),
    dict(cycle="11-24h2-w", major_version="11", feature_update="24H2", edition="Home/Pro",
         build_number="10.0.26100", release_date=_d("2024-10-01"), eol_date=_d("2026-10-13"),
         is_supported=True, is_lts=False),
    dict(cycle="11-23h2-e", major_version="11", feature_update="23H2", edition="Enterprise",
         build_number="10.0.22631", release_date=_d("2023-10-31"), eol_date=_d("2026-11-10"),
         is_supported=True, is_lts=False),
    dict(cycle="11-23h2-w", major_version="11", feature_update="23H2", edition="Home/Pro",
         build_number="10.0.22631", release_date=_d("2023-10-31"), eol_date=_d("2025-11-11"),
         is_supported=True, is_lts=False),
    dict(cycle="11-22h2-e", major_version="11", feature_update="22H2", edition="Enterprise",
         build_number="10.0.22621", release_date=_d("2022-09-20"), eol_date=_d("2025-10-14"),
         is_supported=True, is_lts=False),
    dict(cycle="11-22h2-w", major_version="11", feature_update="22H2", edition="Home/Pro",
         build_number="10.0.22621", release_date=_d("2022-09-20"), eol_date=_d("2024-10-08"),
         is_supported=False, is_lts=False),
    dict(cycle="10-22h2", major_version="10", feature_update="22H2", edition="All",
         build_number="10.0.19045", release_date=_d("2022-10-18"), eol_date=_d("2025-10-14"),
         is_supported=True, is_lts=False),
    dict(cycle="10-21h2-e-lts", major_version="10", feature_update="21H2", edition="Enterprise",
         build_number="10.0.19044", release_date=_d("2021-11-16"), eol_date=_d("2027-01-12"),
         is_supported=True, is_lts=True),
    dict(cycle="server2022-datacenter", major_version="Server2022", feature_update="2022",
         edition="Datacenter", build_number="10.0.20348", release_date=_d("2021-08-18"),
         eol_date=_d("2031-10-14"), is_supported=True, is_lts=True),
    dict(cycle="server2019-datacenter", major_version="Server2019", feature_update="2019",
         edition="Datacenter", build_number="10.0.17763", release_date=_d("2018-11-13"),
         eol_date=_d("2029-01-09"), is_supported=True, is_lts=False),
]


async def seed_registry(db: AsyncSession, versions: Iterable[dict] = DEFAULT_WINDOWS_VERSIONS) -> dict:
    """Insert or refresh registry rows keyed by ``cycle``. Caller commits."""
    created = updated = 0
    for entry in versions:
        values = dict(entry)
        cycle = values.pop("cycle")
        result = await db.execute(select(WindowsVersion).where(WindowsVersion.cycle == cycle))
        row = result.scalar_one_or_none()
        if row is None:
            db.add(WindowsVersion(cycle=cycle, **values))
            created += 1
        elif apply_changes(row, values):
            updated += 1
    await db.flush()
    logger.info("Windows version registry seeded: %d created, %d updated", created, updated)
    return {"created": created, "updated": updated}


# ── endoflife.date refresh ────────────────────────────────────────────

_CLIENT_CYCLE = re.compile(r"^(\d+)-(\d{2}h[12]|\d{4})(?:-([a-z]+))?", re.I)
_SERVER_CYCLE = re.compile(r"^(\d{4})(?:-([a-z]+))?$", re.I)
_EDITION_CODES = {"e": "Enterprise", "w": "Home/Pro", "iot": "IoT Enterprise"}


def _feed_date(value: Any) -> Optional[datetime]:
    # eol/support are dates or booleans in the feed
    if not isinstance(value, str) or not value:
        return None
    return _d(value)


def registry_values_from_cycle(entry: dict, product: str, now: datetime) -> dict:
    """Map one endoflife.date cycle onto ``windows_versions`` columns.

    Client cycles look like ``11-24h2-e`` (major, feature update, edition
    code); server cycles are the release year, optionally with an edition.
    Server cycles are stored as ``server<cycle>`` so they never collide with
    client cycle names. Raises ParseError for cycles that fit neither shape.
    """
    cycle = str(entry.get("cycle") or "").strip().lower()
    if product == WINDOWS_SERVER_PRODUCT:
        match = _SERVER_CYCLE.match(cycle)
        if not match:
            raise ParseError(f"unrecognised Windows Server cycle {cycle!r}")
        year, edition_name = match.groups()
        major, feature = f"Server{year}", year
        edition = edition_name.capitalize() if edition_name else "All"
        stored_cycle = f"server{cycle}"
    else:
        match = _CLIENT_CYCLE.match(cycle)
        if not match:
            raise ParseError(f"unrecognised Windows cycle {cycle!r}")
        major, feature, code = match.groups()
        feature = feature.upper()
        edition = _EDITION_CODES.get(code or "", "All")
        stored_cycle = cycle

    parsed = parse_build_number(str(entry.get("latest") or ""))
    if parsed is None:
        raise ParseError(f"cycle {cycle!r} has no readable build ({entry.get('latest')!r})")
    try:
        release_date = _feed_date(entry.get("releaseDate"))
        eol_date = _feed_date(entry.get("eol"))
    except ValueError as e:
        raise ParseError(f"cycle {cycle!r}: {e}") from e
    if release_date is None:
        raise ParseError(f"cycle {cycle!r} has no release date")

    return dict(
        cycle=stored_cycle,
        major_version=major,
        feature_update=feature,
        edition=edition,
        build_number=parsed[0],
        release_date=release_date,
        eol_date=eol_date,
        is_supported=entry.get("eol") is not True and (eol_date is None or now < eol_date),
        is_lts=bool(entry.get("lts")),
    )


async def refresh_registry(
    db: AsyncSession, client: EndOfLifeClient, now: Optional[datetime] = None
) -> dict:
    """Refresh the registry from the client and server feeds. Caller commits.

    Both feeds are fetched before anything is written, so a feed failure
    leaves the registry untouched. Unreadable cycles are skipped and listed
    in ``errors``.
    """
    now = now or datetime.now(timezone.utc)
    versions: list[dict] = []
    errors: list[str] = []
    for product in (WINDOWS_PRODUCT, WINDOWS_SERVER_PRODUCT):
        for entry in await client.product_cycles(product):
            try:
                versions.append(registry_values_from_cycle(entry, product, now))
            except ParseError as e:
                errors.append(str(e))
                logger.warning("Skipping %s cycle: %s", product, e)

    counts = await seed_registry(db, versions)
    logger.info(
        "Windows registry refreshed from endoflife.date: %d cycles, %d skipped",
        len(versions), len(errors),
    )
    return {"synced": len(versions), **counts, "skipped": len(errors), "errors": errors}
