"""Command line entry point for operators and schedulers.

Every command builds its own engine-backed runtime, runs one coroutine and
disposes of the engine afterwards. SIGINT/SIGTERM cancel the running task,
so an interrupted sync leaves its ledger row FAILED instead of RUNNING.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
from datetime import timedelta
from typing import Any, Awaitable, Callable

from sentinel_sync.config import settings
from sentinel_sync.db import async_session_factory, dispose_db, init_db
from sentinel_sync.errors import ConfigurationError, SyncError
from sentinel_sync.services.runtime import SyncRuntime
from sentinel_sync.services.windows_compliance import ensure_default_policies
from sentinel_sync.services.windows_versions import seed_registry

logger = logging.getLogger("sentinel_sync.cli")

Command = Callable[[SyncRuntime, argparse.Namespace], Awaitable[Any]]


# ── Commands ──────────────────────────────────────────────────────────


async def _sync_all(runtime: SyncRuntime, args: argparse.Namespace) -> dict:
    return await runtime.run_full(args.tenant, max_attempts=args.max_attempts)


async def _sync_agents(runtime: SyncRuntime, args: argparse.Namespace) -> dict:
    return (await runtime.run_agents(args.tenant)).to_dict()


async def _sync_cves(runtime: SyncRuntime, args: argparse.Namespace) -> dict:
    return (await runtime.run_cves(args.tenant, max_attempts=args.max_attempts)).to_dict()


async def _diagnose_sites(runtime: SyncRuntime, args: argparse.Namespace) -> dict:
    return (await runtime.diagnose_sites()).to_dict()


async def _create_missing_tenants(runtime: SyncRuntime, args: argparse.Namespace) -> dict:
    if not args.force:
        logger.info("Dry run: pass --force to create tenants")
    return (await runtime.sync_tenants(dry_run=not args.force)).to_dict()


async def _evaluate_windows(runtime: SyncRuntime, args: argparse.Namespace) -> dict:
    summary = await runtime.evaluate_windows(args.tenant, endpoint_ids=args.endpoint or None)
    return summary.to_dict()


async def _seed_windows_registry(runtime: SyncRuntime, args: argparse.Namespace) -> dict:
    async with runtime.session_factory() as db:
        versions = await seed_registry(db)
        policies = await ensure_default_policies(db)
        await db.commit()
    return {"windows_versions": versions, "default_policies_created": policies}


async def _sync_windows_registry(runtime: SyncRuntime, args: argparse.Namespace) -> dict:
    return await runtime.refresh_windows_registry()


async def _reconcile_stale_jobs(runtime: SyncRuntime, args: argparse.Namespace) -> dict:
    reconciled = await runtime.ledger.reconcile_stale(timedelta(minutes=args.minutes))
    return {"reconciled": reconciled}


async def _init_db(runtime: SyncRuntime, args: argparse.Namespace) -> dict:
    await init_db()
    return {"database": settings.DATABASE_URL.split("://", 1)[0], "initialized": True}


COMMANDS: dict[str, Command] = {
    "sync-all": _sync_all,
    "sync-agents": _sync_agents,
    "sync-cves": _sync_cves,
    "diagnose-sites": _diagnose_sites,
    "create-missing-tenants": _create_missing_tenants,
    "evaluate-windows": _evaluate_windows,
    "seed-windows-registry": _seed_windows_registry,
    "sync-windows-registry": _sync_windows_registry,
    "reconcile-stale-jobs": _reconcile_stale_jobs,
    "init-db": _init_db,
}


# ── Runner ────────────────────────────────────────────────────────────


async def _run(command: Command, args: argparse.Namespace) -> Any:
    runtime = SyncRuntime(async_session_factory)
    loop = asyncio.get_running_loop()
    task = asyncio.create_task(command(runtime, args))
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, task.cancel)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            pass
    try:
        return await task
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        await dispose_db()


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sentinel-sync",
        description="Sync SentinelOne agents and CVEs into the local compliance store",
    )
    parser.add_argument("--log-level", default=settings.LOG_LEVEL, help="Logging level (default from SS_LOG_LEVEL)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("sync-all", help="Sync agents, then CVEs")
    p.add_argument("--tenant", default=None, help="Tenant id; omit for every mapped tenant")
    p.add_argument("--max-attempts", type=int, default=None, help="CVE sync attempts")

    p = sub.add_parser("sync-agents", help="Sync agents into endpoints")
    p.add_argument("--tenant", default=None, help="Tenant id; omit for every mapped tenant")

    p = sub.add_parser("sync-cves", help="Sync application CVE records (with retry)")
    p.add_argument("--tenant", default=None, help="Tenant id; omit for every mapped tenant")
    p.add_argument("--max-attempts", type=int, default=None, help="Attempts before giving up")

    sub.add_parser("diagnose-sites", help="Report sites with no tenant")

    p = sub.add_parser("create-missing-tenants", help="Create tenants for unmapped sites")
    p.add_argument("--force", action="store_true", help="Write changes (default is a dry run)")

    p = sub.add_parser("evaluate-windows", help="Evaluate Windows compliance for a tenant")
    p.add_argument("--tenant", required=True, help="Tenant id")
    p.add_argument("--endpoint", action="append", default=None, help="Endpoint id. Repeatable.")

    sub.add_parser("seed-windows-registry", help="Load reference builds and default policies")
    sub.add_parser("sync-windows-registry", help="Refresh Windows releases from endoflife.date")

    p = sub.add_parser("reconcile-stale-jobs", help="Fail RUNNING jobs abandoned by a dead process")
    p.add_argument("--minutes", type=int, default=settings.STALE_JOB_MINUTES, help="Age threshold")

    sub.add_parser("init-db", help="Create missing tables")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        result = asyncio.run(_run(COMMANDS[args.command], args))
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        return 2
    except asyncio.CancelledError:
        logger.warning("%s interrupted", args.command)
        return 130
    except SyncError as e:
        logger.error("%s failed: %s", args.command, e)
        return 1

    print(json.dumps(result, indent=2, sort_keys=True, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
