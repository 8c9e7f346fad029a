"""CLI entry point: sync, scheduler, status, run, cancel."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

from scripts.school_sync.config import load_config
from scripts.school_sync.db import Database
from scripts.school_sync.logging_config import configure_logging
from scripts.school_sync.models import SyncOptions, SyncScope
from scripts.school_sync.orchestrator import build_orchestrator
from scripts.school_sync.refresh import RefreshPipeline
from scripts.school_sync.scope import ConfigRepository
from scripts.school_sync.tracker import RunTracker

logger = logging.getLogger("school_sync.cli")


def _csv(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _int_csv(value: Optional[str]) -> Optional[list[int]]:
    parts = _csv(value)
    return [int(p) for p in parts] if parts else None


def scope_from_args(args: argparse.Namespace) -> SyncScope:
    return SyncScope(
        node_ids=_csv(args.node_ids),
        include_descendants=args.include_descendants,
        all=args.all,
        config_ids_nex=_int_csv(args.nex_config_ids),
        config_ids_mb=_int_csv(args.mb_config_ids),
    )


def options_from_args(args: argparse.Namespace) -> SyncOptions:
    return SyncOptions(
        academic_year=args.academic_year,
        triggered_by="cli",
        endpoints_nex=_csv(args.endpoints_nex) or None,
        endpoints_mb=_csv(args.endpoints_mb) or None,
        run_refresh=args.refresh,
    )


def cmd_sync(args: argparse.Namespace) -> None:
    """Run one sync for the selected scope and print the result."""
    scope = scope_from_args(args)
    if not (scope.all or scope.node_ids or scope.config_ids_nex or scope.config_ids_mb):
        print("Nothing to sync: pass --all, --node-ids or config ids.", file=sys.stderr)
        sys.exit(2)

    config = load_config()
    db = Database(config.database)
    try:
        if args.dry_run:
            tenants = asyncio.run(ConfigRepository(db).resolve(scope))
            fmt = "{:<6}  {:>6}  {:<12}  {}"
            print(fmt.format("SOURCE", "CONFIG", "SCHOOL ID", "NAME"))
            print("-" * 60)
            for t in tenants:
                print(fmt.format(t.source, t.config_id, t.school_id or "-", t.school_name))
            return

        overrides = {}
        if args.refresh and not config.refresh.enabled:
            overrides["refresh"] = RefreshPipeline(db)
        orchestrator = build_orchestrator(config, db, **overrides)
        try:
            result = asyncio.run(orchestrator.run_and_refresh(scope, options_from_args(args)))
        finally:
            orchestrator.close()
        print(json.dumps(result.as_dict(), indent=2))
    finally:
        db.close()


def cmd_scheduler(args: argparse.Namespace) -> None:
    """Start the APScheduler-based scheduling loop."""
    from scripts.school_sync.scheduler import SyncScheduler

    config = load_config()
    if not config.scheduler.enabled:
        logger.info("Scheduler disabled (ENABLE_SCHEDULER=false)")
        return

    db = Database(config.database)
    try:
        if not db.ping():
            logger.error("Database unreachable, scheduler not started")
            sys.exit(1)
        orchestrator = build_orchestrator(config, db)
        try:
            SyncScheduler(config, db, orchestrator.run_and_refresh).start()
        finally:
            orchestrator.close()
    finally:
        db.close()


def cmd_status(args: argparse.Namespace) -> None:
    """Show recent sync runs."""
    config = load_config()
    db = Database(config.database)

    try:
        runs = asyncio.run(RunTracker(db).get_recent_runs(limit=args.limit))
        if not runs:
            print("No sync runs found.")
            return

        fmt = "{:>6}  {:<24}  {:<9}  {:<10}  {:<20}  {:<20}  {:>5}  {:>5}  {:>5}  {}"
        print(fmt.format(
            "RUN", "SCOPE", "YEAR", "STATUS", "STARTED", "COMPLETED",
            "TOTAL", "OK", "FAIL", "ERROR",
        ))
        print("-" * 160)
        for r in runs:
            started = str(r["started_at"])[:19] if r["started_at"] else ""
            completed = str(r["completed_at"])[:19] if r["completed_at"] else ""
            error = (r.get("error_summary") or "")[:40]
            print(fmt.format(
                r["id"],
                (r.get("scope") or "")[:24],
                r.get("academic_year") or "",
                r["status"],
                started,
                completed,
                r.get("total_schools") or 0,
                r.get("schools_succeeded") or 0,
                r.get("schools_failed") or 0,
                error,
            ))
    finally:
        db.close()


def cmd_run(args: argparse.Namespace) -> None:
    """Show one run with its per-school rows."""
    config = load_config()
    db = Database(config.database)

    try:
        run = asyncio.run(RunTracker(db).get_run(args.run_id))
        if run is None:
            print(f"Run {args.run_id} not found.")
            sys.exit(1)

        print(f"Run {run['id']}: {run['status']} (scope {run.get('scope') or '-'}, "
              f"year {run.get('academic_year') or '-'}, by {run.get('triggered_by') or '-'})")
        if run.get("error_summary"):
            print(f"Errors: {run['error_summary']}")

        fmt = "{:<4}  {:>6}  {:<12}  {:<32}  {:<10}  {:>8}  {}"
        print(fmt.format("SRC", "CONFIG", "SCHOOL ID", "NAME", "STATUS", "RECORDS", "ERROR"))
        print("-" * 120)
        for s in run["schools"]:
            print(fmt.format(
                s["source"],
                s["config_id"],
                s.get("school_id") or "",
                (s.get("school_name") or "")[:32],
                s["status"],
                s.get("records_inserted") or 0,
                (s.get("error_message") or "")[:40],
            ))
    finally:
        db.close()


def cmd_cancel(args: argparse.Namespace) -> None:
    """Cancel a pending or running run in the store.

    A process still running it stops before its next step and leaves the
    run cancelled.
    """
    config = load_config()
    db = Database(config.database)

    try:
        if asyncio.run(RunTracker(db).cancel_offline(args.run_id)):
            print(f"Run {args.run_id} cancelled.")
        else:
            print(f"Run {args.run_id} is not pending or running.")
            sys.exit(1)
    finally:
        db.close()


def main() -> None:
    """Main CLI entry point."""
    configure_logging()

    parser = argparse.ArgumentParser(
        prog="school-sync",
        description="Nexquare / ManageBac school data sync",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # sync command
    sync_parser = subparsers.add_parser("sync", help="Run one sync")
    sync_parser.add_argument("--all", action="store_true", help="Every active school config")
    sync_parser.add_argument("--node-ids", help="Comma-separated node ids")
    sync_parser.add_argument(
        "--include-descendants",
        action="store_true",
        help="Expand --node-ids to their descendant nodes",
    )
    sync_parser.add_argument("--nex-config-ids", help="Comma-separated Nexquare config ids")
    sync_parser.add_argument("--mb-config-ids", help="Comma-separated ManageBac config ids")
    sync_parser.add_argument("--academic-year", help="Academic year (default: current year)")
    sync_parser.add_argument("--endpoints-nex", help="Comma-separated Nexquare steps (default: all)")
    sync_parser.add_argument("--endpoints-mb", help="Comma-separated ManageBac steps (default: all)")
    sync_parser.add_argument(
        "--refresh",
        action="store_true",
        help="Refresh reporting tables for each school that syncs",
    )
    sync_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List the schools in scope without syncing",
    )
    sync_parser.set_defaults(func=cmd_sync)

    # scheduler command
    sched_parser = subparsers.add_parser("scheduler", help="Start scheduled sync loop")
    sched_parser.set_defaults(func=cmd_scheduler)

    # status command
    status_parser = subparsers.add_parser("status", help="Show recent sync runs")
    status_parser.add_argument(
        "--limit", "-l",
        type=int,
        default=10,
        help="Number of runs to show (default: 10)",
    )
    status_parser.set_defaults(func=cmd_status)

    # run command
    run_parser = subparsers.add_parser("run", help="Show one run and its schools")
    run_parser.add_argument("run_id", type=int)
    run_parser.set_defaults(func=cmd_run)

    # cancel command
    cancel_parser = subparsers.add_parser("cancel", help="Cancel a pending or running run")
    cancel_parser.add_argument("run_id", type=int)
    cancel_parser.set_defaults(func=cmd_cancel)

    args = parser.parse_args()
    args.func(args)
