"""Persistence of run and per-school job state (admin.sync_runs / admin.sync_run_schools).

Every method is async and pushes its statement onto a worker thread, so a
tracker write is a suspension point like any other DB call.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from typing import Any, Optional

import psycopg2.extras

from scripts.school_sync.db import Database
from scripts.school_sync.models import (
    RUN_CANCELLED,
    RUN_PENDING,
    RUN_RUNNING,
    SCHOOL_COMPLETED,
    SCHOOL_FAILED,
    SCHOOL_PENDING,
    SCHOOL_RUNNING,
    SCHOOL_SKIPPED,
    StepResult,
    SyncOptions,
    TenantConfig,
)

logger = logging.getLogger("school_sync.tracker")

MAX_ERROR_MESSAGE = 4000
CANCELLED_MESSAGE = "Run cancelled"


def truncate_error(message: Optional[str], limit: int = MAX_ERROR_MESSAGE) -> Optional[str]:
    if message is None:
        return None
    return message[:limit]


class RunTracker:
    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def _create_run(self, scope: str, options: SyncOptions, status: str) -> int:
        row = self.db.fetch_one(
            """INSERT INTO admin.sync_runs
               (scope, academic_year, triggered_by, schedule_id, status, started_at)
               VALUES (%s, %s, %s, %s, %s, NOW())
               RETURNING id""",
            (scope, options.academic_year, options.triggered_by, options.schedule_id, status),
        )
        return int(row["id"])

    async def create_run(self, scope: str, options: SyncOptions, status: str = RUN_RUNNING) -> int:
        run_id = await asyncio.to_thread(self._create_run, scope, options, status)
        logger.info("Created sync run %d (%s)", run_id, status, extra={"run_id": run_id})
        return run_id

    async def begin_run(self, run_id: int, total_schools: int) -> None:
        """Move a run to running and record how many schools it covers."""
        await asyncio.to_thread(
            self.db.execute,
            """UPDATE admin.sync_runs
               SET status = %s, total_schools = %s
               WHERE id = %s AND status IN (%s, %s)""",
            (RUN_RUNNING, total_schools, run_id, RUN_PENDING, RUN_RUNNING),
        )

    async def finish_run(
        self,
        run_id: int,
        status: str,
        schools_succeeded: int = 0,
        schools_failed: int = 0,
        error_summary: Optional[str] = None,
        total_schools: Optional[int] = None,
    ) -> bool:
        """Close a run. False if the run had already left pending/running."""
        updated = await asyncio.to_thread(
            self.db.execute,
            """UPDATE admin.sync_runs
               SET status = %s,
                   total_schools = COALESCE(%s, total_schools),
                   schools_succeeded = %s,
                   schools_failed = %s,
                   error_summary = %s,
                   completed_at = NOW()
               WHERE id = %s AND status IN (%s, %s)""",
            (status, total_schools, schools_succeeded, schools_failed,
             truncate_error(error_summary), run_id, RUN_PENDING, RUN_RUNNING),
        )
        if not updated:
            logger.warning(
                "Sync run %d was already closed; %s outcome not recorded",
                run_id, status, extra={"run_id": run_id},
            )
            return False
        logger.info(
            "Sync run %d finished: %s (%d ok, %d failed)",
            run_id, status, schools_succeeded, schools_failed,
            extra={"run_id": run_id},
        )
        return True

    async def is_cancelled(self, run_id: int) -> bool:
        """True once the stored run is cancelled, by this process or any other."""
        row = await asyncio.to_thread(
            self.db.fetch_one, "SELECT status FROM admin.sync_runs WHERE id = %s", (run_id,)
        )
        return row is not None and row["status"] == RUN_CANCELLED

    def _cancel_offline(self, run_id: int) -> bool:
        with self.db.transaction() as cur:
            cur.execute(
                """UPDATE admin.sync_runs
                   SET status = %s, completed_at = NOW(), error_summary = %s
                   WHERE id = %s AND status IN (%s, %s)""",
                (RUN_CANCELLED, CANCELLED_MESSAGE, run_id, RUN_PENDING, RUN_RUNNING),
            )
            if cur.rowcount == 0:
                return False
            cur.execute(
                """UPDATE admin.sync_run_schools
                   SET status = %s, error_message = %s, completed_at = NOW()
                   WHERE run_id = %s AND status IN (%s, %s)""",
                (SCHOOL_SKIPPED, CANCELLED_MESSAGE, run_id, SCHOOL_PENDING, SCHOOL_RUNNING),
            )
        return True

    async def cancel_offline(self, run_id: int) -> bool:
        """Cancel a run that no live process owns. False if it was not cancellable."""
        return await asyncio.to_thread(self._cancel_offline, run_id)

    async def get_run(self, run_id: int) -> Optional[dict[str, Any]]:
        """A run with its school rows, or None."""
        run = await asyncio.to_thread(
            self.db.fetch_one, "SELECT * FROM admin.sync_runs WHERE id = %s", (run_id,)
        )
        if run is None:
            return None
        run["schools"] = await asyncio.to_thread(
            self.db.fetch_all,
            "SELECT * FROM admin.sync_run_schools WHERE run_id = %s ORDER BY id",
            (run_id,),
        )
        return run

    async def get_recent_runs(self, limit: int = 10) -> list[dict[str, Any]]:
        return await asyncio.to_thread(
            self.db.fetch_all,
            """SELECT id, scope, academic_year, triggered_by, status, total_schools,
                      schools_succeeded, schools_failed, error_summary,
                      started_at, completed_at
               FROM admin.sync_runs
               ORDER BY started_at DESC
               LIMIT %s""",
            (limit,),
        )

    # ------------------------------------------------------------------
    # Schools
    # ------------------------------------------------------------------

    def _create_school_rows(self, run_id: int, tenants: list[TenantConfig]) -> dict[tuple[str, int], int]:
        if not tenants:
            return {}
        values = [
            (run_id, t.source, t.config_id, t.school_id, t.school_name, SCHOOL_PENDING)
            for t in tenants
        ]
        with self.db.transaction() as cur:
            returned = psycopg2.extras.execute_values(
                cur,
                """INSERT INTO admin.sync_run_schools
                   (run_id, source, config_id, school_id, school_name, status)
                   VALUES %s
                   RETURNING id, source, config_id""",
                values,
                page_size=len(values),
                fetch=True,
            )
        return {(source, config_id): row_id for row_id, source, config_id in returned}

    async def create_school_rows(self, run_id: int, tenants: list[TenantConfig]) -> dict[tuple[str, int], int]:
        """One pending row per tenant. Returns {tenant.key: row id}."""
        return await asyncio.to_thread(self._create_school_rows, run_id, tenants)

    async def mark_all_running(self, run_id: int) -> int:
        return await asyncio.to_thread(
            self.db.execute,
            """UPDATE admin.sync_run_schools
               SET status = %s, started_at = NOW()
               WHERE run_id = %s AND status = %s""",
            (SCHOOL_RUNNING, run_id, SCHOOL_PENDING),
        )

    async def _finish_school(
        self,
        row_id: int,
        status: str,
        error_message: Optional[str] = None,
        results: Optional[list[StepResult]] = None,
    ) -> None:
        # Only a running row transitions, so each row is finalized exactly once.
        await asyncio.to_thread(
            self.db.execute,
            """UPDATE admin.sync_run_schools
               SET status = %s,
                   error_message = %s,
                   records_inserted = %s,
                   step_results = %s,
                   completed_at = NOW()
               WHERE id = %s AND status = %s""",
            (
                status,
                truncate_error(error_message),
                sum(r.inserted for r in results or []),
                psycopg2.extras.Json([asdict(r) for r in results]) if results else None,
                row_id,
                SCHOOL_RUNNING,
            ),
        )

    async def complete_school(self, row_id: int, results: list[StepResult]) -> None:
        await self._finish_school(row_id, SCHOOL_COMPLETED, results=results)

    async def fail_school(self, row_id: int, message: str, results: Optional[list[StepResult]] = None) -> None:
        await self._finish_school(row_id, SCHOOL_FAILED, message, results)

    async def skip_school(self, row_id: int, message: str = CANCELLED_MESSAGE) -> None:
        await self._finish_school(row_id, SCHOOL_SKIPPED, message)

    async def skip_running(self, run_id: int, message: str = CANCELLED_MESSAGE) -> int:
        """Skip every row of a run still marked running. Returns how many."""
        return await asyncio.to_thread(
            self.db.execute,
            """UPDATE admin.sync_run_schools
               SET status = %s, error_message = %s, completed_at = NOW()
               WHERE run_id = %s AND status = %s""",
            (SCHOOL_SKIPPED, message, run_id, SCHOOL_RUNNING),
        )
