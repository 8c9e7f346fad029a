"""Downstream reporting refresh: an ordered list of stored procedures per school.

Refreshes are launched after a school syncs successfully. They run as
background tasks the caller can await or inspect, and their failures are
logged without touching the sync run's outcome.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from scripts.school_sync.db import Database
from scripts.school_sync.errors import RefreshError

logger = logging.getLogger("school_sync.refresh")

REFRESH_STEPS = (
    "rp.usp_refresh_student_group_membership",
    "rp.usp_refresh_student_profile",
    "rp.usp_refresh_enrollment_summary",
    "rp.usp_refresh_student_subject_history",
    "rp.usp_refresh_subject_performance",
    "rp.usp_refresh_subject_grade_distribution",
    "rp.usp_refresh_group_performance",
    "rp.usp_refresh_school_subject_summary",
    "rp.usp_refresh_student_attendance_summary",
    "rp.usp_refresh_attendance_score_corr",
    "rp.usp_refresh_attendance_band_summary",
    # Clears the assessment staging table; never reached if an earlier step fails.
    "rp.usp_truncate_nex_student_assessments",
)


@dataclass(frozen=True)
class RefreshOutcome:
    job_run_id: str
    school_id: str
    ok: bool
    failed_step: Optional[str] = None
    error: Optional[str] = None


class RefreshHandle:
    """A launched refresh. await wait() for its outcome; it never raises."""

    def __init__(self, job_run_id: str, school_id: str, task: "asyncio.Task[RefreshOutcome]") -> None:
        self.job_run_id = job_run_id
        self.school_id = school_id
        self.task = task

    def done(self) -> bool:
        return self.task.done()

    async def wait(self) -> RefreshOutcome:
        return await self.task

    def __repr__(self) -> str:
        return f"RefreshHandle(job_run_id={self.job_run_id!r}, school_id={self.school_id!r}, done={self.done()})"


class RefreshPipeline:
    def __init__(self, db: Database, steps: tuple[str, ...] = REFRESH_STEPS) -> None:
        self.db = db
        self.steps = steps

    def _run_steps(self, school_id: str, academic_year: str, job_run_id: str, triggered_by: str) -> None:
        for proc in self.steps:
            try:
                self.db.execute(
                    f"CALL {proc}(%s, %s, %s, %s)",
                    (school_id, academic_year, job_run_id, triggered_by),
                )
            except Exception as exc:
                raise RefreshError(proc, exc) from exc

    async def run(self, school_id: str, academic_year: str, triggered_by: str = "system",
                  job_run_id: Optional[str] = None) -> str:
        """Run every step in order, stopping at the first failure. Returns the job run id."""
        if not academic_year or not academic_year.strip():
            raise ValueError("academic_year is required to refresh reporting data")
        job_run_id = job_run_id or str(uuid.uuid4())
        await asyncio.to_thread(
            self._run_steps, school_id, academic_year.strip(), job_run_id, triggered_by
        )
        logger.info(
            "Refresh completed for school %s (%s), job %s", school_id, academic_year, job_run_id,
            extra={"school_id": school_id},
        )
        return job_run_id

    async def _guarded(self, school_id: str, academic_year: str, triggered_by: str, job_run_id: str) -> RefreshOutcome:
        try:
            await self.run(school_id, academic_year, triggered_by, job_run_id)
        except Exception as exc:
            logger.error(
                "Refresh failed for school %s, job %s: %s", school_id, job_run_id, exc,
                extra={"school_id": school_id},
            )
            return RefreshOutcome(
                job_run_id=job_run_id,
                school_id=school_id,
                ok=False,
                failed_step=getattr(exc, "step", None),
                error=str(exc),
            )
        return RefreshOutcome(job_run_id=job_run_id, school_id=school_id, ok=True)

    def trigger(self, school_id: str, academic_year: str, triggered_by: str = "system") -> RefreshHandle:
        """Launch a refresh in the background. Must be called from a running loop."""
        job_run_id = str(uuid.uuid4())
        task = asyncio.get_running_loop().create_task(
            self._guarded(school_id, academic_year, triggered_by, job_run_id),
            name=f"refresh-{school_id}-{job_run_id[:8]}",
        )
        return RefreshHandle(job_run_id, school_id, task)
