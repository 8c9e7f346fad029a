"""APScheduler-based cron scheduling of sync runs from admin.sync_schedules."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Optional

from apscheduler.events import EVENT_JOB_ERROR
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from scripts.school_sync.config import SyncConfig
from scripts.school_sync.db import Database
from scripts.school_sync.models import SyncOptions, SyncScope

logger = logging.getLogger("school_sync.scheduler")

JOB_PREFIX = "sync-schedule-"
RELOAD_JOB_ID = "reload-schedules"

Runner = Callable[[SyncScope, SyncOptions], Any]


def parse_endpoints(raw: Any) -> Optional[list[str]]:
    """Endpoint filter stored as a JSON array (or already decoded). None = all."""
    if raw is None:
        return None
    if isinstance(raw, list):
        return [str(e) for e in raw] or None
    text = str(raw).strip()
    if not text:
        return None
    try:
        value = json.loads(text)
    except ValueError:
        return None
    return [str(e) for e in value] or None if isinstance(value, list) else None


def build_trigger(expression: str, timezone: str) -> Optional[CronTrigger]:
    """CronTrigger for a 5-field crontab expression, or None if it is invalid."""
    try:
        return CronTrigger.from_crontab(expression, timezone=timezone)
    except (ValueError, TypeError) as exc:
        logger.warning("Invalid cron expression %r: %s", expression, exc)
        return None


def schedule_request(schedule: dict[str, Any]) -> tuple[SyncScope, SyncOptions]:
    scope = SyncScope(
        node_ids=[str(schedule["node_id"])] if schedule.get("node_id") else [],
        include_descendants=bool(schedule.get("include_descendants")),
    )
    options = SyncOptions(
        academic_year=schedule.get("academic_year"),
        triggered_by="scheduler",
        schedule_id=schedule.get("id"),
        endpoints_mb=parse_endpoints(schedule.get("endpoints_mb")),
        endpoints_nex=parse_endpoints(schedule.get("endpoints_nex")),
        run_refresh=bool(schedule.get("run_refresh")),
    )
    return scope, options


def _on_job_error(event) -> None:
    """Log job execution errors."""
    logger.error("Job %s raised an exception: %s", event.job_id, event.exception)


class SyncScheduler:
    """Keeps one cron job per active schedule row, reloading periodically."""

    def __init__(
        self,
        config: SyncConfig,
        db: Database,
        runner: Runner,
        scheduler: Optional[BaseScheduler] = None,
    ) -> None:
        self.config = config
        self.db = db
        self.runner = runner
        self.scheduler = scheduler or BlockingScheduler(timezone=config.scheduler.timezone)
        self.scheduler.add_listener(_on_job_error, EVENT_JOB_ERROR)

    def load_active_schedules(self) -> list[dict[str, Any]]:
        return self.db.fetch_all(
            """SELECT id, node_id, academic_year, cron_expression, endpoints_mb,
                      endpoints_nex, include_descendants, run_refresh
               FROM admin.sync_schedules
               WHERE is_active
               ORDER BY id"""
        )

    def scheduled_ids(self) -> set[int]:
        return {
            int(job.id[len(JOB_PREFIX):])
            for job in self.scheduler.get_jobs()
            if job.id.startswith(JOB_PREFIX)
        }

    def fire(self, schedule: dict[str, Any]) -> None:
        scope, options = schedule_request(schedule)
        logger.info(
            "Schedule %s firing: node %s, academic year %s",
            schedule.get("id"), schedule.get("node_id"), schedule.get("academic_year"),
        )
        try:
            result = self.runner(scope, options)
            if asyncio.iscoroutine(result):
                result = asyncio.run(result)
            logger.info("Schedule %s finished: %s", schedule.get("id"), getattr(result, "status", result))
        except Exception as exc:
            logger.error("Schedule %s run failed: %s", schedule.get("id"), exc)

    def reload(self) -> None:
        """Register new or changed schedules and drop removed ones."""
        try:
            schedules = self.load_active_schedules()
        except Exception as exc:
            logger.error("Failed to load schedules, keeping current jobs: %s", exc)
            return

        timezone = self.config.scheduler.timezone
        current: set[int] = set()
        for schedule in schedules:
            trigger = build_trigger(schedule.get("cron_expression") or "", timezone)
            if trigger is None:
                logger.warning("Schedule %s skipped", schedule.get("id"))
                continue
            sid = int(schedule["id"])
            current.add(sid)
            self.scheduler.add_job(
                self.fire,
                trigger,
                args=[schedule],
                id=f"{JOB_PREFIX}{sid}",
                replace_existing=True,
                max_instances=1,
                misfire_grace_time=self.config.scheduler.misfire_grace_time,
            )

        for sid in self.scheduled_ids() - current:
            self.scheduler.remove_job(f"{JOB_PREFIX}{sid}")
            logger.info("Schedule %d unregistered", sid)

        logger.info("Schedules loaded: %s (%s)", sorted(current), timezone)

    def start(self) -> None:
        """Load schedules, add the reload job and block running the scheduler."""
        self.reload()
        self.scheduler.add_job(
            self.reload,
            "interval",
            minutes=self.config.scheduler.reload_interval_min,
            id=RELOAD_JOB_ID,
            replace_existing=True,
            max_instances=1,
        )
        logger.info(
            "Starting scheduler with jobs: %s", [j.id for j in self.scheduler.get_jobs()]
        )
        self.scheduler.start()
