"""Run orchestration: fan a sync run out over its tenants and track the outcome.

Each tenant runs as its own asyncio task with an explicit IngestionContext.
A tenant failure is recorded on its school row and never reaches its
siblings. Cancellation is cooperative: before every step, tasks check a
shared event and the run's stored status, so a run cancelled from another
process (`school-sync cancel`) stops as well.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any, Mapping, Optional, Protocol

from scripts.school_sync.auth import CredentialCache
from scripts.school_sync.config import SyncConfig
from scripts.school_sync.db import Database
from scripts.school_sync.errors import SyncCancelledError
from scripts.school_sync.http_client import RetryingHttpClient
from scripts.school_sync.jobs import CancelCheck, IngestionContext, run_tenant_sequence
from scripts.school_sync.loader import BulkLoader
from scripts.school_sync.models import (
    RUN_CANCELLED,
    RUN_COMPLETED,
    RUN_FAILED,
    RUN_PENDING,
    SCHOOL_COMPLETED,
    SCHOOL_FAILED,
    SCHOOL_SKIPPED,
    SOURCE_NEXQUARE,
    StepResult,
    SyncOptions,
    SyncResult,
    SyncScope,
    TenantConfig,
)
from scripts.school_sync.pagination import PaginatedCollector
from scripts.school_sync.refresh import RefreshHandle, RefreshPipeline
from scripts.school_sync.scope import ConfigRepository
from scripts.school_sync.sources import build_adapters
from scripts.school_sync.sources.base import SourceAdapter
from scripts.school_sync.tracker import CANCELLED_MESSAGE, RunTracker, truncate_error

logger = logging.getLogger("school_sync.orchestrator")

ERROR_SUMMARY_LIMIT = 5


class ScopeResolver(Protocol):
    async def resolve(self, scope: SyncScope) -> list[TenantConfig]: ...


@dataclass
class TenantOutcome:
    tenant: TenantConfig
    status: str
    error: Optional[str] = None
    results: list[StepResult] = field(default_factory=list)


def summarize_errors(outcomes: list[TenantOutcome], limit: int = ERROR_SUMMARY_LIMIT) -> Optional[str]:
    failed = [o for o in outcomes if o.status == SCHOOL_FAILED]
    if not failed:
        return None
    return "; ".join(f"{o.tenant.label}: {o.error}" for o in failed[:limit])


def decide_run_status(outcomes: list[TenantOutcome]) -> str:
    if any(o.status == SCHOOL_SKIPPED for o in outcomes):
        return RUN_CANCELLED
    if outcomes and all(o.status == SCHOOL_FAILED for o in outcomes):
        return RUN_FAILED
    return RUN_COMPLETED


class CancellationRegistry:
    """Cancellation events for the runs live in this process, keyed by run id."""

    def __init__(self) -> None:
        self._events: dict[int, asyncio.Event] = {}
        self._tasks: dict[int, "asyncio.Task[SyncResult]"] = {}

    def register(self, run_id: int) -> asyncio.Event:
        event = asyncio.Event()
        self._events[run_id] = event
        return event

    def attach(self, run_id: int, task: "asyncio.Task[SyncResult]") -> None:
        self._tasks[run_id] = task
        task.add_done_callback(lambda _t: self.unregister(run_id))

    def unregister(self, run_id: int) -> None:
        self._events.pop(run_id, None)
        self._tasks.pop(run_id, None)

    def cancel(self, run_id: int) -> bool:
        event = self._events.get(run_id)
        if event is None:
            return False
        event.set()
        return True

    def task(self, run_id: int) -> Optional["asyncio.Task[SyncResult]"]:
        return self._tasks.get(run_id)

    def live_runs(self) -> list[int]:
        return sorted(self._events)


class SyncOrchestrator:
    def __init__(
        self,
        config: SyncConfig,
        db: Database,
        scope_resolver: ScopeResolver,
        tracker: Optional[RunTracker] = None,
        adapters: Optional[Mapping[str, SourceAdapter]] = None,
        http: Optional[RetryingHttpClient] = None,
        refresh: Optional[RefreshPipeline] = None,
        registry: Optional[CancellationRegistry] = None,
        page_delay_s: Optional[float] = None,
    ) -> None:
        self.config = config
        self.db = db
        self.scope_resolver = scope_resolver
        self.tracker = tracker or RunTracker(db)
        self.adapters = dict(adapters) if adapters is not None else build_adapters(config.http)
        if http is None:
            credentials = CredentialCache(self.adapters, config.http)
            http = RetryingHttpClient(self.adapters, credentials, config.http)
        self.http = http
        self.loader = BulkLoader(db, config.loader)
        if refresh is None and config.refresh.enabled:
            refresh = RefreshPipeline(db)
        self.refresh = refresh
        self.registry = registry or CancellationRegistry()
        self.page_delay_s = config.http.page_delay_s if page_delay_s is None else page_delay_s

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        scope: SyncScope,
        options: Optional[SyncOptions] = None,
        run_id: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SyncResult:
        """Sync every tenant in scope in parallel and return the run's outcome.

        run_id adopts a run created ahead of time (see start()); otherwise a
        new run row is created and registered for cancel() until it settles.
        """
        options = options or SyncOptions()
        if not options.academic_year:
            options = replace(options, academic_year=str(date.today().year))
        if run_id is None:
            run_id = await self.tracker.create_run(scope.describe(), options)
        registered = cancel_event is None
        if registered:
            cancel_event = self.registry.register(run_id)

        try:
            return await self._run(run_id, scope, options, cancel_event)
        except Exception as exc:
            logger.error("Sync run %d aborted: %s", run_id, exc, extra={"run_id": run_id})
            await self.tracker.finish_run(run_id, RUN_FAILED, error_summary=str(exc))
            raise
        finally:
            if registered:
                self.registry.unregister(run_id)

    async def run_and_refresh(self, scope: SyncScope, options: Optional[SyncOptions] = None) -> SyncResult:
        """run(), then wait for every refresh it launched before returning."""
        result = await self.run(scope, options)
        for handle in result.refreshes:
            await handle.wait()
        return result

    async def start(self, scope: SyncScope, options: Optional[SyncOptions] = None) -> int:
        """Create a pending run and sync it in the background. Returns the run id."""
        options = options or SyncOptions()
        run_id = await self.tracker.create_run(scope.describe(), options, status=RUN_PENDING)
        event = self.registry.register(run_id)
        task = asyncio.get_running_loop().create_task(
            self.run(scope, options, run_id=run_id, cancel_event=event),
            name=f"sync-run-{run_id}",
        )
        self.registry.attach(run_id, task)
        return run_id

    async def cancel(self, run_id: int) -> bool:
        """Cancel a run. Live runs stop cooperatively; others are closed in the store."""
        if self.registry.cancel(run_id):
            logger.info("Cancellation requested for live run %d", run_id, extra={"run_id": run_id})
            return True
        cancelled = await self.tracker.cancel_offline(run_id)
        if cancelled:
            logger.info("Run %d cancelled in the store (not live here)", run_id, extra={"run_id": run_id})
        else:
            logger.warning("Run %d is not pending or running; nothing to cancel", run_id, extra={"run_id": run_id})
        return cancelled

    async def wait(self, run_id: int) -> Optional[SyncResult]:
        """Await a run started with start(), if it is still live here."""
        task = self.registry.task(run_id)
        return await task if task is not None else None

    def close(self) -> None:
        self.http.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(self, run_id: int, scope: SyncScope, options: SyncOptions, cancel_event: asyncio.Event) -> SyncResult:
        started = time.monotonic()
        tenants = await self.scope_resolver.resolve(scope)
        eligible = [t for t in tenants if t.school_id]
        if len(eligible) < len(tenants):
            logger.warning(
                "Skipping %d tenant config(s) without a school id",
                len(tenants) - len(eligible), extra={"run_id": run_id},
            )

        await self.tracker.begin_run(run_id, len(eligible))
        if not eligible:
            await self.tracker.finish_run(run_id, RUN_COMPLETED, total_schools=0)
            return SyncResult(run_id=run_id, status=RUN_COMPLETED, total_schools=0,
                              schools_succeeded=0, schools_failed=0)

        row_ids = await self.tracker.create_school_rows(run_id, eligible)
        await self.tracker.mark_all_running(run_id)
        logger.info(
            "Sync run %d: dispatching %d school(s) (%s)", run_id, len(eligible), scope.describe() or "-",
            extra={"run_id": run_id},
        )

        async def cancelled() -> bool:
            if cancel_event.is_set():
                return True
            if await self.tracker.is_cancelled(run_id):
                logger.info("Sync run %d was cancelled in the store", run_id, extra={"run_id": run_id})
                cancel_event.set()
                return True
            return False

        refreshes: list[RefreshHandle] = []
        settled = await asyncio.gather(
            *(
                self._run_school(run_id, row_ids[t.key], t, options, cancelled, refreshes)
                for t in eligible
            ),
            return_exceptions=True,
        )
        outcomes: list[TenantOutcome] = []
        for tenant, outcome in zip(eligible, settled):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                message = truncate_error(str(outcome) or type(outcome).__name__)
                logger.error(
                    "School %s could not be recorded: %s", tenant.label, message,
                    extra={"run_id": run_id, "source": tenant.source, "config_id": tenant.config_id},
                )
                outcome = TenantOutcome(tenant, SCHOOL_FAILED, message)
            outcomes.append(outcome)

        status = decide_run_status(outcomes)
        if status == RUN_CANCELLED:
            await self.tracker.skip_running(run_id)
        succeeded = sum(1 for o in outcomes if o.status == SCHOOL_COMPLETED)
        failed = sum(1 for o in outcomes if o.status == SCHOOL_FAILED)
        summary = summarize_errors(outcomes)

        await self.tracker.finish_run(run_id, status, succeeded, failed, summary)
        logger.info(
            "Sync run %d %s: %d succeeded, %d failed, %d skipped",
            run_id, status, succeeded, failed, len(outcomes) - succeeded - failed,
            extra={"run_id": run_id, "duration_s": round(time.monotonic() - started, 3)},
        )
        return SyncResult(
            run_id=run_id,
            status=status,
            total_schools=len(eligible),
            schools_succeeded=succeeded,
            schools_failed=failed,
            error_summary=summary,
            refreshes=refreshes,
        )

    def _context(self, run_id: int, tenant: TenantConfig, options: SyncOptions) -> IngestionContext:
        return IngestionContext(
            tenant=tenant,
            adapter=self.adapters[tenant.source],
            http=self.http,
            collector=PaginatedCollector(self.page_delay_s, self.config.loader.max_date_span_days),
            loader=self.loader,
            db=self.db,
            loader_config=self.config.loader,
            academic_year=options.academic_year,
            run_id=run_id,
        )

    async def _run_school(
        self,
        run_id: int,
        row_id: int,
        tenant: TenantConfig,
        options: SyncOptions,
        cancelled: CancelCheck,
        refreshes: list[RefreshHandle],
    ) -> TenantOutcome:
        extra = {"run_id": run_id, "source": tenant.source, "config_id": tenant.config_id,
                 "school_id": tenant.school_id}
        results: list[StepResult] = []
        try:
            ctx = self._context(run_id, tenant, options)
            endpoints = options.endpoints_nex if tenant.source == SOURCE_NEXQUARE else options.endpoints_mb
            steps = ctx.adapter.select_steps(endpoints)
            results = await run_tenant_sequence(ctx, steps, cancelled)
        except SyncCancelledError:
            logger.info("School %s skipped: run cancelled", tenant.label, extra=extra)
            await self.tracker.skip_school(row_id, CANCELLED_MESSAGE)
            return TenantOutcome(tenant, SCHOOL_SKIPPED, CANCELLED_MESSAGE)
        except Exception as exc:
            message = truncate_error(str(exc) or type(exc).__name__)
            logger.error("School %s failed: %s", tenant.label, message, extra=extra)
            await self.tracker.fail_school(row_id, message, results)
            return TenantOutcome(tenant, SCHOOL_FAILED, message, results)

        await self.tracker.complete_school(row_id, results)
        logger.info(
            "School %s completed: %d row(s) across %d step(s)",
            tenant.label, sum(r.inserted for r in results), len(results), extra=extra,
        )
        if options.run_refresh and self.refresh is not None:
            refreshes.append(self.refresh.trigger(tenant.school_id, options.academic_year, options.triggered_by))
        return TenantOutcome(tenant, SCHOOL_COMPLETED, results=results)


def build_orchestrator(config: SyncConfig, db: Database, **overrides: Any) -> SyncOrchestrator:
    """Orchestrator wired to the config tables for scope resolution."""
    return SyncOrchestrator(config, db, ConfigRepository(db), **overrides)
