"""Per-tenant ingestion: the context a tenant task carries and the step runner."""

from __future__ import annotations

import inspect
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Awaitable, Callable, Optional, Union

from scripts.school_sync.config import LoaderConfig
from scripts.school_sync.db import Database
from scripts.school_sync.errors import SyncCancelledError
from scripts.school_sync.exports import parse_export
from scripts.school_sync.http_client import EXPECT_FILE, RetryingHttpClient, UpstreamRequest
from scripts.school_sync.loader import BulkLoader
from scripts.school_sync.models import DateRange, PageRequest, StepResult, TenantConfig
from scripts.school_sync.pagination import PaginatedCollector
from scripts.school_sync.resolver import ReferenceResolver, ReferenceSpec, SchoolKeyResolver
from scripts.school_sync.sources.base import (
    MODE_DATE_RANGE,
    MODE_FILE,
    MODE_LIST,
    MODE_SINGLE,
    SourceAdapter,
    StepDefinition,
)

logger = logging.getLogger("school_sync.jobs")

_YEAR = re.compile(r"(\d{4})")


def academic_year_range(academic_year: Optional[str], today: Optional[date] = None) -> DateRange:
    """Calendar year named by the first four-digit year in academic_year.

    "2024-2025" and "2024" both give 2024-01-01..2024-12-31; no year means
    the current one.
    """
    match = _YEAR.search(academic_year or "")
    year = int(match.group(1)) if match else (today or date.today()).year
    return DateRange(date(year, 1, 1), date(year, 12, 31))


@dataclass
class IngestionContext:
    """Everything one tenant task needs, passed explicitly to each step."""

    tenant: TenantConfig
    adapter: SourceAdapter
    http: RetryingHttpClient
    collector: PaginatedCollector
    loader: BulkLoader
    db: Database
    loader_config: LoaderConfig = field(default_factory=LoaderConfig)
    academic_year: Optional[str] = None
    date_range: Optional[DateRange] = None
    run_id: Optional[int] = None
    state: dict[str, Any] = field(default_factory=dict)
    _resolvers: dict[ReferenceSpec, ReferenceResolver] = field(default_factory=dict, repr=False)
    _school_keys: Optional[SchoolKeyResolver] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if self.date_range is None:
            self.date_range = academic_year_range(self.academic_year)

    @property
    def log_extra(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "source": self.tenant.source,
            "config_id": self.tenant.config_id,
            "school_id": self.tenant.school_id,
        }

    def resolver(self, spec: ReferenceSpec) -> ReferenceResolver:
        resolver = self._resolvers.get(spec)
        if resolver is None:
            resolver = ReferenceResolver(self.db, spec, self.loader_config.lookup_batch_size)
            self._resolvers[spec] = resolver
        return resolver

    async def school_key(self) -> Any:
        if self.adapter.SCHOOL_REFS is None:
            return None
        if self._school_keys is None:
            self._school_keys = SchoolKeyResolver(self.db, self.adapter.SCHOOL_REFS)
        return await self._school_keys.resolve(self.tenant.school_id)

    async def fetch(self, request: UpstreamRequest) -> Any:
        return await self.http.execute(self.tenant, request)


class TenantIngestionJob:
    """Runs one step for one tenant: fetch, transform, load."""

    def __init__(self, step: StepDefinition, ctx: IngestionContext) -> None:
        self.step = step
        self.ctx = ctx

    def _page_fetcher(self) -> Callable[[PageRequest], Awaitable[Any]]:
        step, ctx = self.step, self.ctx
        path = step.path_for(ctx.tenant)

        async def fetch_page(page: PageRequest) -> Any:
            params = dict(page.params)
            if step.page_size is not None and step.mode != MODE_SINGLE:
                params.update(ctx.adapter.page_params(page))
            if page.date_range is not None:
                start_key, end_key = step.date_params
                params[start_key] = page.date_range.start.isoformat()
                params[end_key] = page.date_range.end.isoformat()
            if step.mode == MODE_FILE:
                payload = await ctx.fetch(UpstreamRequest(path, params, expect=EXPECT_FILE))
                return parse_export(payload)
            return await ctx.fetch(UpstreamRequest(path, params))

        return fetch_page

    async def fetch(self) -> list[dict]:
        step, ctx = self.step, self.ctx
        params = step.params(ctx) if step.params else {}
        fetch_page = self._page_fetcher()
        collector = ctx.collector

        if step.mode == MODE_SINGLE:
            return await collector.fetch_once(fetch_page, params, wrapper_keys=step.wrapper_keys)
        if step.mode == MODE_DATE_RANGE:
            if ctx.date_range is None:
                raise ValueError(f"Step {step.name} needs a date range for {ctx.tenant.label}")
            return await collector.collect_date_range(
                fetch_page, step.page_size, ctx.date_range.start, ctx.date_range.end,
                params, step.wrapper_keys,
            )
        if step.mode in (MODE_LIST, MODE_FILE):
            if step.page_size is None:
                return await collector.fetch_once(fetch_page, params, wrapper_keys=step.wrapper_keys)
            return await collector.collect(
                fetch_page, step.page_size, params, wrapper_keys=step.wrapper_keys
            )
        raise ValueError(f"Unknown fetch mode {step.mode!r} for step {step.name}")

    async def run(self) -> StepResult:
        started = time.monotonic()
        extra = {**self.ctx.log_extra, "step": self.step.name}
        logger.info("Step %s started for %s", self.step.name, self.ctx.tenant.label, extra=extra)

        records = await self.fetch()
        mapped = await self.step.transform(self.ctx, records)

        inserted = 0
        for spec, rows in mapped.loads:
            inserted += (await self.ctx.loader.load_batch(spec, rows)).inserted

        result = StepResult(
            step=self.step.name,
            fetched=len(records),
            inserted=inserted,
            unresolved=mapped.unresolved,
            duration_s=round(time.monotonic() - started, 3),
        )
        logger.info(
            "Step %s finished: fetched=%d inserted=%d unresolved=%d",
            result.step, result.fetched, result.inserted, result.unresolved,
            extra={**extra, "records": result.inserted, "duration_s": result.duration_s},
        )
        return result


CancelCheck = Callable[[], Union[bool, Awaitable[bool]]]


async def run_tenant_sequence(
    ctx: IngestionContext,
    steps: list[StepDefinition],
    cancelled: Optional[CancelCheck] = None,
) -> list[StepResult]:
    """Run steps in order, checking for cancellation before each one.

    `cancelled` may be a plain predicate or a coroutine function.
    """
    results: list[StepResult] = []
    for step in steps:
        if cancelled is None:
            flag = False
        else:
            flag = cancelled()
            if inspect.isawaitable(flag):
                flag = await flag
        if flag:
            raise SyncCancelledError(
                f"Cancelled before step {step.name} for {ctx.tenant.label}"
            )
        results.append(await TenantIngestionJob(step, ctx).run())
    return results
