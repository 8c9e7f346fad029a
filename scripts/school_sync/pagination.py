"""Offset pagination and calendar-month date chunking.

The collector never trusts an upstream-reported total: it keeps requesting
while pages come back full and stops at the first short or empty page.
"""

from __future__ import annotations

import asyncio
import calendar
import logging
from datetime import date, timedelta
from typing import Any, Awaitable, Callable, Iterable, Optional

from scripts.school_sync.models import DateRange, PageRequest
from scripts.school_sync.normalize import normalize

logger = logging.getLogger("school_sync.pagination")

FetchPage = Callable[[PageRequest], Awaitable[Any]]


def month_chunks(start: date, end: date, max_span_days: int = 31) -> list[DateRange]:
    """Split [start, end] into contiguous, ordered, calendar-month-aligned ranges.

    A chunk never crosses a month boundary and never spans more than
    max_span_days days. The last chunk ends exactly at end.
    """
    if start > end:
        raise ValueError(f"start {start} is after end {end}")
    if max_span_days < 1:
        raise ValueError("max_span_days must be at least 1")

    chunks: list[DateRange] = []
    cursor = start
    while cursor <= end:
        month_end = date(cursor.year, cursor.month, calendar.monthrange(cursor.year, cursor.month)[1])
        chunk_end = min(month_end, end, cursor + timedelta(days=max_span_days - 1))
        chunks.append(DateRange(cursor, chunk_end))
        cursor = chunk_end + timedelta(days=1)
    return chunks


class PaginatedCollector:
    def __init__(
        self,
        page_delay_s: float = 0.1,
        max_span_days: int = 31,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.page_delay_s = page_delay_s
        self.max_span_days = max_span_days
        self._sleep = sleep

    async def _pause(self) -> None:
        if self.page_delay_s > 0:
            await self._sleep(self.page_delay_s)

    async def fetch_once(
        self,
        fetch_page: FetchPage,
        params: Optional[dict[str, Any]] = None,
        date_range: Optional[DateRange] = None,
        wrapper_keys: Iterable[str] = (),
    ) -> list[dict]:
        """One unpaginated request, normalized."""
        page = PageRequest(offset=0, limit=1, params=dict(params or {}), date_range=date_range)
        return normalize(await fetch_page(page), wrapper_keys)

    async def collect(
        self,
        fetch_page: FetchPage,
        limit: int,
        params: Optional[dict[str, Any]] = None,
        date_range: Optional[DateRange] = None,
        wrapper_keys: Iterable[str] = (),
    ) -> list[dict]:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        wrapper_keys = tuple(wrapper_keys)
        records: list[dict] = []
        offset = 0
        previous: Optional[list[dict]] = None

        while True:
            page = PageRequest(offset=offset, limit=limit, params=dict(params or {}), date_range=date_range)
            batch = normalize(await fetch_page(page), wrapper_keys)
            if previous is not None and batch and batch == previous:
                # Upstream ignored the offset and replayed the last page.
                logger.warning("Page at offset %d repeats the previous page, stopping", offset)
                break
            records.extend(batch)
            if len(batch) < limit:
                break
            previous = batch
            offset += limit
            await self._pause()

        return records

    async def collect_date_range(
        self,
        fetch_page: FetchPage,
        limit: Optional[int],
        start: date,
        end: date,
        params: Optional[dict[str, Any]] = None,
        wrapper_keys: Iterable[str] = (),
    ) -> list[dict]:
        """Collect every chunk of [start, end] in order into one list.

        limit=None issues a single request per chunk.
        """
        chunks = month_chunks(start, end, self.max_span_days)
        records: list[dict] = []
        for i, chunk in enumerate(chunks):
            if i:
                await self._pause()
            if limit is None:
                batch = await self.fetch_once(fetch_page, params, chunk, wrapper_keys)
            else:
                batch = await self.collect(fetch_page, limit, params, chunk, wrapper_keys)
            logger.debug(
                "Chunk %d/%d %s..%s: %d record(s)",
                i + 1, len(chunks), chunk.start, chunk.end, len(batch),
            )
            records.extend(batch)
        return records
