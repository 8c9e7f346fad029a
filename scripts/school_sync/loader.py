"""Bulk loading of mapped rows into the sink.

Every load_batch call owns exactly one transaction: rows are split into
sub-batches that each bind at most `max_parameters` values, each sub-batch
is one multi-row statement, and any failure rolls back the whole call.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Sequence

from scripts.school_sync.config import LoaderConfig
from scripts.school_sync.db import Database
from scripts.school_sync.errors import LoadError
from scripts.school_sync.tables import TableSpec

logger = logging.getLogger("school_sync.loader")


@dataclass(frozen=True)
class LoadResult:
    inserted: int
    batches: int = 0


def sub_batch_size(spec: TableSpec, max_parameters: int, batch_size: int) -> int:
    """Largest row count whose bind parameters fit under the ceiling."""
    fits = max_parameters // len(spec.columns)
    return max(1, min(batch_size, fits))


def split_rows(rows: Sequence[tuple], size: int) -> list[Sequence[tuple]]:
    return [rows[i : i + size] for i in range(0, len(rows), size)]


def dedupe_by_key(spec: TableSpec, rows: Sequence[tuple]) -> list[tuple]:
    """Collapse rows sharing a natural key, last one wins.

    Postgres rejects ON CONFLICT DO UPDATE touching the same key twice in one
    statement, and the upstream APIs do repeat records across pages.
    """
    if spec.append_only:
        return list(rows)
    latest: dict[tuple, tuple] = {}
    for row in rows:
        latest[spec.key_of(row)] = row
    return list(latest.values())


class BulkLoader:
    def __init__(self, db: Database, config: LoaderConfig) -> None:
        self.db = db
        self.config = config

    def batch_size_for(self, spec: TableSpec) -> int:
        return sub_batch_size(spec, self.config.max_parameters, self.config.batch_size)

    async def load_batch(self, spec: TableSpec, rows: Sequence[tuple]) -> LoadResult:
        """Persist rows all-or-nothing. Raises LoadError after rollback.

        For upsert specs, rows sharing a natural key are collapsed first, so
        `inserted` counts distinct keys and can be less than len(rows).
        Specs with replace columns first delete the stored rows for every
        replace-column value present in `rows`, inside the same transaction.
        """
        if not rows:
            return LoadResult(inserted=0)

        width = len(spec.columns)
        for row in rows:
            if len(row) != width:
                raise ValueError(
                    f"{spec.table}: row has {len(row)} values, expected {width}"
                )

        rows = dedupe_by_key(spec, rows)
        batches = split_rows(rows, self.batch_size_for(spec))
        started = time.monotonic()
        try:
            deleted, inserted = await asyncio.to_thread(self._write_all, spec, rows, batches)
        except Exception as exc:
            logger.error(
                "Bulk load into %s failed, rolled back %d row(s): %s",
                spec.table, len(rows), exc,
            )
            raise LoadError(spec.table, exc) from exc

        if deleted:
            logger.info("Replaced %d existing row(s) in %s", deleted, spec.table)
        logger.info(
            "Loaded %d row(s) into %s in %d batch(es)",
            inserted, spec.table, len(batches),
            extra={"records": inserted, "duration_s": round(time.monotonic() - started, 3)},
        )
        return LoadResult(inserted=inserted, batches=len(batches))

    def _write_all(self, spec: TableSpec, rows: Sequence[tuple], batches: list[Sequence[tuple]]) -> tuple[int, int]:
        deleted = total = 0
        with self.db.transaction() as cur:
            if spec.replace_columns:
                keys = list(dict.fromkeys(spec.replace_key_of(r) for r in rows))
                deleted = self.db.delete_rows(cur, spec, keys)
            for batch in batches:
                total += self.db.write_rows(cur, spec, batch)
        return deleted, total
