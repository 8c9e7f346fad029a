"""Bulk resolution of upstream identifiers to internal surrogate keys.

Replaces per-record lookups with a handful of batched `= ANY(%s)` queries.
A miss is never an error: callers load NULL for the foreign key and count
the gap on the step result.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from scripts.school_sync.db import Database

logger = logging.getLogger("school_sync.resolver")


@dataclass(frozen=True)
class ReferenceSpec:
    table: str
    match_columns: tuple[str, ...]
    key_column: str = "id"
    # Upstreams report numeric ids that are stored with a prefix ("42" -> "ST-42").
    alternate_prefix: Optional[str] = None


STUDENT_REFS = ReferenceSpec("nex.students", ("sourced_id", "identifier"), alternate_prefix="ST-")
STAFF_REFS = ReferenceSpec("nex.staff", ("sourced_id", "identifier"), alternate_prefix="T-")
NEX_SCHOOL_REFS = ReferenceSpec("nex.schools", ("sourced_id",))
MB_SCHOOL_REFS = ReferenceSpec("mb.schools", ("external_id",))


def alternate_form(identifier: str, prefix: Optional[str]) -> Optional[str]:
    """The other conventional spelling of an identifier, if it has one."""
    if not prefix:
        return None
    if identifier.isdigit():
        return f"{prefix}{identifier}"
    if identifier.startswith(prefix) and identifier[len(prefix):].isdigit():
        return identifier[len(prefix):]
    return None


def build_lookup_sql(spec: ReferenceSpec) -> str:
    cols = ", ".join(dict.fromkeys((spec.key_column,) + spec.match_columns))
    where = " OR ".join(f"{c} = ANY(%s)" for c in spec.match_columns)
    return f"SELECT {cols} FROM {spec.table} WHERE {where}"


class ReferenceResolver:
    def __init__(self, db: Database, spec: ReferenceSpec, batch_size: int = 1000) -> None:
        self.db = db
        self.spec = spec
        self.batch_size = max(1, batch_size)

    async def resolve_many(self, identifiers: Iterable[Any]) -> dict[str, Any]:
        """Map each resolvable identifier to its internal key.

        The primary form wins over the alternate form; unresolved
        identifiers are absent from the result.
        """
        wanted = list(dict.fromkeys(str(i).strip() for i in identifiers if i is not None))
        wanted = [i for i in wanted if i]
        if not wanted:
            return {}

        alternates = {i: alternate_form(i, self.spec.alternate_prefix) for i in wanted}
        candidates = list(dict.fromkeys(
            wanted + [a for a in alternates.values() if a]
        ))
        found = await asyncio.to_thread(self._lookup, candidates)

        resolved: dict[str, Any] = {}
        for ident in wanted:
            if ident in found:
                resolved[ident] = found[ident]
            elif alternates[ident] and alternates[ident] in found:
                resolved[ident] = found[alternates[ident]]

        gaps = len(wanted) - len(resolved)
        if gaps:
            logger.debug(
                "%s: %d of %d identifier(s) unresolved", self.spec.table, gaps, len(wanted)
            )
        return resolved

    def _lookup(self, candidates: list[str]) -> dict[str, Any]:
        sql = build_lookup_sql(self.spec)
        found: dict[str, Any] = {}
        for i in range(0, len(candidates), self.batch_size):
            batch = candidates[i : i + self.batch_size]
            params = [batch] * len(self.spec.match_columns)
            for row in self.db.fetch_all(sql, params):
                key = row[self.spec.key_column]
                for col in self.spec.match_columns:
                    value = row.get(col)
                    if value is not None:
                        found.setdefault(str(value), key)
        return found


class SchoolKeyResolver:
    """Resolve a tenant's internal school key, caching only successful lookups.

    A miss is retried on the next call because the tenant's own `schools`
    step may populate the row later in the same sequence.
    """

    def __init__(self, db: Database, spec: ReferenceSpec) -> None:
        self._resolver = ReferenceResolver(db, spec)
        self._cached: dict[str, Any] = {}

    async def resolve(self, school_id: Optional[str]) -> Optional[Any]:
        if not school_id:
            return None
        school_id = str(school_id)
        if school_id in self._cached:
            return self._cached[school_id]
        found = await self._resolver.resolve_many([school_id])
        key = found.get(school_id)
        if key is None:
            logger.warning(
                "School %s not found in %s; rows will load with a NULL school key",
                school_id, self._resolver.spec.table,
                extra={"school_id": school_id},
            )
        else:
            self._cached[school_id] = key
        return key


def count_gaps(identifiers: Iterable[Any], resolved: dict[str, Any]) -> int:
    return sum(1 for i in identifiers if i is not None and str(i) not in resolved)
