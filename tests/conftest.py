"""Shared fakes: in-memory sink, run tracker, scripted HTTP and adapters.

Nothing here touches the network or a real database.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import re
from contextlib import contextmanager
from typing import Any, Callable, Optional

import pytest

from scripts.school_sync.auth import TokenGrant
from scripts.school_sync.config import DatabaseConfig, HttpConfig, LoaderConfig, SyncConfig
from scripts.school_sync.models import (
    RUN_CANCELLED,
    RUN_PENDING,
    RUN_RUNNING,
    SCHOOL_COMPLETED,
    SCHOOL_FAILED,
    SCHOOL_PENDING,
    SCHOOL_RUNNING,
    SCHOOL_SKIPPED,
    PageRequest,
    TenantConfig,
)
from scripts.school_sync.sources.base import SourceAdapter, StepDefinition
from scripts.school_sync.tables import TableSpec

# ---------------------------------------------------------------------------
# Sink
# ---------------------------------------------------------------------------


class FakeCursor:
    def __init__(self, db: "FakeDatabase") -> None:
        self.db = db
        self.staged: list[tuple[TableSpec, list[tuple]]] = []
        self.deletes: list[tuple[TableSpec, tuple]] = []
        self.rowcount = 0

    def execute(self, sql: str, params: Any = None) -> None:
        self.db.executed.append((sql, params))
        self.rowcount = 1


class FakeDatabase:
    """In-memory stand-in for db.Database.

    Writes are staged on the cursor and applied only when the transaction
    exits cleanly. Upsert tables are keyed by their conflict columns.
    """

    def __init__(self) -> None:
        self.tables: dict[str, Any] = {}
        self.statements: list[tuple[str, int]] = []  # (table, bound parameters)
        self.executed: list[tuple[str, Any]] = []
        self.refs: dict[str, list[dict[str, Any]]] = {}
        self.lookup_calls = 0
        self.commits = 0
        self.rollbacks = 0
        self.fail_write: Optional[Callable[[TableSpec, int], bool]] = None
        self.fail_execute: Optional[Callable[[str], bool]] = None

    @contextmanager
    def transaction(self):
        cur = FakeCursor(self)
        try:
            yield cur
        except Exception:
            self.rollbacks += 1
            raise
        for spec, key in cur.deletes:
            self._remove(spec, key)
        for spec, rows in cur.staged:
            self._apply(spec, rows)
        self.commits += 1

    def _apply(self, spec: TableSpec, rows: list[tuple]) -> None:
        if spec.append_only:
            self.tables.setdefault(spec.table, []).extend(dict(zip(spec.columns, r)) for r in rows)
            return
        table = self.tables.setdefault(spec.table, {})
        for row in rows:
            table[spec.key_of(row)] = dict(zip(spec.columns, row))

    def _remove(self, spec: TableSpec, key: tuple) -> int:
        kept, removed = [], 0
        for row in self.tables.get(spec.table, []):
            if tuple(row[c] for c in spec.replace_columns) == key:
                removed += 1
            else:
                kept.append(row)
        self.tables[spec.table] = kept
        return removed

    def delete_rows(self, cur: FakeCursor, spec: TableSpec, keys) -> int:
        """Stage one delete per key; returns how many stored rows match now."""
        count = 0
        for key in keys:
            cur.deletes.append((spec, tuple(key)))
            count += sum(
                1 for row in self.tables.get(spec.table, [])
                if tuple(row[c] for c in spec.replace_columns) == tuple(key)
            )
        return count

    def write_rows(self, cur: FakeCursor, spec: TableSpec, rows) -> int:
        rows = list(rows)
        if not rows:
            return 0
        number = sum(1 for t, _ in self.statements if t == spec.table) + 1
        self.statements.append((spec.table, len(rows) * len(spec.columns)))
        if self.fail_write is not None and self.fail_write(spec, number):
            raise RuntimeError(f"write {number} into {spec.table} rejected")
        if not spec.append_only:
            keys = [spec.key_of(r) for r in rows]
            if len(set(keys)) != len(keys):
                raise RuntimeError("ON CONFLICT DO UPDATE command cannot affect row a second time")
        cur.staged.append((spec, rows))
        return len(rows)

    def rows(self, table: str) -> list[dict[str, Any]]:
        data = self.tables.get(table, [])
        return list(data.values()) if isinstance(data, dict) else list(data)

    def seed(self, table: str, rows: list[dict[str, Any]]) -> None:
        self.refs.setdefault(table, []).extend(rows)

    def fetch_all(self, sql: str, params: Any = None) -> list[dict[str, Any]]:
        if "= ANY(%s)" not in sql:
            return []
        self.lookup_calls += 1
        table = re.search(r"FROM (\S+) WHERE", sql).group(1)
        columns = re.findall(r"(\w+) = ANY\(%s\)", sql)
        wanted = {str(v) for v in params[0]}
        return [
            dict(r) for r in self.refs.get(table, [])
            if any(r.get(c) is not None and str(r[c]) in wanted for c in columns)
        ]

    def fetch_one(self, sql: str, params: Any = None) -> Optional[dict[str, Any]]:
        rows = self.fetch_all(sql, params)
        return rows[0] if rows else None

    def execute(self, sql: str, params: Any = None) -> int:
        if self.fail_execute is not None and self.fail_execute(sql):
            raise RuntimeError(f"statement failed: {sql}")
        self.executed.append((sql, params))
        return 1

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass


class RecordingCursor:
    def __init__(self, db: "RecordingDatabase") -> None:
        self.db = db
        self.rowcount = 0

    def execute(self, sql: str, params: Any = None) -> None:
        self.db.statements.append((" ".join(sql.split()), params))
        self.rowcount = self.db.rowcount


class RecordingDatabase:
    """Records every statement with its whitespace collapsed.

    Queries are answered by the first registered SQL fragment they contain;
    updates report `rowcount`.
    """

    def __init__(self, rowcount: int = 1) -> None:
        self.rowcount = rowcount
        self.answers: list[tuple[str, list[dict[str, Any]]]] = []
        self.statements: list[tuple[str, Any]] = []

    def answer(self, fragment: str, rows: list[dict[str, Any]]) -> None:
        self.answers.append((fragment, rows))

    @contextmanager
    def transaction(self):
        yield RecordingCursor(self)

    def execute(self, sql: str, params: Any = None) -> int:
        self.statements.append((" ".join(sql.split()), params))
        return self.rowcount

    def fetch_all(self, sql: str, params: Any = None) -> list[dict[str, Any]]:
        sql = " ".join(sql.split())
        self.statements.append((sql, params))
        for fragment, rows in self.answers:
            if fragment in sql:
                return [dict(r) for r in rows]
        return []

    def fetch_one(self, sql: str, params: Any = None) -> Optional[dict[str, Any]]:
        rows = self.fetch_all(sql, params)
        return rows[0] if rows else None

    def sql(self) -> list[str]:
        return [s for s, _ in self.statements]


# ---------------------------------------------------------------------------
# Run tracker
# ---------------------------------------------------------------------------


class MemoryRunTracker:
    """Same async surface as tracker.RunTracker, kept in dicts."""

    def __init__(self) -> None:
        self.runs: dict[int, dict[str, Any]] = {}
        self.schools: dict[int, dict[str, Any]] = {}
        self._ids = itertools.count(1)
        self._school_ids = itertools.count(100)

    async def create_run(self, scope, options, status=RUN_RUNNING) -> int:
        run_id = next(self._ids)
        self.runs[run_id] = {
            "id": run_id, "scope": scope, "academic_year": options.academic_year,
            "triggered_by": options.triggered_by, "schedule_id": options.schedule_id,
            "status": status, "total_schools": 0, "schools_succeeded": 0,
            "schools_failed": 0, "error_summary": None,
        }
        return run_id

    async def begin_run(self, run_id, total_schools) -> None:
        run = self.runs[run_id]
        if run["status"] in (RUN_PENDING, RUN_RUNNING):
            run.update(status=RUN_RUNNING, total_schools=total_schools)

    async def finish_run(self, run_id, status, schools_succeeded=0, schools_failed=0,
                         error_summary=None, total_schools=None) -> bool:
        run = self.runs[run_id]
        if run["status"] not in (RUN_PENDING, RUN_RUNNING):
            return False
        run.update(status=status, schools_succeeded=schools_succeeded,
                   schools_failed=schools_failed, error_summary=error_summary)
        if total_schools is not None:
            run["total_schools"] = total_schools
        return True

    async def is_cancelled(self, run_id) -> bool:
        run = self.runs.get(run_id)
        return run is not None and run["status"] == RUN_CANCELLED

    async def cancel_offline(self, run_id) -> bool:
        run = self.runs.get(run_id)
        if run is None or run["status"] not in (RUN_PENDING, RUN_RUNNING):
            return False
        run.update(status=RUN_CANCELLED, error_summary="Run cancelled")
        for row in self.school_rows(run_id):
            if row["status"] in (SCHOOL_PENDING, SCHOOL_RUNNING):
                row.update(status=SCHOOL_SKIPPED, error_message="Run cancelled")
        return True

    async def get_run(self, run_id):
        run = self.runs.get(run_id)
        if run is None:
            return None
        return {**run, "schools": self.school_rows(run_id)}

    async def get_recent_runs(self, limit=10):
        return sorted(self.runs.values(), key=lambda r: r["id"], reverse=True)[:limit]

    async def create_school_rows(self, run_id, tenants):
        keys = {}
        for t in tenants:
            row_id = next(self._school_ids)
            self.schools[row_id] = {
                "id": row_id, "run_id": run_id, "source": t.source, "config_id": t.config_id,
                "school_id": t.school_id, "school_name": t.school_name,
                "status": SCHOOL_PENDING, "error_message": None, "records_inserted": 0,
                "step_results": None,
            }
            keys[t.key] = row_id
        return keys

    async def mark_all_running(self, run_id) -> int:
        count = 0
        for row in self.school_rows(run_id):
            if row["status"] == SCHOOL_PENDING:
                row["status"] = SCHOOL_RUNNING
                count += 1
        return count

    def _finish(self, row_id, status, message=None, results=None) -> None:
        row = self.schools[row_id]
        if row["status"] != SCHOOL_RUNNING:
            return
        row.update(
            status=status,
            error_message=message,
            records_inserted=sum(r.inserted for r in results or []),
            step_results=[r.step for r in results] if results else None,
        )

    async def complete_school(self, row_id, results) -> None:
        self._finish(row_id, SCHOOL_COMPLETED, results=results)

    async def fail_school(self, row_id, message, results=None) -> None:
        self._finish(row_id, SCHOOL_FAILED, message, results)

    async def skip_school(self, row_id, message="Run cancelled") -> None:
        self._finish(row_id, SCHOOL_SKIPPED, message)

    async def skip_running(self, run_id, message="Run cancelled") -> int:
        count = 0
        for row in self.school_rows(run_id):
            if row["status"] == SCHOOL_RUNNING:
                row.update(status=SCHOOL_SKIPPED, error_message=message)
                count += 1
        return count

    def school_rows(self, run_id) -> list[dict[str, Any]]:
        return [r for r in self.schools.values() if r["run_id"] == run_id]

    def statuses(self, run_id) -> dict[int, str]:
        """config_id -> school row status."""
        return {r["config_id"]: r["status"] for r in self.school_rows(run_id)}


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, content: Optional[bytes] = None,
                 headers: Optional[dict[str, str]] = None, url: str = "https://upstream.test") -> None:
        self.status_code = status_code
        if content is None:
            content = b"" if payload is None else json.dumps(payload).encode()
        self.content = content
        self.text = content.decode("utf-8", errors="replace")
        self.headers = headers or {}
        self.url = url

    def json(self) -> Any:
        return json.loads(self.content)


class FakeSession:
    """Plays back scripted responses; an exception in the script is raised."""

    def __init__(self, script: list[Any]) -> None:
        self.script = list(script)
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    def request(self, method, url, params=None, headers=None, timeout=None):
        self.calls.append({"method": method, "url": url, "params": params, "headers": headers})
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def close(self) -> None:
        self.closed = True


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# ---------------------------------------------------------------------------
# Adapters and tenants
# ---------------------------------------------------------------------------


class FakeAdapter(SourceAdapter):
    """Bearer-token adapter whose exchange hands out tok-1, tok-2, ..."""

    def __init__(self, source: str = "nex", steps: Optional[list[StepDefinition]] = None,
                 expires_in: Optional[float] = 3600, failures: Optional[list[Exception]] = None) -> None:
        super().__init__(HttpConfig())
        self.SOURCE = source
        self._steps = steps or []
        self.expires_in = expires_in
        self.failures = list(failures or [])
        self.exchanges = 0

    def base_url(self, tenant: TenantConfig) -> str:
        return tenant.base_url

    def auth_headers(self, token: str, expect: str = "json") -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    def exchange_token(self, tenant: TenantConfig) -> TokenGrant:
        self.exchanges += 1
        if self.failures:
            raise self.failures.pop(0)
        return TokenGrant(f"tok-{self.exchanges}", self.expires_in)

    def page_params(self, page: PageRequest) -> dict[str, Any]:
        return {"offset": page.offset, "limit": page.limit}

    def steps(self) -> list[StepDefinition]:
        return list(self._steps)


def make_tenant(config_id: int = 1, source: str = "nex", school_id: Optional[str] = "S1",
                name: Optional[str] = None) -> TenantConfig:
    return TenantConfig(
        config_id=config_id,
        source=source,
        school_name=name or f"School {config_id}",
        base_url="https://upstream.test",
        school_id=school_id,
        client_id="id",
        client_secret="secret",
        api_token="token",
    )


class StaticScope:
    def __init__(self, tenants: list[TenantConfig]) -> None:
        self.tenants = tenants

    async def resolve(self, scope) -> list[TenantConfig]:
        return list(self.tenants)


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture()
def tracker() -> MemoryRunTracker:
    return MemoryRunTracker()


@pytest.fixture()
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def http_config() -> HttpConfig:
    return HttpConfig(retry_attempts=3, backoff_base_s=1.0, backoff_cap_s=60.0, page_delay_s=0.0)


@pytest.fixture()
def sync_config() -> SyncConfig:
    return SyncConfig(
        database=DatabaseConfig(url="postgresql://localhost/test"),
        http=HttpConfig(page_delay_s=0.0),
        loader=LoaderConfig(),
    )
