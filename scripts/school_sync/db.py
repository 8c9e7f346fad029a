"""Database helpers: shared connection pool, transactions, multi-row writes."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Generator, Optional, Sequence

import psycopg2
import psycopg2.extras
import psycopg2.pool

from scripts.school_sync.config import DatabaseConfig

if TYPE_CHECKING:
    from scripts.school_sync.tables import TableSpec

logger = logging.getLogger("school_sync.db")


def build_write_sql(spec: "TableSpec") -> str:
    """INSERT ... VALUES %s, with ON CONFLICT DO UPDATE for upsert specs."""
    col_list = ", ".join(spec.columns)
    sql = f"INSERT INTO {spec.table} ({col_list}) VALUES %s"
    if spec.append_only:
        return sql

    conflict_list = ", ".join(spec.conflict_columns)
    if not spec.update_columns:
        return f"{sql} ON CONFLICT ({conflict_list}) DO NOTHING"
    set_clauses = ", ".join(f"{c} = EXCLUDED.{c}" for c in spec.update_columns)
    # Always refresh the sync timestamp on update
    set_clauses += ", updated_at = NOW()"
    return f"{sql} ON CONFLICT ({conflict_list}) DO UPDATE SET {set_clauses}"


def build_delete_sql(spec: "TableSpec") -> str:
    """DELETE of the rows matching one set of replace-column values (NULL-safe)."""
    if not spec.replace_columns:
        raise ValueError(f"{spec.table}: no replace columns")
    where = " AND ".join(f"{c} IS NOT DISTINCT FROM %s" for c in spec.replace_columns)
    return f"DELETE FROM {spec.table} WHERE {where}"


class Database:
    """Thin wrapper around a ThreadedConnectionPool shared by all tenant tasks.

    psycopg2 raises PoolError when every connection is checked out, so
    checkouts are gated by a semaphore sized to the pool: under full fan-out
    callers wait for a connection instead of failing.
    """

    def __init__(self, config: DatabaseConfig) -> None:
        self._pool = psycopg2.pool.ThreadedConnectionPool(
            minconn=config.min_connections,
            maxconn=config.max_connections,
            dsn=config.url,
        )
        self._slots = threading.BoundedSemaphore(config.max_connections)

    def close(self) -> None:
        self._pool.closeall()

    @contextmanager
    def connection(self) -> Generator:
        with self._slots:
            conn = self._pool.getconn()
            try:
                yield conn
            finally:
                self._pool.putconn(conn)

    @contextmanager
    def transaction(self) -> Generator:
        """Yield a cursor inside a commit-on-success / rollback-on-error transaction."""
        with self.connection() as conn:
            try:
                with conn.cursor() as cur:
                    yield cur
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def write_rows(self, cur, spec: "TableSpec", rows: Sequence[tuple]) -> int:
        """Write rows as ONE multi-row statement. Caller sizes the batch.

        Returns the number of rows sent.
        """
        if not rows:
            return 0
        psycopg2.extras.execute_values(
            cur, build_write_sql(spec), rows, page_size=len(rows)
        )
        return len(rows)

    def delete_rows(self, cur, spec: "TableSpec", keys: Sequence[tuple]) -> int:
        """Delete stored rows for each replace-column value tuple. Returns rows deleted."""
        sql = build_delete_sql(spec)
        deleted = 0
        for key in keys:
            cur.execute(sql, key)
            deleted += cur.rowcount
        return deleted

    def execute(self, sql: str, params: Optional[Sequence[Any] | dict] = None) -> int:
        """Run one statement in its own transaction. Returns rowcount."""
        with self.transaction() as cur:
            cur.execute(sql, params)
            return cur.rowcount

    def fetch_all(self, sql: str, params: Optional[Sequence[Any] | dict] = None) -> list[dict[str, Any]]:
        with self.transaction() as cur:
            cur.execute(sql, params)
            if cur.description is None:
                return []
            cols = [d[0] for d in cur.description]
            return [dict(zip(cols, row)) for row in cur.fetchall()]

    def fetch_one(self, sql: str, params: Optional[Sequence[Any] | dict] = None) -> Optional[dict[str, Any]]:
        rows = self.fetch_all(sql, params)
        return rows[0] if rows else None

    def ping(self) -> bool:
        try:
            self.fetch_one("SELECT 1 AS ok")
            return True
        except psycopg2.Error as exc:
            logger.error("Database connection failed: %s", exc)
            return False
