"""Postgres connection pool and query helpers for the document store."""

from __future__ import annotations

import contextvars
import logging
import os
import threading
import time
from contextlib import contextmanager
from typing import Any, Iterable

import psycopg2
import psycopg2.extras
from psycopg2.pool import SimpleConnectionPool


def get_db_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is required when USE_DB=1")
    return url


_POOL: SimpleConnectionPool | None = None
_POOL_LOCK = threading.Lock()
_DB_MS = 0.0
_DB_LOCK = threading.Lock()
_logger = logging.getLogger("trellis.db")
_query_logger = logging.getLogger("trellis.db.query")
_DB_STATS: contextvars.ContextVar[dict | None] = contextvars.ContextVar("trellis_db_stats", default=None)
_SLOW_MS = float(os.getenv("TRELLIS_QUERY_SLOW_MS", "200"))
_LOG_ALL = os.getenv("TRELLIS_QUERY_LOG", "").strip() == "1"


def _redact_params(params: Iterable[Any] | None) -> list[Any] | None:
    if params is None:
        return None
    redacted: list[Any] = []
    for val in params:
        if isinstance(val, (bytes, bytearray)):
            redacted.append(f"<bytes:{len(val)}>")
        elif isinstance(val, str) and len(val) > 80:
            redacted.append(f"{val[:40]}...{val[-10:]}")
        else:
            redacted.append(val)
    return redacted


def _log_query(query_name: str | None, params: Iterable[Any] | None, elapsed_ms: float, rowcount: int | None) -> None:
    if not query_name and not _LOG_ALL and elapsed_ms < _SLOW_MS:
        return
    message = {
        "query": query_name or "unnamed",
        "ms": round(elapsed_ms, 2),
        "rowcount": rowcount,
        "params": _redact_params(params),
    }
    if elapsed_ms >= _SLOW_MS:
        _query_logger.warning("db_slow_query=%s", message)
    else:
        _query_logger.info("db_query=%s", message)


def init_pool(minconn: int | None = None, maxconn: int | None = None) -> None:
    global _POOL
    with _POOL_LOCK:
        if _POOL is not None:
            return
        if minconn is None:
            minconn = int(os.getenv("TRELLIS_DB_POOL_MIN", "1"))
        if maxconn is None:
            maxconn = int(os.getenv("TRELLIS_DB_POOL_MAX", "10"))
        _POOL = SimpleConnectionPool(minconn, maxconn, dsn=get_db_url())


def _get_pool() -> SimpleConnectionPool:
    if _POOL is None:
        init_pool()
    return _POOL


def reset_db_ms() -> None:
    global _DB_MS
    with _DB_LOCK:
        _DB_MS = 0.0
    _DB_STATS.set({"queries": 0, "total_ms": 0.0})


def get_db_ms() -> float:
    with _DB_LOCK:
        return _DB_MS


def get_db_stats() -> dict:
    stats = _DB_STATS.get()
    if not isinstance(stats, dict):
        return {"queries": 0, "total_ms": 0.0}
    return stats


def add_db_ms(delta: float) -> None:
    global _DB_MS
    with _DB_LOCK:
        _DB_MS += delta
    stats = dict(get_db_stats())
    stats["total_ms"] = stats.get("total_ms", 0.0) + delta
    stats["queries"] = stats.get("queries", 0) + 1
    _DB_STATS.set(stats)


@contextmanager
def get_conn():
    pool = _get_pool()
    conn = pool.getconn()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


def _run(conn, sql: str, params: Iterable[Any] | None, query_name: str | None, fetch: str | None):
    start = time.perf_counter()
    with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
        cur.execute(sql, params or [])
        if fetch == "one":
            row = cur.fetchone()
            result: Any = dict(row) if row else None
        elif fetch == "all":
            result = [dict(r) for r in cur.fetchall()]
        else:
            result = cur.rowcount
        rowcount = cur.rowcount
    elapsed_ms = (time.perf_counter() - start) * 1000
    add_db_ms(elapsed_ms)
    _log_query(query_name, params, elapsed_ms, rowcount)
    return result


def fetch_one(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> dict | None:
    return _run(conn, sql, params, query_name, "one")


def fetch_all(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> list[dict]:
    return _run(conn, sql, params, query_name, "all")


def execute(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> int:
    return _run(conn, sql, params, query_name, None)


def execute_batch(conn, sql: str, rows: list[Iterable[Any]], query_name: str | None = None) -> int:
    start = time.perf_counter()
    with conn.cursor() as cur:
        psycopg2.extras.execute_batch(cur, sql, rows)
    elapsed_ms = (time.perf_counter() - start) * 1000
    add_db_ms(elapsed_ms)
    _log_query(query_name, None, elapsed_ms, len(rows))
    return len(rows)


SCHEMA_SQL = """
create table if not exists app_databases (
  db_name text primary key,
  created_at timestamptz not null default now()
);
create table if not exists app_documents (
  db_name text not null references app_databases(db_name) on delete cascade,
  doc_id text not null,
  rev text not null,
  data jsonb not null,
  updated_at timestamptz not null default now(),
  primary key (db_name, doc_id)
);
"""


def ensure_schema() -> None:
    with get_conn() as conn:
        execute(conn, SCHEMA_SQL, query_name="schema.ensure")
    _logger.info("db_schema_ready")
