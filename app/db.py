"""DB helper for the content database (SQLite file or PostgreSQL)."""

from __future__ import annotations

import os
import time
from contextlib import contextmanager
import contextvars
from typing import Any, Iterable

import psycopg2
import psycopg2.extras
from psycopg2.pool import ThreadedConnectionPool
import sqlite3
import threading
import logging

from app.dialects import PROVIDERS, DialectAdapter, get_dialect


_logger = logging.getLogger("sailor.db")
_query_logger = logging.getLogger("sailor.db.query")


def get_provider() -> str:
    provider = (os.getenv("DATABASE_PROVIDER") or "sqlite").strip().lower()
    if provider == "postgresql":
        provider = "postgres"
    if provider not in PROVIDERS:
        _logger.warning("db_provider_invalid %s", {"provider": provider, "fallback": "sqlite"})
        provider = "sqlite"
    return provider


def get_db_url() -> str:
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    if get_provider() == "postgres":
        raise RuntimeError("DATABASE_URL is required when DATABASE_PROVIDER=postgres")
    return "file:./sailor.sqlite"


def get_active_dialect() -> DialectAdapter:
    return get_dialect(get_provider())


_POOL: ThreadedConnectionPool | None = None
_SQLITE_CONN: sqlite3.Connection | None = None
_SQLITE_LOCK = threading.RLock()
_DB_MS = 0.0
_DB_LOCK = threading.Lock()
_DB_STATS: contextvars.ContextVar[dict] = contextvars.ContextVar("sailor_db_stats", default=None)
_DB_QUERY_LOG: contextvars.ContextVar[list] = contextvars.ContextVar("sailor_db_query_log", default=None)
_SLOW_MS = float(os.getenv("SAILOR_QUERY_SLOW_MS", "200"))
_LOG_ALL = os.getenv("SAILOR_QUERY_LOG", "").strip() == "1"


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


def _log_query(
    *,
    query_name: str | None,
    sql: str,
    params: Iterable[Any] | None,
    elapsed_ms: float,
    rowcount: int | None,
    wire_ms: float | None = None,
    decode_ms: float | None = None,
) -> None:
    log = get_db_query_log()
    log.append(query_name or "unnamed")
    _DB_QUERY_LOG.set(log)
    if not _LOG_ALL and elapsed_ms < _SLOW_MS:
        return
    message = {
        "query": query_name or "unnamed",
        "ms": round(elapsed_ms, 2),
        "wire_ms": round(wire_ms or 0.0, 2),
        "decode_ms": round(decode_ms or 0.0, 2),
        "rowcount": rowcount,
        "params": _redact_params(params),
    }
    if elapsed_ms >= _SLOW_MS:
        _query_logger.warning("db_slow_query=%s", message)
    else:
        _query_logger.info("db_query=%s", message)


def init_pool(minconn: int | None = None, maxconn: int | None = None) -> None:
    global _POOL, _SQLITE_CONN
    if get_provider() == "postgres":
        if _POOL is None:
            if minconn is None:
                minconn = int(os.getenv("SAILOR_DB_POOL_MIN", "1"))
            if maxconn is None:
                maxconn = int(os.getenv("SAILOR_DB_POOL_MAX", "10"))
            _POOL = ThreadedConnectionPool(minconn, maxconn, dsn=get_db_url())
        return
    with _SQLITE_LOCK:
        if _SQLITE_CONN is None:
            _SQLITE_CONN = get_dialect("sqlite").connect(get_db_url())
            _logger.info("db_sqlite_opened %s", {"url": get_db_url()})


def close_pool() -> None:
    global _POOL, _SQLITE_CONN
    if _POOL is not None:
        _POOL.closeall()
        _POOL = None
    with _SQLITE_LOCK:
        if _SQLITE_CONN is not None:
            _SQLITE_CONN.close()
            _SQLITE_CONN = None


def reset_db_ms() -> None:
    global _DB_MS
    with _DB_LOCK:
        _DB_MS = 0.0
    _DB_STATS.set({"queries": 0, "acquire_ms": 0.0, "execute_ms": 0.0, "wire_ms": 0.0, "decode_ms": 0.0, "total_ms": 0.0})
    _DB_QUERY_LOG.set([])


def get_db_stats() -> dict:
    stats = _DB_STATS.get()
    if not isinstance(stats, dict):
        return {"queries": 0, "acquire_ms": 0.0, "execute_ms": 0.0, "wire_ms": 0.0, "decode_ms": 0.0, "total_ms": 0.0}
    return stats


def get_db_query_log() -> list:
    log = _DB_QUERY_LOG.get()
    if not isinstance(log, list):
        return []
    return log


def add_db_ms(delta: float) -> None:
    global _DB_MS
    with _DB_LOCK:
        _DB_MS += delta
    stats = get_db_stats()
    stats["total_ms"] = stats.get("total_ms", 0.0) + delta
    stats["queries"] = stats.get("queries", 0) + 1
    _DB_STATS.set(stats)


def add_db_acquire_ms(delta: float) -> None:
    stats = get_db_stats()
    stats["acquire_ms"] = stats.get("acquire_ms", 0.0) + delta
    _DB_STATS.set(stats)


def add_db_wire_ms(delta: float) -> None:
    stats = get_db_stats()
    stats["wire_ms"] = stats.get("wire_ms", 0.0) + delta
    stats["execute_ms"] = stats.get("execute_ms", 0.0) + delta
    _DB_STATS.set(stats)


def add_db_decode_ms(delta: float) -> None:
    stats = get_db_stats()
    stats["decode_ms"] = stats.get("decode_ms", 0.0) + delta
    _DB_STATS.set(stats)


def get_db_ms() -> float:
    with _DB_LOCK:
        return _DB_MS


def _get_pool() -> ThreadedConnectionPool:
    if _POOL is None:
        init_pool()
    return _POOL


@contextmanager
def get_conn():
    acquire_start = time.perf_counter()
    if get_provider() == "sqlite":
        init_pool()
        # one shared sqlite connection; callers are serialized
        with _SQLITE_LOCK:
            conn = _SQLITE_CONN
            add_db_acquire_ms((time.perf_counter() - acquire_start) * 1000)
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        return
    pool = _get_pool()
    conn = pool.getconn()
    add_db_acquire_ms((time.perf_counter() - acquire_start) * 1000)
    _logger.debug("db_conn borrowed")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)
        _logger.debug("db_conn returned")


def _is_sqlite(conn) -> bool:
    return isinstance(conn, sqlite3.Connection)


def _prepare(conn, sql: str, params: Iterable[Any] | None):
    """Return (sql, params) in the driver's paramstyle; ``None`` params skip formatting."""
    values = list(params) if params else None
    if values and _is_sqlite(conn):
        sql = sql.replace("%s", "?")
    return sql, values


@contextmanager
def _cursor(conn, dict_rows: bool = True):
    if _is_sqlite(conn):
        cur = conn.cursor()
    elif dict_rows:
        cur = conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
    else:
        cur = conn.cursor()
    try:
        yield cur
    finally:
        cur.close()


def _run(cur, sql: str, values: list | None) -> None:
    if values is None:
        cur.execute(sql)
    else:
        cur.execute(sql, values)


def fetch_one(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> dict | None:
    start = time.perf_counter()
    sql, values = _prepare(conn, sql, params)
    with _cursor(conn) as cur:
        exec_start = time.perf_counter()
        _run(cur, sql, values)
        wire_ms = (time.perf_counter() - exec_start) * 1000
        decode_start = time.perf_counter()
        row = cur.fetchone()
        decode_ms = (time.perf_counter() - decode_start) * 1000
        result = dict(row) if row else None
        rowcount = cur.rowcount
    elapsed_ms = (time.perf_counter() - start) * 1000
    add_db_ms(elapsed_ms)
    add_db_wire_ms(wire_ms)
    add_db_decode_ms(decode_ms)
    _log_query(
        query_name=query_name,
        sql=sql,
        params=values,
        elapsed_ms=elapsed_ms,
        rowcount=rowcount,
        wire_ms=wire_ms,
        decode_ms=decode_ms,
    )
    return result


def fetch_all(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> list[dict]:
    start = time.perf_counter()
    sql, values = _prepare(conn, sql, params)
    with _cursor(conn) as cur:
        exec_start = time.perf_counter()
        _run(cur, sql, values)
        wire_ms = (time.perf_counter() - exec_start) * 1000
        decode_start = time.perf_counter()
        rows = cur.fetchall()
        result = [dict(r) for r in rows]
        decode_ms = (time.perf_counter() - decode_start) * 1000
        rowcount = cur.rowcount
    elapsed_ms = (time.perf_counter() - start) * 1000
    add_db_ms(elapsed_ms)
    add_db_wire_ms(wire_ms)
    add_db_decode_ms(decode_ms)
    _log_query(
        query_name=query_name,
        sql=sql,
        params=values,
        elapsed_ms=elapsed_ms,
        rowcount=rowcount,
        wire_ms=wire_ms,
        decode_ms=decode_ms,
    )
    return result


def execute(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> int:
    start = time.perf_counter()
    sql, values = _prepare(conn, sql, params)
    with _cursor(conn, dict_rows=False) as cur:
        exec_start = time.perf_counter()
        _run(cur, sql, values)
        wire_ms = (time.perf_counter() - exec_start) * 1000
        rowcount = cur.rowcount
    elapsed_ms = (time.perf_counter() - start) * 1000
    add_db_ms(elapsed_ms)
    add_db_wire_ms(wire_ms)
    _log_query(
        query_name=query_name,
        sql=sql,
        params=values,
        elapsed_ms=elapsed_ms,
        rowcount=rowcount,
        wire_ms=wire_ms,
        decode_ms=0.0,
    )
    return rowcount
