"""Per-engine DDL translation and connection bootstrap (SQLite, PostgreSQL)."""

from __future__ import annotations

import logging
import re
import sqlite3
import time
from datetime import datetime, timezone
from typing import Any, Iterable, List, Mapping

import psycopg2
import psycopg2.errors

from field_tree import MAX_IDENTIFIER
from table_generator import ColumnSpec, GeneratedTable, IndexSpec


logger = logging.getLogger("sailor.db")

_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
PROVIDERS = ("sqlite", "postgres")


def is_safe_identifier(value: Any) -> bool:
    return isinstance(value, str) and bool(_IDENT_RE.match(value)) and len(value) <= MAX_IDENTIFIER


def _literal(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return str(value)
    text = str(value).replace("'", "''")
    return f"'{text}'"


class DialectAdapter:
    name = ""
    placeholder = "%s"

    def quote(self, ident: str) -> str:
        if not is_safe_identifier(ident):
            raise ValueError(f"unsafe identifier: {ident!r}")
        return f'"{ident}"'

    def uuid_function(self) -> str:
        raise NotImplementedError

    def current_timestamp_function(self) -> str:
        raise NotImplementedError

    def timestamp_type(self) -> str:
        raise NotImplementedError

    def now_value(self):
        """Python value bound for timestamp columns in writes."""
        raise NotImplementedError

    def create_primary_key(self, name: str = "id") -> str:
        return f"{self.quote(name)} text primary key not null default ({self.uuid_function()})"

    def create_timestamp(self, name: str) -> str:
        return f"{self.quote(name)} {self.timestamp_type()} not null default ({self.current_timestamp_function()})"

    def create_text_column(self, name: str, not_null: bool = False, unique: bool = False, default: Any = None) -> str:
        parts = [self.quote(name), "text"]
        if not_null:
            parts.append("not null")
        if unique:
            parts.append("unique")
        if default is not None:
            parts.append(f"default {_literal(default)}")
        return " ".join(parts)

    def create_integer_column(
        self,
        name: str,
        not_null: bool = False,
        unique: bool = False,
        default: Any = None,
        boolean: bool = False,
    ) -> str:
        parts = [self.quote(name), "integer"]
        if not_null:
            parts.append("not null")
        if unique:
            parts.append("unique")
        if default is not None:
            parts.append(f"default {_literal(int(bool(default)) if boolean else int(default))}")
        return " ".join(parts)

    def column_definition(self, spec: ColumnSpec) -> str:
        if spec.kind == "id":
            return self.create_primary_key(spec.name)
        if spec.kind == "timestamp":
            return self.create_timestamp(spec.name)
        if spec.kind == "integer":
            return self.create_integer_column(spec.name, not_null=spec.not_null, unique=spec.unique, default=spec.default)
        if spec.kind == "boolean":
            return self.create_integer_column(
                spec.name, not_null=spec.not_null, unique=spec.unique, default=spec.default, boolean=True
            )
        return self.create_text_column(spec.name, not_null=spec.not_null, unique=spec.unique, default=spec.default)

    def index_declaration(self, table: str, index: IndexSpec) -> str:
        cols = ", ".join(self.quote(c) for c in index.columns)
        unique = "unique " if index.unique else ""
        return f"create {unique}index if not exists {self.quote(index.name)} on {self.quote(table)} ({cols})"

    def table_declaration(
        self,
        name: str,
        columns: Mapping[str, ColumnSpec],
        indexes: Iterable[IndexSpec] = (),
    ) -> List[str]:
        body = ",\n  ".join(self.column_definition(spec) for spec in columns.values())
        statements = [f"create table if not exists {self.quote(name)} (\n  {body}\n)"]
        statements.extend(self.index_declaration(name, idx) for idx in indexes)
        return statements

    def declare(self, table: GeneratedTable) -> List[str]:
        return self.table_declaration(table.name, table.columns, table.indexes)

    def connect(self, url: str):
        raise NotImplementedError

    def bootstrap(self, conn) -> None:
        """Engine-specific session setup run once per new connection."""

    def list_tables_sql(self) -> str:
        raise NotImplementedError

    def is_missing_table_error(self, exc: BaseException) -> bool:
        raise NotImplementedError


class SqliteDialect(DialectAdapter):
    name = "sqlite"
    placeholder = "?"

    def uuid_function(self) -> str:
        return (
            "lower(hex(randomblob(4))) || '-' || lower(hex(randomblob(2))) || '-4' || "
            "substr(lower(hex(randomblob(2))),2) || '-' || substr('89ab',abs(random() % 4) + 1, 1) || "
            "substr(lower(hex(randomblob(2))),2) || '-' || lower(hex(randomblob(6)))"
        )

    def current_timestamp_function(self) -> str:
        return "cast(strftime('%s','now') as integer)"

    def timestamp_type(self) -> str:
        return "integer"

    def now_value(self):
        return int(time.time())

    def connect(self, url: str):
        path = sqlite_path(url)
        conn = sqlite3.connect(path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        self.bootstrap(conn)
        return conn

    def bootstrap(self, conn) -> None:
        try:
            conn.execute("pragma journal_mode = wal")
            conn.execute("pragma busy_timeout = 3000")
        except sqlite3.DatabaseError as exc:
            logger.warning("sqlite_pragma_skipped %s", {"error": str(exc)})

    def list_tables_sql(self) -> str:
        return "select name from sqlite_master where type = 'table' and name not like 'sqlite_%' order by name"

    def is_missing_table_error(self, exc: BaseException) -> bool:
        return isinstance(exc, sqlite3.OperationalError) and "no such table" in str(exc)


class PostgresDialect(DialectAdapter):
    name = "postgres"
    placeholder = "%s"

    def uuid_function(self) -> str:
        return "gen_random_uuid()::text"

    def current_timestamp_function(self) -> str:
        return "now()"

    def timestamp_type(self) -> str:
        return "timestamptz"

    def now_value(self):
        return datetime.now(timezone.utc)

    def connect(self, url: str):
        conn = psycopg2.connect(dsn=url)
        self.bootstrap(conn)
        return conn

    def list_tables_sql(self) -> str:
        return (
            "select table_name as name from information_schema.tables "
            "where table_schema = current_schema() and table_type = 'BASE TABLE' order by table_name"
        )

    def is_missing_table_error(self, exc: BaseException) -> bool:
        return isinstance(exc, psycopg2.errors.UndefinedTable)


_DIALECTS = {"sqlite": SqliteDialect, "postgres": PostgresDialect, "postgresql": PostgresDialect}


def get_dialect(name: str | None) -> DialectAdapter:
    key = (name or "sqlite").strip().lower()
    cls = _DIALECTS.get(key)
    if cls is None:
        logger.warning("dialect_unknown %s", {"dialect": name, "fallback": "sqlite"})
        cls = SqliteDialect
    return cls()


def sqlite_path(url: str) -> str:
    """Map ``file:./x.sqlite``, ``sqlite:///x.sqlite`` or a bare path to a sqlite3 path."""
    if not url:
        return "sailor.sqlite"
    if url.startswith("file:"):
        rest = url[len("file:"):]
        return rest or "sailor.sqlite"
    if url.startswith("sqlite://"):
        rest = url[len("sqlite://"):]
        if rest.startswith("/"):
            rest = rest[1:]
        return rest or ":memory:"
    return url
