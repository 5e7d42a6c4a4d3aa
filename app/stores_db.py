"""DB-backed type and content stores."""

from __future__ import annotations

import copy
import logging
import sqlite3
import uuid
from typing import Any, Callable, Iterable, List

import psycopg2

from app.db import execute, fetch_all, fetch_one, get_active_dialect, get_conn
from app.ddl_render import schema_statements
from app.dialects import DialectAdapter, get_dialect
from schema_errors import missing_table

from sailor.canonical_json import canonical_dumps

logger = logging.getLogger("sailor.db")

TYPE_KINDS = ("collection", "global", "block")


def _to_iso(value):
    if hasattr(value, "strftime"):
        return value.strftime("%Y-%m-%dT%H:%M:%SZ")
    return value


def _json_text(value: Any) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return canonical_dumps(value)


def _type_from_row(kind: str, row: dict) -> dict:
    return {
        "kind": kind,
        "id": row["id"],
        "slug": row["slug"],
        "name": row.get("name"),
        "description": row.get("description"),
        "data_type": row.get("data_type"),
        "schema": row.get("schema"),
        "options": row.get("options"),
        "version": row.get("version"),
        "created_at": _to_iso(row.get("created_at")),
        "updated_at": _to_iso(row.get("updated_at")),
    }


class _DbBase:
    def __init__(self, dialect: DialectAdapter | str | None = None) -> None:
        if isinstance(dialect, DialectAdapter):
            self._dialect = dialect
        elif dialect:
            self._dialect = get_dialect(dialect)
        else:
            self._dialect = get_active_dialect()

    def _q(self, ident: str) -> str:
        return self._dialect.quote(ident)

    def _read(self, table: str, fn: Callable[[Any], Any]):
        try:
            with get_conn() as conn:
                return fn(conn)
        except (sqlite3.Error, psycopg2.Error) as exc:
            if self._dialect.is_missing_table_error(exc):
                raise missing_table(table) from exc
            raise


class DbTypeStore(_DbBase):
    def _table(self, kind: str) -> str:
        if kind not in TYPE_KINDS:
            raise KeyError(f"unknown type kind: {kind}")
        return self._q(f"{kind}_types")

    def get_type(self, kind: str, slug: str) -> dict | None:
        if kind not in TYPE_KINDS:
            return None
        row = self._read(
            f"{kind}_types",
            lambda conn: fetch_one(
                conn,
                f"""
                select id, slug, name, description, data_type, schema, options, version, created_at, updated_at
                from {self._table(kind)}
                where slug=%s
                """,
                [slug],
                query_name=f"{kind}_types.get",
            ),
        )
        return _type_from_row(kind, row) if row else None

    def list_types(self, kind: str) -> list[dict]:
        rows = self._read(
            f"{kind}_types",
            lambda conn: fetch_all(
                conn,
                f"""
                select id, slug, name, description, data_type, schema, options, version, created_at, updated_at
                from {self._table(kind)}
                order by slug
                """,
                query_name=f"{kind}_types.list",
            ),
        )
        return [_type_from_row(kind, row) for row in rows]

    def _upsert(self, conn, doc: dict) -> None:
        kind = doc["kind"]
        table = self._table(kind)
        now = self._dialect.now_value()
        values = [
            doc.get("name") or doc["slug"],
            doc.get("description"),
            doc.get("data_type") or "repeatable",
            _json_text(doc.get("schema")),
            _json_text(doc.get("options")),
            doc.get("version"),
        ]
        existing = fetch_one(conn, f"select id from {table} where slug=%s", [doc["slug"]], query_name=f"{kind}_types.exists")
        if existing:
            execute(
                conn,
                f"""
                update {table}
                set name=%s, description=%s, data_type=%s, schema=%s, options=%s, version=%s, updated_at=%s
                where slug=%s
                """,
                values + [now, doc["slug"]],
                query_name=f"{kind}_types.update",
            )
            return
        execute(
            conn,
            f"""
            insert into {table} (id, slug, name, description, data_type, schema, options, version, created_at, updated_at)
            values (%s,%s,%s,%s,%s,%s,%s,%s,%s,%s)
            """,
            [str(uuid.uuid4()), doc["slug"]] + values + [now, now],
            query_name=f"{kind}_types.insert",
        )

    def upsert_type(self, doc: dict) -> dict:
        with get_conn() as conn:
            self._upsert(conn, doc)
        return self.get_type(doc["kind"], doc["slug"]) or copy.deepcopy(doc)

    def sync_types(self, documents: Iterable[dict]) -> dict:
        docs = list(documents)
        upserted: List[str] = []
        removed: List[str] = []
        with get_conn() as conn:
            for doc in docs:
                self._upsert(conn, doc)
                upserted.append(f"{doc['kind']}:{doc['slug']}")
            for kind in TYPE_KINDS:
                declared = {doc["slug"] for doc in docs if doc["kind"] == kind}
                rows = fetch_all(conn, f"select slug from {self._table(kind)}", query_name=f"{kind}_types.slugs")
                for row in rows:
                    if row["slug"] in declared:
                        continue
                    execute(conn, f"delete from {self._table(kind)} where slug=%s", [row["slug"]], query_name=f"{kind}_types.delete")
                    removed.append(f"{kind}:{row['slug']}")
        logger.info("types_synced %s", {"upserted": len(upserted), "removed": removed})
        return {"upserted": upserted, "removed": removed}


class DbContentStore(_DbBase):
    """Read primitives over the compiled content tables."""

    def table_names(self) -> list[str]:
        with get_conn() as conn:
            rows = fetch_all(conn, self._dialect.list_tables_sql(), query_name="schema.tables")
        return [row["name"] for row in rows]

    def get_row(self, table: str, row_id: Any) -> dict | None:
        return self._read(
            table,
            lambda conn: fetch_one(
                conn,
                f"select * from {self._q(table)} where id=%s",
                [row_id],
                query_name=f"{table}.get",
            ),
        )

    def list_rows(self, table: str, order_by: str | None = None) -> list[dict]:
        order = f" order by {self._q(order_by)}, id" if order_by else ""
        return self._read(
            table,
            lambda conn: fetch_all(conn, f"select * from {self._q(table)}{order}", query_name=f"{table}.list"),
        )

    def child_rows(self, table: str, foreign_key: str, parent_id: Any) -> list[dict]:
        return self._read(
            table,
            lambda conn: fetch_all(
                conn,
                f"select * from {self._q(table)} where {self._q(foreign_key)}=%s order by sort, id",
                [parent_id],
                query_name=f"{table}.children",
            ),
        )

    def file_links(self, table: str, parent_id: Any, parent_type: str) -> list[dict]:
        return self._read(
            table,
            lambda conn: fetch_all(
                conn,
                f"""
                select id, parent_id, parent_type, file_id, sort, alt_override
                from {self._q(table)}
                where parent_id=%s and parent_type=%s
                order by sort, id
                """,
                [parent_id, parent_type],
                query_name=f"{table}.file_links",
            ),
        )

    def files_by_ids(self, ids: Iterable[Any]) -> dict:
        wanted = [i for i in dict.fromkeys(ids) if i]
        if not wanted:
            return {}
        placeholders = ",".join(["%s"] * len(wanted))
        rows = self._read(
            "files",
            lambda conn: fetch_all(
                conn,
                f"select * from files where id in ({placeholders})",
                wanted,
                query_name="files.by_ids",
            ),
        )
        return {row["id"]: row for row in rows}

    def junction_targets(self, junction: str, foreign_key: str, row_id: Any, target_table: str) -> list[dict]:
        return self._read(
            junction,
            lambda conn: fetch_all(
                conn,
                f"""
                select t.*
                from {self._q(target_table)} t
                join {self._q(junction)} j on j.target_id = t.id
                where j.{self._q(foreign_key)}=%s
                """,
                [row_id],
                query_name=f"{junction}.targets",
            ),
        )

    def block_links(self, table: str, collection_id: Any) -> list[dict]:
        return self.child_rows(table, "collection_id", collection_id)


def apply_schema(conn, compiled, dialect: DialectAdapter | str | None = None) -> int:
    """Execute the compiled DDL; ``conn=None`` borrows a connection from the pool."""
    adapter = dialect if isinstance(dialect, DialectAdapter) else (get_dialect(dialect) if dialect else get_active_dialect())
    statements = schema_statements(compiled, adapter)
    if conn is None:
        with get_conn() as borrowed:
            for stmt in statements:
                execute(borrowed, stmt, query_name="schema.apply")
    else:
        for stmt in statements:
            execute(conn, stmt, query_name="schema.apply")
    logger.info("schema_applied %s", {"dialect": adapter.name, "statements": len(statements)})
    return len(statements)
