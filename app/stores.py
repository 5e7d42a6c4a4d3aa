"""In-memory type and content stores."""

from __future__ import annotations

import copy
import threading
import uuid
from typing import Any, Dict, Iterable, List
from datetime import datetime, timezone

from schema_errors import missing_table

from sailor.canonical_json import canonical_dumps


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _sort_key(row: dict) -> tuple:
    sort = row.get("sort")
    return (sort if isinstance(sort, (int, float)) else 0, str(row.get("id") or ""))


def _type_doc(doc: dict) -> dict:
    item = copy.deepcopy(doc)
    for key in ("schema", "options"):
        if isinstance(item.get(key), (dict, list)):
            item[key] = canonical_dumps(item[key])
    return item


class MemoryTypeStore:
    KINDS = ("collection", "global", "block")

    def __init__(self) -> None:
        self._types: Dict[str, Dict[str, dict]] = {kind: {} for kind in self.KINDS}

    def _bucket(self, kind: str) -> Dict[str, dict]:
        if kind not in self._types:
            raise KeyError(f"unknown type kind: {kind}")
        return self._types[kind]

    def get_type(self, kind: str, slug: str) -> dict | None:
        doc = self._types.get(kind, {}).get(slug)
        return copy.deepcopy(doc) if doc else None

    def list_types(self, kind: str) -> list[dict]:
        bucket = self._types.get(kind, {})
        return [copy.deepcopy(bucket[slug]) for slug in sorted(bucket.keys())]

    def upsert_type(self, doc: dict) -> dict:
        bucket = self._bucket(doc["kind"])
        existing = bucket.get(doc["slug"])
        item = _type_doc(doc)
        item["id"] = existing["id"] if existing else str(uuid.uuid4())
        item["created_at"] = existing["created_at"] if existing else _now()
        item["updated_at"] = _now()
        bucket[doc["slug"]] = item
        return copy.deepcopy(item)

    def sync_types(self, documents: Iterable[dict]) -> dict:
        upserted: List[str] = []
        declared: Dict[str, set] = {kind: set() for kind in self.KINDS}
        for doc in documents:
            self.upsert_type(doc)
            declared[doc["kind"]].add(doc["slug"])
            upserted.append(f"{doc['kind']}:{doc['slug']}")
        removed: List[str] = []
        for kind, bucket in self._types.items():
            for slug in sorted(set(bucket.keys()) - declared[kind]):
                bucket.pop(slug, None)
                removed.append(f"{kind}:{slug}")
        return {"upserted": upserted, "removed": removed}


class MemoryContentStore:
    """Table-shaped row storage with the read primitives the hydration engine uses."""

    def __init__(self) -> None:
        self._tables: Dict[str, List[dict]] = {}
        self._lock = threading.Lock()

    def create_table(self, name: str) -> None:
        with self._lock:
            self._tables.setdefault(name, [])

    def create_tables(self, names: Iterable[str]) -> None:
        for name in names:
            self.create_table(name)

    def drop_table(self, name: str) -> None:
        with self._lock:
            self._tables.pop(name, None)

    def insert(self, table: str, row: dict) -> dict:
        item = copy.deepcopy(row)
        item.setdefault("id", str(uuid.uuid4()))
        with self._lock:
            if table not in self._tables:
                raise missing_table(table)
            self._tables[table].append(item)
        return copy.deepcopy(item)

    def _rows(self, table: str) -> List[dict]:
        with self._lock:
            rows = self._tables.get(table)
            if rows is None:
                raise missing_table(table)
            return [copy.deepcopy(r) for r in rows]

    def table_names(self) -> list[str]:
        with self._lock:
            return sorted(self._tables.keys())

    def get_row(self, table: str, row_id: Any) -> dict | None:
        for row in self._rows(table):
            if row.get("id") == row_id:
                return row
        return None

    def list_rows(self, table: str, order_by: str | None = None) -> list[dict]:
        rows = self._rows(table)
        if order_by == "sort":
            rows.sort(key=_sort_key)
        return rows

    def child_rows(self, table: str, foreign_key: str, parent_id: Any) -> list[dict]:
        rows = [r for r in self._rows(table) if r.get(foreign_key) == parent_id]
        return sorted(rows, key=_sort_key)

    def file_links(self, table: str, parent_id: Any, parent_type: str) -> list[dict]:
        rows = [r for r in self._rows(table) if r.get("parent_id") == parent_id and r.get("parent_type") == parent_type]
        return sorted(rows, key=_sort_key)

    def files_by_ids(self, ids: Iterable[Any]) -> dict:
        wanted = set(ids)
        if not wanted:
            return {}
        return {row["id"]: row for row in self._rows("files") if row.get("id") in wanted}

    def junction_targets(self, junction: str, foreign_key: str, row_id: Any, target_table: str) -> list[dict]:
        links = [r for r in self._rows(junction) if r.get(foreign_key) == row_id]
        targets = {row.get("id"): row for row in self._rows(target_table)}
        return [targets[link["target_id"]] for link in links if link.get("target_id") in targets]

    def block_links(self, table: str, collection_id: Any) -> list[dict]:
        return self.child_rows(table, "collection_id", collection_id)
