"""Cached access to stored type documents and their parsed field trees."""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Tuple

from field_tree import FieldTree, FieldTreeError, load_schema_document
from schema_errors import MalformedStoredSchema

from sailor.canonical_json import canonical_loads
from sailor.schema_hash import schema_hash


logger = logging.getLogger("sailor.types")


class TypeRegistry:
    """Parses each stored schema document once per version.

    Entries stay cached until ``invalidate`` is called; the backing store is not re-read
    on every lookup.
    """

    def __init__(self, type_store) -> None:
        self._store = type_store
        self._lock = threading.Lock()
        self._docs: Dict[Tuple[str, str], dict | None] = {}
        self._by_version: Dict[str, FieldTree] = {}

    def _document(self, kind: str, slug: str) -> dict | None:
        key = (kind, slug)
        with self._lock:
            if key in self._docs:
                return self._docs[key]
        doc = self._store.get_type(kind, slug)
        with self._lock:
            self._docs[key] = doc
        return doc

    def get_type(self, kind: str, slug: str) -> dict | None:
        doc = self._document(kind, slug)
        return dict(doc) if doc else None

    def get_tree(self, kind: str, slug: str) -> FieldTree | None:
        """Return the parsed field tree, ``None`` for unknown types.

        Raises ``MalformedStoredSchema`` when the stored document cannot be parsed.
        """
        doc = self._document(kind, slug)
        if not doc:
            return None
        schema = doc.get("schema")
        version = doc.get("version") or (schema_hash(schema) if isinstance(schema, (str, dict)) else None)
        if version:
            with self._lock:
                cached = self._by_version.get(version)
            if cached is not None:
                return cached
        try:
            tree = load_schema_document(schema)
        except FieldTreeError as exc:
            logger.warning("type_schema_malformed %s", {"kind": kind, "slug": slug, "error": str(exc)})
            raise MalformedStoredSchema(message=str(exc), kind=kind, slug=slug) from exc
        if version:
            with self._lock:
                self._by_version[version] = tree
        return tree

    def get_options(self, kind: str, slug: str) -> dict:
        doc = self._document(kind, slug)
        options: Any = doc.get("options") if doc else None
        if isinstance(options, (str, bytes)):
            try:
                options = canonical_loads(options)
            except ValueError:
                logger.warning("type_options_malformed %s", {"kind": kind, "slug": slug})
                return {}
        return options if isinstance(options, dict) else {}

    def invalidate(self, kind: str | None = None, slug: str | None = None) -> int:
        with self._lock:
            if kind is None:
                count = len(self._docs)
                self._docs.clear()
                self._by_version.clear()
            else:
                keys = [k for k in self._docs if k[0] == kind and (slug is None or k[1] == slug)]
                for key in keys:
                    self._docs.pop(key, None)
                count = len(keys)
        logger.info("type_cache_invalidated %s", {"kind": kind, "slug": slug, "count": count})
        return count
