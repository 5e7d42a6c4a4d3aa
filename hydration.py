"""Relational hydration: normalized rows -> the nested object a template declares.

Each row's fields resolve concurrently in an anyio task group; blocking store reads run in
worker threads under one capacity limiter per call. A field that fails to resolve is
logged and set to its empty default, so sibling fields and sibling rows still resolve.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Tuple

import anyio
import anyio.to_thread

from field_tree import (
    FieldDefinition,
    FieldTree,
    base_table,
    blocks_table,
    child_table,
    junction_table,
    owner_foreign_key,
)
from schema_errors import HydrationIssue, MalformedStoredSchema, MissingTableWarning, UnresolvedRelationTarget


logger = logging.getLogger("sailor.hydration")

JSON_TYPES = {"object", "tags", "blocks"}
Visited = FrozenSet[Tuple[str, Any]]


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        logger.warning("config_invalid %s", {"name": name, "fallback": default})
        return default


def _parse_json(value: Any) -> Any:
    if not isinstance(value, (str, bytes)):
        return value
    try:
        return json.loads(value)
    except ValueError:
        return value


def coerce_value(fdef: FieldDefinition, value: Any) -> Any:
    if value is None:
        return None
    if fdef.type == "boolean":
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes")
        return bool(value)
    if fdef.type in JSON_TYPES or fdef.is_simple_array:
        return _parse_json(value)
    return value


def coerce_row(row: Mapping[str, Any], tree: FieldTree) -> dict:
    """Copy ``row`` with stored scalar columns converted back to their field types."""
    out = dict(row)
    for name, fdef in tree.items():
        if name in out and not fdef.spawns_table and not fdef.is_single_reference:
            out[name] = coerce_value(fdef, out[name])
    return out


def empty_default(fdef: FieldDefinition, load_full_objects: bool) -> Any:
    if fdef.is_file:
        if fdef.multiple:
            return []
        return None if load_full_objects else ""
    if fdef.is_object_array or fdef.is_many_to_many:
        return []
    return None


@dataclass
class _Pass:
    limiter: anyio.CapacityLimiter
    load_full_objects: bool


class HydrationEngine:
    def __init__(
        self,
        content_store,
        type_registry,
        table_registry=None,
        max_depth: int | None = None,
        concurrency: int | None = None,
    ) -> None:
        self._store = content_store
        self._types = type_registry
        self._tables = table_registry
        self._max_depth = max_depth if max_depth is not None else _env_int("SAILOR_HYDRATE_MAX_DEPTH", 8)
        self._concurrency = concurrency if concurrency is not None else _env_int("SAILOR_HYDRATE_CONCURRENCY", 4)

    def _new_pass(self, load_full_objects: bool) -> _Pass:
        return _Pass(limiter=anyio.CapacityLimiter(max(1, self._concurrency)), load_full_objects=load_full_objects)

    async def _call(self, ctx: _Pass, fn: Callable, *args) -> Any:
        return await anyio.to_thread.run_sync(fn, *args, limiter=ctx.limiter)

    def _check_table(self, table: str) -> None:
        if self._tables is not None:
            self._tables.require(table)

    # public API

    async def hydrate(self, row: Mapping[str, Any], kind: str, slug: str, load_full_objects: bool = False) -> dict:
        """Hydrate one base-table row of type ``kind``/``slug``.

        Unknown types and malformed stored schemas return a plain copy of the row.
        """
        ctx = self._new_pass(load_full_objects)
        return await self._hydrate_typed(row, kind, slug, ctx, frozenset(), 0)

    async def hydrate_tree(
        self,
        row: Mapping[str, Any],
        field_tree: FieldTree,
        table_prefix: str,
        kind: str,
        load_full_objects: bool = False,
    ) -> dict:
        ctx = self._new_pass(load_full_objects)
        visited: Visited = frozenset({(table_prefix, row.get("id"))}) if row.get("id") is not None else frozenset()
        return await self._hydrate_node(row, field_tree, table_prefix, kind, ctx, visited, 0)

    async def hydrate_many(self, rows, kind: str, slug: str, load_full_objects: bool = False) -> List[dict]:
        ctx = self._new_pass(load_full_objects)
        results: List[dict] = []
        # rows run one at a time to bound concurrent reads
        for row in rows:
            try:
                results.append(await self._hydrate_typed(row, kind, slug, ctx, frozenset(), 0))
            except Exception as exc:
                logger.warning(
                    "hydrate_row_failed %s",
                    {"kind": kind, "slug": slug, "row_id": row.get("id"), "error": type(exc).__name__, "message": str(exc)},
                )
                results.append(dict(row))
        return results

    async def load(self, kind: str, slug: str, row_id: Any, load_full_objects: bool = False) -> dict | None:
        table = base_table(kind, slug)
        ctx = self._new_pass(load_full_objects)
        try:
            self._check_table(table)
            row = await self._call(ctx, self._store.get_row, table, row_id)
        except MissingTableWarning as exc:
            logger.warning("hydrate_table_missing %s", {"table": exc.table, "kind": kind, "slug": slug})
            return None
        if row is None:
            return None
        return await self._hydrate_typed(row, kind, slug, ctx, frozenset(), 0)

    async def list(self, kind: str, slug: str, load_full_objects: bool = False) -> List[dict]:
        table = base_table(kind, slug)
        ctx = self._new_pass(load_full_objects)
        tree = await self._tree_or_none(kind, slug, ctx)
        order_by = "sort" if tree is not None and "sort" in tree else None
        try:
            self._check_table(table)
            rows = await self._call(ctx, self._store.list_rows, table, order_by)
        except MissingTableWarning as exc:
            logger.warning("hydrate_table_missing %s", {"table": exc.table, "kind": kind, "slug": slug})
            return []
        return await self.hydrate_many(rows, kind, slug, load_full_objects)

    # traversal

    async def _tree_or_none(self, kind: str, slug: str, ctx: _Pass) -> FieldTree | None:
        try:
            return await self._call(ctx, self._types.get_tree, kind, slug)
        except MalformedStoredSchema:
            return None

    async def _hydrate_typed(
        self,
        row: Mapping[str, Any],
        kind: str,
        slug: str,
        ctx: _Pass,
        visited: Visited,
        depth: int,
    ) -> dict:
        table = base_table(kind, slug)
        try:
            tree = await self._call(ctx, self._types.get_tree, kind, slug)
        except MalformedStoredSchema as exc:
            logger.warning("hydrate_schema_skipped %s", {"kind": kind, "slug": slug, "error": exc.message})
            return dict(row)
        if tree is None:
            logger.warning("hydrate_type_unknown %s", {"kind": kind, "slug": slug})
            return dict(row)

        if row.get("id") is not None:
            visited = visited | {(table, row.get("id"))}
        result = await self._hydrate_node(row, tree, table, kind, ctx, visited, depth)

        if kind == "collection":
            options = await self._call(ctx, self._types.get_options, kind, slug)
            if options.get("blocks"):
                try:
                    result["blocks"] = await self._load_blocks(row, table, ctx, visited, depth)
                except Exception as exc:
                    self._log_field_failure(table, "blocks", row, exc)
                    result["blocks"] = []
        return result

    async def _hydrate_node(
        self,
        row: Mapping[str, Any],
        tree: FieldTree,
        prefix: str,
        kind: str,
        ctx: _Pass,
        visited: Visited,
        depth: int,
    ) -> dict:
        result = coerce_row(row, tree)
        async with anyio.create_task_group() as tg:
            for name, fdef in tree.items():
                if fdef.is_file or fdef.is_object_array or fdef.is_relation:
                    tg.start_soon(self._resolve_field, result, row, name, fdef, prefix, kind, ctx, visited, depth)
        return result

    async def _resolve_field(
        self,
        result: dict,
        row: Mapping[str, Any],
        name: str,
        fdef: FieldDefinition,
        prefix: str,
        kind: str,
        ctx: _Pass,
        visited: Visited,
        depth: int,
    ) -> None:
        try:
            if fdef.is_file:
                value = await self._load_files(row, name, fdef, prefix, kind, ctx)
            elif fdef.is_object_array:
                value = await self._load_array(row, name, fdef, prefix, kind, ctx, visited, depth)
            elif fdef.is_many_to_many:
                value = await self._load_many_to_many(row, name, fdef, prefix, kind, ctx, visited, depth)
            else:
                value = await self._load_reference(row.get(name), fdef, ctx, visited, depth)
        except Exception as exc:
            self._log_field_failure(prefix, name, row, exc)
            value = empty_default(fdef, ctx.load_full_objects)
        result[name] = value

    def _log_field_failure(self, table: str, name: str, row: Mapping[str, Any], exc: Exception) -> None:
        payload = {
            "table": table,
            "field": name,
            "row_id": row.get("id"),
            "error": type(exc).__name__,
            "message": exc.message if isinstance(exc, HydrationIssue) else str(exc),
        }
        if isinstance(exc, UnresolvedRelationTarget):
            logger.info("hydrate_relation_unresolved %s", payload)
        else:
            logger.warning("hydrate_field_failed %s", payload)

    async def _load_files(self, row, name: str, fdef: FieldDefinition, prefix: str, kind: str, ctx: _Pass) -> Any:
        table = child_table(prefix, name)
        self._check_table(table)
        links = await self._call(ctx, self._store.file_links, table, row.get("id"), kind)
        if not ctx.load_full_objects:
            ids = [link["file_id"] for link in links]
            if fdef.multiple:
                return ids
            return ids[0] if ids else ""

        records = await self._call(ctx, self._store.files_by_ids, [link["file_id"] for link in links])
        files: List[dict] = []
        for link in links:
            record = records.get(link["file_id"])
            if record is None:
                continue
            item = dict(record)
            if link.get("alt_override"):
                item["alt"] = link["alt_override"]
            files.append(item)
        if fdef.multiple:
            return files
        return files[0] if files else None

    async def _load_array(
        self,
        row,
        name: str,
        fdef: FieldDefinition,
        prefix: str,
        kind: str,
        ctx: _Pass,
        visited: Visited,
        depth: int,
    ) -> List[dict]:
        table = child_table(prefix, name)
        self._check_table(table)
        children = await self._call(ctx, self._store.child_rows, table, owner_foreign_key(kind), row.get("id"))
        items: List[dict] = []
        for child in children:
            items.append(await self._hydrate_node(child, fdef.item_properties, table, kind, ctx, visited, depth))
        return items

    async def _load_reference(self, target_id: Any, fdef: FieldDefinition, ctx: _Pass, visited: Visited, depth: int) -> dict | None:
        if target_id is None or target_id == "":
            return None
        relation = fdef.relation
        target_table = relation.target_table
        self._check_table(target_table)
        target = await self._call(ctx, self._store.get_row, target_table, target_id)
        if target is None:
            raise UnresolvedRelationTarget(
                message=f"no row {target_id} in {target_table}", table=target_table, target_id=target_id
            )
        return await self._hydrate_target(target, relation.target_kind, relation.target_slug, ctx, visited, depth)

    async def _load_many_to_many(
        self,
        row,
        name: str,
        fdef: FieldDefinition,
        prefix: str,
        kind: str,
        ctx: _Pass,
        visited: Visited,
        depth: int,
    ) -> List[dict]:
        relation = fdef.relation
        junction = junction_table(prefix, name)
        self._check_table(junction)
        self._check_table(relation.target_table)
        targets = await self._call(
            ctx, self._store.junction_targets, junction, owner_foreign_key(kind), row.get("id"), relation.target_table
        )
        items: List[dict] = []
        for target in targets:
            items.append(await self._hydrate_target(target, relation.target_kind, relation.target_slug, ctx, visited, depth))
        return items

    async def _hydrate_target(self, target: dict, kind: str, slug: str, ctx: _Pass, visited: Visited, depth: int) -> dict:
        table = base_table(kind, slug)
        key = (table, target.get("id"))
        if key in visited or depth + 1 > self._max_depth:
            logger.debug("hydrate_cycle_cut %s", {"table": table, "id": target.get("id"), "depth": depth + 1})
            tree = await self._tree_or_none(kind, slug, ctx)
            return coerce_row(target, tree) if tree is not None else dict(target)
        return await self._hydrate_typed(target, kind, slug, ctx, visited, depth + 1)

    async def _load_blocks(self, row, prefix: str, ctx: _Pass, visited: Visited, depth: int) -> List[dict]:
        table = blocks_table(prefix)
        self._check_table(table)
        links = await self._call(ctx, self._store.block_links, table, row.get("id"))
        blocks: List[dict] = []
        for link in links:
            block_type = link.get("block_type")
            block_table = base_table("block", block_type)
            try:
                self._check_table(block_table)
                block_row = await self._call(ctx, self._store.get_row, block_table, link.get("block_id"))
            except MissingTableWarning as exc:
                logger.warning("hydrate_block_skipped %s", {"table": exc.table, "link_id": link.get("id")})
                continue
            if block_row is None:
                logger.info("hydrate_block_missing %s", {"table": block_table, "block_id": link.get("block_id")})
                continue
            item = await self._hydrate_typed(block_row, "block", block_type, ctx, visited, depth)
            item["block_type"] = block_type
            blocks.append(item)
        return blocks
