"""Field tree -> physical table specifications.

Every template produces a base table plus one secondary table per file field, array of
objects, and many-to-many relation, recursively for nested array items.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Tuple

from field_tree import (
    FieldDefinition,
    FieldTree,
    TemplateDefinition,
    blocks_table,
    child_table,
    index_name,
    junction_table,
    owner_foreign_key,
)
from metadata_registry import CHILD_RELATION, FILE_RELATION, JUNCTION_RELATION, MetadataRegistry
from schema_errors import SchemaCompileError


logger = logging.getLogger("sailor.compiler")

COLUMN_KINDS = ("id", "text", "integer", "boolean", "json", "timestamp")

# field type -> column kind; anything missing here is stored as text
FIELD_COLUMN_KINDS = {
    "string": "text",
    "text": "text",
    "richText": "text",
    "date": "text",
    "select": "text",
    "number": "integer",
    "boolean": "boolean",
    "tags": "json",
    "object": "json",
    "array": "json",
    "blocks": "json",
    "relation": "text",
}

SYSTEM_COLUMNS = ("id", "created_at", "updated_at")


@dataclass(frozen=True)
class ColumnSpec:
    name: str
    kind: str
    not_null: bool = False
    unique: bool = False
    default: Any = None

    def to_dict(self) -> dict:
        out: dict = {"kind": self.kind}
        if self.not_null:
            out["notNull"] = True
        if self.unique:
            out["unique"] = True
        if self.default is not None:
            out["default"] = self.default
        return out


@dataclass(frozen=True)
class IndexSpec:
    name: str
    columns: Tuple[str, ...]
    unique: bool = False

    def to_dict(self) -> dict:
        return {"name": self.name, "columns": list(self.columns), "unique": self.unique}


@dataclass(frozen=True)
class GeneratedTable:
    name: str
    owner_type: str
    columns: Mapping[str, ColumnSpec]
    indexes: Tuple[IndexSpec, ...] = ()

    @property
    def column_names(self) -> List[str]:
        return list(self.columns.keys())

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "ownerType": self.owner_type,
            "table": {name: spec.to_dict() for name, spec in self.columns.items()},
            "indexes": [idx.to_dict() for idx in self.indexes],
        }


def _scalar_default(fdef: FieldDefinition, kind: str) -> Any:
    value = fdef.default
    if value is None or kind == "json":
        return None
    if kind == "boolean":
        return 1 if value else 0
    if kind == "integer":
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, (int, float)):
            return int(value)
        return None
    if isinstance(value, (dict, list)):
        return None
    return str(value)


def scalar_column(name: str, fdef: FieldDefinition) -> ColumnSpec:
    kind = FIELD_COLUMN_KINDS.get(fdef.type, "text")
    if name == "parent_id":
        return ColumnSpec(name=name, kind="text")
    if name == "sort":
        return ColumnSpec(name=name, kind="integer", not_null=True, default=_scalar_default(fdef, "integer") or 0)
    return ColumnSpec(
        name=name,
        kind=kind,
        not_null=fdef.required,
        unique=fdef.unique,
        default=_scalar_default(fdef, kind),
    )


def _timestamps(*names: str) -> Dict[str, ColumnSpec]:
    return {name: ColumnSpec(name=name, kind="timestamp", not_null=True) for name in names}


class TableGenerator:
    def __init__(self, registry: MetadataRegistry) -> None:
        self._registry = registry

    def generate_tables(
        self,
        slug: str,
        template: TemplateDefinition,
        core_fields: Mapping[str, FieldDefinition] | None = None,
    ) -> List[GeneratedTable]:
        """Generate the base table for ``template`` and every secondary table it needs.

        ``core_fields`` are placed ahead of the template's own fields; a template field of
        the same name replaces the core definition.
        """
        kind = template.kind
        prefix = f"{kind}_{slug}"
        fields: Dict[str, FieldDefinition] = dict(core_fields or {})
        fields.update(template.fields)

        tables: List[GeneratedTable] = []
        reserved = set(SYSTEM_COLUMNS)
        columns: Dict[str, ColumnSpec] = {"id": ColumnSpec(name="id", kind="id")}
        if kind == "block":
            columns["collection_id"] = ColumnSpec(name="collection_id", kind="text")
            reserved.add("collection_id")
        columns.update(self._dispatch_fields(prefix, kind, fields, reserved, tables))
        columns.update(_timestamps("created_at", "updated_at"))

        indexes: List[IndexSpec] = []
        if "slug" in columns:
            indexes.append(IndexSpec(name=index_name(prefix, "slug"), columns=("slug",)))
        if "status" in columns:
            indexes.append(IndexSpec(name=index_name(prefix, "status"), columns=("status",)))
        if kind == "block":
            indexes.append(IndexSpec(name=index_name(prefix, "collection_id"), columns=("collection_id",)))

        base = self._emit(prefix, kind, columns, indexes)
        tables.insert(0, base)

        if template.has_blocks:
            tables.append(self._blocks_table(prefix))
        return tables

    def _dispatch_fields(
        self,
        prefix: str,
        kind: str,
        fields: FieldTree,
        reserved: set,
        tables: List[GeneratedTable],
    ) -> Dict[str, ColumnSpec]:
        columns: Dict[str, ColumnSpec] = {}
        for name, fdef in fields.items():
            if fdef.is_file:
                tables.append(self._file_table(prefix, name))
                continue
            if fdef.is_object_array:
                tables.extend(self._child_tables(prefix, kind, name, fdef))
                continue
            if fdef.is_many_to_many:
                tables.append(self._junction_table(prefix, kind, name, fdef))
                continue
            if name in reserved:
                logger.warning("column_skipped %s", {"table": prefix, "column": name, "reason": "system column"})
                continue
            if fdef.type == "relation":
                self._register_reference(prefix, name, fdef)
            columns[name] = scalar_column(name, fdef)
        return columns

    def _register_reference(self, prefix: str, name: str, fdef: FieldDefinition) -> None:
        relation = fdef.relation
        if relation is None or relation.target_table is None:
            raise SchemaCompileError(
                message=f"relation field {name} on {prefix} has no target",
                code="SCHEMA_RELATION_NO_TARGET",
                path=f"{prefix}.{name}",
            )
        self._registry.register_relation(prefix, name, relation.kind, relation.target_table, name)

    def _file_table(self, prefix: str, name: str) -> GeneratedTable:
        table = child_table(prefix, name)
        columns = {
            "id": ColumnSpec(name="id", kind="id"),
            "parent_id": ColumnSpec(name="parent_id", kind="text", not_null=True),
            "parent_type": ColumnSpec(name="parent_type", kind="text", not_null=True),
            "file_id": ColumnSpec(name="file_id", kind="text", not_null=True),
            "sort": ColumnSpec(name="sort", kind="integer", not_null=True, default=0),
            "alt_override": ColumnSpec(name="alt_override", kind="text"),
        }
        columns.update(_timestamps("created_at"))
        indexes = [
            IndexSpec(name=index_name(table, "parent"), columns=("parent_id", "parent_type")),
            IndexSpec(name=index_name(table, "file_id"), columns=("file_id",)),
        ]
        self._registry.register_relation(prefix, name, FILE_RELATION, table, "parent_id")
        return self._emit(table, "relation", columns, indexes)

    def _child_tables(self, prefix: str, kind: str, name: str, fdef: FieldDefinition) -> List[GeneratedTable]:
        table = child_table(prefix, name)
        fk = owner_foreign_key(kind)
        nested: List[GeneratedTable] = []
        reserved = set(SYSTEM_COLUMNS) | {fk, "sort"}
        columns: Dict[str, ColumnSpec] = {
            "id": ColumnSpec(name="id", kind="id"),
            fk: ColumnSpec(name=fk, kind="text", not_null=True),
            "sort": ColumnSpec(name="sort", kind="integer", not_null=True, default=0),
        }
        self._registry.register_relation(prefix, name, CHILD_RELATION, table, fk)
        columns.update(self._dispatch_fields(table, kind, fdef.item_properties, reserved, nested))
        columns.update(_timestamps("created_at", "updated_at"))
        indexes = [IndexSpec(name=index_name(table, fk), columns=(fk, "sort"))]
        return [self._emit(table, kind, columns, indexes)] + nested

    def _junction_table(self, prefix: str, kind: str, name: str, fdef: FieldDefinition) -> GeneratedTable:
        relation = fdef.relation
        if relation is None or relation.target_table is None:
            raise SchemaCompileError(
                message=f"many-to-many field {name} on {prefix} has no target",
                code="SCHEMA_RELATION_NO_TARGET",
                path=f"{prefix}.{name}",
            )
        table = junction_table(prefix, name)
        fk = owner_foreign_key(kind)
        columns = {
            "id": ColumnSpec(name="id", kind="id"),
            fk: ColumnSpec(name=fk, kind="text", not_null=True),
            "target_id": ColumnSpec(name="target_id", kind="text", not_null=True),
        }
        columns.update(_timestamps("created_at", "updated_at"))
        indexes = [
            IndexSpec(name=index_name(table, "pair"), columns=(fk, "target_id"), unique=True),
            IndexSpec(name=index_name(table, "target_id"), columns=("target_id",)),
        ]
        self._registry.register_relation(prefix, name, JUNCTION_RELATION, relation.target_table, "target_id")
        return self._emit(table, "junction", columns, indexes)

    def _blocks_table(self, prefix: str) -> GeneratedTable:
        table = blocks_table(prefix)
        columns = {
            "id": ColumnSpec(name="id", kind="id"),
            "collection_id": ColumnSpec(name="collection_id", kind="text", not_null=True),
            "block_type": ColumnSpec(name="block_type", kind="text", not_null=True),
            "block_id": ColumnSpec(name="block_id", kind="text", not_null=True),
            "sort": ColumnSpec(name="sort", kind="integer", not_null=True, default=0),
        }
        columns.update(_timestamps("created_at", "updated_at"))
        indexes = [IndexSpec(name=index_name(table, "collection_id"), columns=("collection_id", "sort"))]
        self._registry.register_relation(prefix, "blocks", "blocks", table, "collection_id")
        return self._emit(table, "relation", columns, indexes)

    def _emit(self, name: str, owner_type: str, columns: Dict[str, ColumnSpec], indexes) -> GeneratedTable:
        self._registry.register_table(name, owner_type, list(columns.keys()))
        return GeneratedTable(
            name=name,
            owner_type=owner_type,
            columns=MappingProxyType(dict(columns)),
            indexes=tuple(indexes),
        )
