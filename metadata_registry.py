"""Per-compile bookkeeping of generated tables and the relations between them."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from schema_errors import Issue, SchemaCompileError


logger = logging.getLogger("sailor.compiler")

OWNER_TYPES = ("core", "collection", "global", "block", "relation", "junction")

# relation record kinds
FILE_RELATION = "file"
CHILD_RELATION = "child"
JUNCTION_RELATION = "many-to-many"


@dataclass(frozen=True)
class TableMetadata:
    table_name: str
    owner_type: str
    field_names: Tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {"tableName": self.table_name, "ownerType": self.owner_type, "fieldNames": list(self.field_names)}


@dataclass(frozen=True)
class RelationRecord:
    source_table: str
    field_name: str
    kind: str
    target_table: str
    foreign_key_column: str

    def to_dict(self) -> dict:
        return {
            "sourceTable": self.source_table,
            "fieldName": self.field_name,
            "kind": self.kind,
            "targetTable": self.target_table,
            "foreignKeyColumn": self.foreign_key_column,
        }


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


@dataclass
class MetadataRegistry:
    """Single-writer record of one compile pass. Not persisted."""

    tables: Dict[str, TableMetadata] = field(default_factory=dict)
    relations: List[RelationRecord] = field(default_factory=list)

    def register_table(self, table_name: str, owner_type: str, field_names=()) -> TableMetadata:
        if owner_type not in OWNER_TYPES:
            raise SchemaCompileError(
                message=f"unknown owner type {owner_type!r} for {table_name}",
                code="SCHEMA_OWNER_TYPE_INVALID",
                path=table_name,
            )
        existing = self.tables.get(table_name)
        if existing is not None:
            raise SchemaCompileError(
                message=f"table {table_name} generated twice",
                code="SCHEMA_TABLE_CONFLICT",
                path=table_name,
                issues=[_issue("SCHEMA_TABLE_CONFLICT", "table name collision", table_name,
                               {"first": existing.owner_type, "second": owner_type})],
            )
        meta = TableMetadata(table_name=table_name, owner_type=owner_type, field_names=tuple(field_names))
        self.tables[table_name] = meta
        return meta

    def register_relation(
        self,
        source_table: str,
        field_name: str,
        kind: str,
        target_table: str,
        foreign_key_column: str,
    ) -> RelationRecord:
        record = RelationRecord(
            source_table=source_table,
            field_name=field_name,
            kind=kind,
            target_table=target_table,
            foreign_key_column=foreign_key_column,
        )
        self.relations.append(record)
        return record

    def has_table(self, table_name: str) -> bool:
        return table_name in self.tables

    def validate_relations(self, strict: bool = False) -> Tuple[List[Issue], List[RelationRecord]]:
        """Check relation endpoints against registered tables.

        Returns the issues found and the relations whose endpoints all exist. In strict mode
        any issue raises ``SchemaCompileError`` instead.
        """
        issues: List[Issue] = []
        valid: List[RelationRecord] = []
        for rel in self.relations:
            missing = [name for name in (rel.source_table, rel.target_table) if not self.has_table(name)]
            if not missing:
                valid.append(rel)
                continue
            issues.append(
                _issue(
                    "SCHEMA_RELATION_TARGET_MISSING",
                    f"relation {rel.source_table}.{rel.field_name} references unknown table",
                    f"{rel.source_table}.{rel.field_name}",
                    {"missing": missing, "kind": rel.kind},
                )
            )
        if issues and strict:
            raise SchemaCompileError(
                message="relations reference unregistered tables",
                code="SCHEMA_RELATION_TARGET_MISSING",
                issues=issues,
            )
        for item in issues:
            logger.warning("relation_dropped %s", item)
        return issues, valid
