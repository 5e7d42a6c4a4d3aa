"""Template set -> compiled relational schema and stored type documents."""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Tuple

from field_tree import FieldTreeError, TemplateDefinition, parse_template, template_options_json
from metadata_registry import MetadataRegistry
from relation_generator import RelationGenerator
from schema_errors import Issue, SchemaCompileError
from table_generator import ColumnSpec, GeneratedTable, IndexSpec, TableGenerator

from sailor.schema_hash import schema_hash


logger = logging.getLogger("sailor.compiler")

# emission order; slugs are sorted inside each kind
KIND_ORDER: Tuple[Tuple[str, str], ...] = (("globals", "global"), ("collections", "collection"), ("blocks", "block"))


def _col(name: str, kind: str = "text", not_null: bool = False, unique: bool = False, default: Any = None) -> ColumnSpec:
    return ColumnSpec(name=name, kind=kind, not_null=not_null, unique=unique, default=default)


def _core(name: str, columns: List[ColumnSpec], indexes: List[Tuple[str, Tuple[str, ...], bool]], updated: bool = True) -> GeneratedTable:
    cols: Dict[str, ColumnSpec] = {"id": _col("id", "id")}
    for spec in columns:
        cols[spec.name] = spec
    cols["created_at"] = _col("created_at", "timestamp", not_null=True)
    if updated:
        cols["updated_at"] = _col("updated_at", "timestamp", not_null=True)
    return GeneratedTable(
        name=name,
        owner_type="core",
        columns=MappingProxyType(cols),
        indexes=tuple(IndexSpec(name=f"{name}_{suffix}", columns=cols_, unique=unique) for suffix, cols_, unique in indexes),
    )


def _type_table(kind: str) -> GeneratedTable:
    return _core(
        f"{kind}_types",
        [
            _col("name", not_null=True),
            _col("slug", not_null=True, unique=True),
            _col("description"),
            _col("data_type", not_null=True, default="repeatable"),
            _col("schema", "json", not_null=True),
            _col("options", "json"),
            _col("version"),
        ],
        [],
    )


def core_tables() -> List[GeneratedTable]:
    return [
        _core(
            "files",
            [
                _col("name", not_null=True),
                _col("mime_type", not_null=True),
                _col("size", "integer"),
                _col("path", not_null=True),
                _col("url", not_null=True),
                _col("hash"),
                _col("alt"),
                _col("title"),
                _col("description"),
                _col("author"),
            ],
            [
                ("name_idx", ("name",), False),
                ("mime_type_idx", ("mime_type",), False),
                ("created_at_idx", ("created_at",), False),
                ("hash_idx", ("hash",), False),
            ],
        ),
        _core(
            "users",
            [
                _col("email", not_null=True, unique=True),
                _col("name"),
                _col("password"),
                _col("email_verified", "boolean", default=0),
                _col("image"),
                _col("role"),
                _col("banned", "boolean", default=0),
            ],
            [("role_idx", ("role",), False)],
        ),
        _core(
            "roles",
            [_col("name", not_null=True, unique=True), _col("permissions", "json", not_null=True)],
            [],
        ),
        _core(
            "tags",
            [_col("name", not_null=True), _col("slug", not_null=True), _col("scope")],
            [
                ("name_idx", ("name",), False),
                ("slug_idx", ("slug",), False),
                ("scope_idx", ("scope",), False),
                ("name_scope_unique_idx", ("name", "scope"), True),
            ],
        ),
        _core(
            "taggables",
            [
                _col("tag_id", not_null=True),
                _col("taggable_type", not_null=True),
                _col("taggable_id", not_null=True),
            ],
            [
                ("tag_id_idx", ("tag_id",), False),
                ("composite_idx", ("taggable_type", "taggable_id"), False),
                ("unique_idx", ("tag_id", "taggable_type", "taggable_id"), True),
            ],
            updated=False,
        ),
        _core(
            "settings",
            [_col("key", not_null=True, unique=True), _col("value", "json"), _col("category")],
            [("category_idx", ("category",), False)],
        ),
        _type_table("collection"),
        _type_table("global"),
        _type_table("block"),
    ]


@dataclass(frozen=True)
class CompiledSchema:
    tables: Tuple[GeneratedTable, ...]
    relations: Mapping[str, List[dict]]
    type_documents: Tuple[dict, ...]
    templates: Tuple[TemplateDefinition, ...] = ()
    warnings: Tuple[Issue, ...] = ()

    def table(self, name: str) -> GeneratedTable | None:
        for table in self.tables:
            if table.name == name:
                return table
        return None

    def table_names(self) -> List[str]:
        return [table.name for table in self.tables]

    def type_document(self, kind: str, slug: str) -> dict | None:
        for doc in self.type_documents:
            if doc["kind"] == kind and doc["slug"] == slug:
                return dict(doc)
        return None

    def summary(self) -> dict:
        by_owner: Dict[str, int] = {}
        for table in self.tables:
            by_owner[table.owner_type] = by_owner.get(table.owner_type, 0) + 1
        return {
            "tables": len(self.tables),
            "by_owner": dict(sorted(by_owner.items())),
            "relations": {bucket: len(items) for bucket, items in self.relations.items()},
            "types": len(self.type_documents),
            "warnings": len(self.warnings),
        }

    def to_document(self) -> dict:
        return {
            "tables": [table.to_dict() for table in self.tables],
            "relations": {bucket: list(items) for bucket, items in self.relations.items()},
            "types": [dict(doc) for doc in self.type_documents],
            "summary": self.summary(),
            "warnings": list(self.warnings),
        }


def _strict_default() -> bool:
    return os.getenv("SAILOR_SCHEMA_STRICT", "").strip().lower() in ("1", "true", "yes")


def type_document(template: TemplateDefinition) -> dict:
    schema = template.schema_document()
    return {
        "kind": template.kind,
        "slug": template.slug,
        "name": template.name,
        "description": template.description,
        "data_type": template.data_type,
        "schema": schema,
        "options": template_options_json(template),
        "version": schema_hash(schema),
    }


class SchemaCompiler:
    """Compile a template set keyed ``collections`` / ``globals`` / ``blocks`` -> slug -> template."""

    def __init__(self, templates: Mapping[str, Mapping[str, Any]] | None = None, strict: bool | None = None) -> None:
        self._templates = templates or {}
        self._strict = _strict_default() if strict is None else bool(strict)

    def _parse_all(self) -> List[TemplateDefinition]:
        parsed: List[TemplateDefinition] = []
        for bucket, kind in KIND_ORDER:
            group = self._templates.get(bucket) or {}
            for slug in sorted(group.keys()):
                try:
                    parsed.append(parse_template(kind, slug, group[slug]))
                except FieldTreeError as exc:
                    raise SchemaCompileError(
                        message=str(exc),
                        code="SCHEMA_FIELD_INVALID",
                        path=exc.path or f"{bucket}.{slug}",
                    ) from exc
        return parsed

    def compile(self) -> CompiledSchema:
        started = time.perf_counter()
        templates = self._parse_all()
        registry = MetadataRegistry()
        tables: List[GeneratedTable] = []
        for table in core_tables():
            registry.register_table(table.name, "core", table.column_names)
            tables.append(table)

        generator = TableGenerator(registry)
        for template in templates:
            tables.extend(generator.generate_tables(template.slug, template))

        issues, valid = registry.validate_relations(strict=self._strict)
        relations = RelationGenerator(registry).generate_organized_relations(valid)
        compiled = CompiledSchema(
            tables=tuple(tables),
            relations=MappingProxyType(relations),
            type_documents=tuple(type_document(t) for t in templates),
            templates=tuple(templates),
            warnings=tuple(issues),
        )
        summary = compiled.summary()
        summary["ms"] = round((time.perf_counter() - started) * 1000, 2)
        summary["strict"] = self._strict
        logger.info("schema_compiled %s", summary)
        return compiled
