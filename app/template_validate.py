"""Template set validation ahead of schema compilation."""

from __future__ import annotations

import re
from typing import Any, Dict, List, Tuple

from app.template_normalize import BUCKETS, normalize_template_set
from field_tree import (
    DATA_TYPES,
    KNOWN_TYPES,
    MAX_IDENTIFIER,
    RELATION_KINDS,
    TYPE_ALIASES,
    blocks_table,
    child_table,
    junction_table,
)
from schema_compiler import CompiledSchema, SchemaCompiler
from schema_errors import SchemaCompileError


Issue = Dict[str, Any]

SLUG_RE = re.compile(r"^[a-z][a-z0-9_]*$")
FIELD_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
BUCKET_KINDS = {"collections": "collection", "globals": "global", "blocks": "block"}
TARGET_BUCKETS = {"targetCollection": "collections", "targetGlobal": "globals"}


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _get(obj: dict, key: str, default=None):
    return obj.get(key, default) if isinstance(obj, dict) else default


def _duplicate_slugs(raw: Any) -> Dict[str, List[str]]:
    dupes: Dict[str, List[str]] = {}
    if not isinstance(raw, dict):
        return dupes
    for bucket in BUCKETS:
        entries = raw.get(bucket)
        if not isinstance(entries, list):
            continue
        seen: set[str] = set()
        for tpl in entries:
            slug = _get(tpl, "slug") or _get(tpl, "id")
            if not isinstance(slug, str):
                continue
            if slug in seen:
                dupes.setdefault(bucket, []).append(slug)
            seen.add(slug)
    return dupes


def _check_table_name(errors: list[Issue], table: str, path: str) -> None:
    if len(table) > MAX_IDENTIFIER:
        errors.append(
            _issue("TEMPLATE_TABLE_NAME_TOO_LONG", f"generated table name exceeds {MAX_IDENTIFIER} characters", path, {"table": table})
        )


def _validate_relation(
    fdef: dict,
    path: str,
    declared: Dict[str, set],
    errors: list[Issue],
    warnings: list[Issue],
) -> None:
    relation = _get(fdef, "relation")
    if not isinstance(relation, dict):
        errors.append(_issue("TEMPLATE_RELATION_INVALID", "relation fields require a relation object", f"{path}.relation"))
        return
    kind = relation.get("kind")
    if kind not in RELATION_KINDS:
        errors.append(
            _issue("TEMPLATE_RELATION_KIND_INVALID", f"unknown relation kind: {kind}", f"{path}.relation.kind", {"allowed": list(RELATION_KINDS)})
        )
    targets = [(key, relation.get(key)) for key in TARGET_BUCKETS if relation.get(key)]
    if not targets:
        errors.append(_issue("TEMPLATE_RELATION_TARGET_MISSING", "relation requires targetCollection or targetGlobal", f"{path}.relation"))
        return
    key, target = targets[0]
    if target not in declared.get(TARGET_BUCKETS[key], set()):
        warnings.append(
            _issue("TEMPLATE_RELATION_TARGET_UNKNOWN", f"relation target {target} is not declared", f"{path}.relation.{key}", {"target": target})
        )


def _validate_fields(
    fields: Any,
    path: str,
    table: str,
    reserved: set[str],
    declared: Dict[str, set],
    errors: list[Issue],
    warnings: list[Issue],
    child_key: str,
) -> None:
    if not isinstance(fields, dict):
        errors.append(_issue("TEMPLATE_FIELDS_INVALID", "fields must be an object keyed by field name", path))
        return
    for name, fdef in fields.items():
        fpath = f"{path}.{name}"
        if not isinstance(name, str) or not FIELD_NAME_RE.match(name):
            errors.append(_issue("TEMPLATE_FIELD_NAME_INVALID", f"invalid field name: {name}", fpath))
            continue
        if not isinstance(fdef, dict):
            errors.append(_issue("TEMPLATE_FIELD_INVALID", "field definition must be an object", fpath))
            continue
        ftype = fdef.get("type") or "string"
        ftype = TYPE_ALIASES.get(ftype, ftype) if isinstance(ftype, str) else ftype
        if not isinstance(ftype, str):
            errors.append(_issue("TEMPLATE_FIELD_TYPE_INVALID", "field type must be a string", f"{fpath}.type"))
            continue
        if ftype not in KNOWN_TYPES:
            warnings.append(_issue("TEMPLATE_FIELD_TYPE_UNKNOWN", f"unknown field type {ftype}; stored as text", f"{fpath}.type"))

        items = fdef.get("items")
        is_object_array = ftype == "array" and isinstance(items, dict) and items.get("type") == "object"
        is_m2m = ftype == "relation" and _get(_get(fdef, "relation"), "kind") == "many-to-many"
        spawns = ftype == "file" or is_object_array or is_m2m
        if name in reserved and not spawns:
            warnings.append(_issue("TEMPLATE_FIELD_RESERVED", f"field {name} collides with a system column", fpath))

        if ftype == "relation":
            _validate_relation(fdef, fpath, declared, errors, warnings)
        if ftype == "file":
            _check_table_name(errors, child_table(table, name), fpath)
        if is_m2m:
            _check_table_name(errors, junction_table(table, name), fpath)
        if ftype == "array":
            if not isinstance(items, dict):
                errors.append(_issue("TEMPLATE_ARRAY_ITEMS_MISSING", "array fields require an items definition", f"{fpath}.items"))
            elif is_object_array:
                props = items.get("properties")
                if not isinstance(props, dict):
                    errors.append(
                        _issue("TEMPLATE_OBJECT_PROPERTIES_INVALID", "object items require a properties mapping", f"{fpath}.items.properties")
                    )
                else:
                    sub_table = child_table(table, name)
                    _check_table_name(errors, sub_table, fpath)
                    _validate_fields(
                        props,
                        f"{fpath}.items.properties",
                        sub_table,
                        {"id", "created_at", "updated_at", "sort", child_key},
                        declared,
                        errors,
                        warnings,
                        child_key,
                    )
        if ftype == "object" and not isinstance(fdef.get("properties"), dict):
            errors.append(_issue("TEMPLATE_OBJECT_PROPERTIES_INVALID", "object fields require a properties mapping", f"{fpath}.properties"))


def validate_template_set(templates: dict, duplicates: Dict[str, List[str]] | None = None) -> Tuple[List[Issue], List[Issue]]:
    errors: list[Issue] = []
    warnings: list[Issue] = []

    if not isinstance(templates, dict):
        errors.append(_issue("TEMPLATE_SET_INVALID", "template set must be an object", None))
        return errors, warnings

    for bucket, slugs in (duplicates or {}).items():
        for slug in slugs:
            errors.append(_issue("TEMPLATE_SLUG_DUPLICATE", f"duplicate slug {slug}", f"{bucket}.{slug}"))

    declared = {bucket: set((templates.get(bucket) or {}).keys()) for bucket in BUCKETS}
    for bucket in BUCKETS:
        kind = BUCKET_KINDS[bucket]
        for slug, tpl in (templates.get(bucket) or {}).items():
            path = f"{bucket}.{slug}"
            if not isinstance(slug, str) or not SLUG_RE.match(slug):
                errors.append(_issue("TEMPLATE_SLUG_INVALID", "slug must match ^[a-z][a-z0-9_]*$", f"{path}.slug", {"slug": slug}))
                continue
            table = f"{kind}_{slug}"
            _check_table_name(errors, table, path)
            data_type = _get(tpl, "dataType")
            if data_type not in DATA_TYPES:
                errors.append(
                    _issue("TEMPLATE_DATA_TYPE_INVALID", f"unknown dataType {data_type}", f"{path}.dataType", {"allowed": list(DATA_TYPES)})
                )
            reserved = {"id", "created_at", "updated_at"}
            if kind == "block":
                reserved.add("collection_id")
            if kind == "collection" and _get(_get(tpl, "options"), "blocks"):
                reserved.add("blocks")
                _check_table_name(errors, blocks_table(table), f"{path}.options.blocks")
            _validate_fields(_get(tpl, "fields"), f"{path}.fields", table, reserved, declared, errors, warnings, f"{kind}_id")
    return errors, warnings


def validate_template_set_raw(raw: dict) -> tuple[dict, list[Issue], list[Issue]]:
    normalized = normalize_template_set(raw)
    errors, warnings = validate_template_set(normalized, duplicates=_duplicate_slugs(raw))
    return normalized, errors, warnings


def compile_templates(raw: dict, strict: bool | None = None) -> tuple[CompiledSchema, list[Issue]]:
    """Normalize, validate and compile; validation errors raise ``SchemaCompileError``."""
    normalized, errors, warnings = validate_template_set_raw(raw)
    if errors:
        raise SchemaCompileError(
            message=f"template set has {len(errors)} error(s)",
            code="TEMPLATE_INVALID",
            issues=errors,
        )
    compiled = SchemaCompiler(normalized, strict=strict).compile()
    return compiled, warnings + list(compiled.warnings)
