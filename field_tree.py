"""Typed field trees for content templates.

A template's fields arrive as plain dicts (authored templates or the stored schema
document) and are parsed once into frozen ``FieldDefinition`` nodes. The compiler and the
hydration engine both walk these nodes, so the dispatch predicates live here.
"""

from __future__ import annotations

import copy
import hashlib
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Tuple

from sailor.canonical_json import canonical_dumps, canonical_loads


CONTENT_KINDS = ("collection", "global", "block")
DATA_TYPES = ("flat", "repeatable", "relational")
RELATION_KINDS = ("one-to-one", "one-to-many", "many-to-many")
SCALAR_TYPES = {"string", "text", "richText", "number", "boolean", "date", "select", "tags"}
STRUCTURED_TYPES = {"file", "array", "object", "relation", "blocks"}
KNOWN_TYPES = SCALAR_TYPES | STRUCTURED_TYPES
TYPE_ALIASES = {"scalar": "string"}
MAX_IDENTIFIER = 63

_FIELD_KEYS = {"type", "required", "default", "hidden", "unique", "items", "properties", "relation"}

CORE_FIELDS: Dict[str, dict] = {
    "title": {"type": "string", "title": "Title", "required": True, "core": True},
    "slug": {"type": "string", "title": "Slug", "required": True, "unique": True, "core": True},
    "status": {
        "type": "select",
        "title": "Status",
        "options": [
            {"label": "Draft", "value": "draft"},
            {"label": "Published", "value": "published"},
            {"label": "Private", "value": "private"},
            {"label": "Archived", "value": "archived"},
        ],
        "required": True,
        "default": "draft",
        "core": True,
    },
    "author": {"type": "string", "title": "Author", "core": True, "hidden": True},
    "sort": {"type": "number", "title": "Sort Order", "default": 0, "core": True, "hidden": True},
    "parent_id": {"type": "string", "title": "Parent ID", "core": True, "hidden": True},
    "last_modified_by": {"type": "string", "title": "Last Modified By", "core": True, "hidden": True},
}

BLOCK_CORE_FIELDS: Dict[str, dict] = {
    "title": {"type": "string", "title": "Title", "core": True},
    "sort": {"type": "number", "title": "Sort Order", "default": 0, "core": True},
}

SEO_FIELDS: Dict[str, dict] = {
    "meta_title": {"type": "string", "label": "Meta Title"},
    "meta_description": {"type": "text", "label": "Meta Description"},
    "og_title": {"type": "string", "label": "OG Title"},
    "og_description": {"type": "text", "label": "OG Description"},
    "og_image": {"type": "file", "label": "OG Image", "file": {"multiple": False}},
    "canonical_url": {"type": "string", "label": "Canonical URL"},
    "noindex": {"type": "boolean", "label": "No Index", "default": False},
}


class FieldTreeError(ValueError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(f"{message} (path={path})" if path else message)
        self.path = path


def to_snake_case(value: str) -> str:
    return re.sub(r"([A-Z])", r"_\1", value).lower().lstrip("_")


def base_table(kind: str, slug: str) -> str:
    return f"{kind}_{slug}"


def child_table(prefix: str, field_name: str) -> str:
    return f"{prefix}_{to_snake_case(field_name)}"


def junction_table(prefix: str, field_name: str) -> str:
    return f"junction_{prefix}_{to_snake_case(field_name)}"


def blocks_table(prefix: str) -> str:
    return f"{prefix}_blocks"


def index_name(table: str, suffix: str) -> str:
    """`idx_{table}_{suffix}`, shortened with a hash tail when it would exceed the identifier limit."""
    name = f"idx_{table}_{suffix}"
    if len(name) <= MAX_IDENTIFIER:
        return name
    digest = hashlib.sha1(name.encode("utf-8")).hexdigest()[:8]
    return f"{name[: MAX_IDENTIFIER - len(digest) - 1]}_{digest}"


def owner_foreign_key(kind: str) -> str:
    return f"{kind}_id"


@dataclass(frozen=True)
class RelationSpec:
    kind: str
    target_collection: str | None = None
    target_global: str | None = None

    @property
    def target_kind(self) -> str | None:
        if self.target_global:
            return "global"
        if self.target_collection:
            return "collection"
        return None

    @property
    def target_slug(self) -> str | None:
        return self.target_global or self.target_collection

    @property
    def target_table(self) -> str | None:
        kind = self.target_kind
        return base_table(kind, self.target_slug) if kind else None

    def to_dict(self) -> dict:
        out: dict = {"kind": self.kind}
        if self.target_collection:
            out["targetCollection"] = self.target_collection
        if self.target_global:
            out["targetGlobal"] = self.target_global
        return out


@dataclass(frozen=True)
class FieldDefinition:
    type: str
    required: bool = False
    default: Any = None
    hidden: bool = False
    unique: bool = False
    items: "FieldDefinition | None" = None
    properties: Mapping[str, "FieldDefinition"] = field(default_factory=lambda: MappingProxyType({}))
    relation: RelationSpec | None = None
    multiple: bool = False
    extras: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def is_file(self) -> bool:
        return self.type == "file"

    @property
    def is_object_array(self) -> bool:
        return self.type == "array" and self.items is not None and self.items.type == "object"

    @property
    def is_simple_array(self) -> bool:
        return self.type == "array" and not self.is_object_array

    @property
    def is_relation(self) -> bool:
        return self.type == "relation" and self.relation is not None

    @property
    def is_many_to_many(self) -> bool:
        return self.is_relation and self.relation.kind == "many-to-many"

    @property
    def is_single_reference(self) -> bool:
        return self.is_relation and self.relation.kind in ("one-to-one", "one-to-many")

    @property
    def spawns_table(self) -> bool:
        return self.is_file or self.is_object_array or self.is_many_to_many

    @property
    def item_properties(self) -> Mapping[str, "FieldDefinition"]:
        if self.items is None:
            return MappingProxyType({})
        return self.items.properties

    def to_dict(self) -> dict:
        out = copy.deepcopy(dict(self.extras))
        out["type"] = self.type
        if self.required:
            out["required"] = True
        if self.default is not None:
            out["default"] = copy.deepcopy(self.default)
        if self.hidden:
            out["hidden"] = True
        if self.unique:
            out["unique"] = True
        if self.items is not None:
            out["items"] = self.items.to_dict()
        if self.properties:
            out["properties"] = {name: fdef.to_dict() for name, fdef in self.properties.items()}
        if self.relation is not None:
            out["relation"] = self.relation.to_dict()
        if self.type == "file":
            file_cfg = dict(out.get("file") or {})
            file_cfg["multiple"] = self.multiple
            out["file"] = file_cfg
        return out


FieldTree = Mapping[str, FieldDefinition]


def _parse_relation(raw: Any, path: str) -> RelationSpec | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise FieldTreeError("relation must be an object", path)
    kind = raw.get("kind") or raw.get("type")
    if kind not in RELATION_KINDS:
        raise FieldTreeError(f"unknown relation kind: {kind!r}", path)
    target_collection = raw.get("targetCollection")
    target_global = raw.get("targetGlobal")
    return RelationSpec(
        kind=kind,
        target_collection=target_collection if isinstance(target_collection, str) and target_collection else None,
        target_global=target_global if isinstance(target_global, str) and target_global else None,
    )


def parse_field(raw: Any, path: str = "$") -> FieldDefinition:
    if not isinstance(raw, dict):
        raise FieldTreeError("field definition must be an object", path)
    ftype = raw.get("type") or "string"
    if not isinstance(ftype, str):
        raise FieldTreeError("field type must be a string", f"{path}.type")
    ftype = TYPE_ALIASES.get(ftype, ftype)

    items = None
    multiple = False
    raw_items = raw.get("items")
    if ftype == "file":
        # multiplicity lives under `file`, or under `items` in older templates
        file_cfg = raw.get("file") if isinstance(raw.get("file"), dict) else {}
        items_cfg = raw_items if isinstance(raw_items, dict) else {}
        multiple = bool(file_cfg.get("multiple", items_cfg.get("multiple", False)))
    elif raw_items is not None:
        items = parse_field(raw_items, f"{path}.items")

    raw_props = raw.get("properties")
    properties: dict = {}
    if raw_props is not None:
        if not isinstance(raw_props, dict):
            raise FieldTreeError("properties must be an object", f"{path}.properties")
        for name, sub in raw_props.items():
            properties[name] = parse_field(sub, f"{path}.properties.{name}")

    relation = _parse_relation(raw.get("relation"), f"{path}.relation") if ftype == "relation" else None
    extras = {k: copy.deepcopy(v) for k, v in raw.items() if k not in _FIELD_KEYS}
    if ftype == "file":
        source = raw.get("file") if isinstance(raw.get("file"), dict) else raw_items if isinstance(raw_items, dict) else {}
        file_cfg = {k: copy.deepcopy(v) for k, v in source.items() if k != "multiple"}
        file_cfg["multiple"] = multiple
        extras["file"] = file_cfg

    return FieldDefinition(
        type=ftype,
        required=bool(raw.get("required", False)),
        default=copy.deepcopy(raw.get("default")),
        hidden=bool(raw.get("hidden", False)),
        unique=bool(raw.get("unique", False)),
        items=items,
        properties=MappingProxyType(properties),
        relation=relation,
        multiple=multiple,
        extras=MappingProxyType(extras),
    )


def parse_field_tree(raw: Any, path: str = "$") -> FieldTree:
    if not isinstance(raw, dict):
        raise FieldTreeError("field tree must be an object keyed by field name", path)
    return MappingProxyType({name: parse_field(fdef, f"{path}.{name}") for name, fdef in raw.items()})


def field_tree_to_dict(tree: FieldTree) -> dict:
    return {name: fdef.to_dict() for name, fdef in tree.items()}


def dump_schema_document(tree: FieldTree) -> str:
    return canonical_dumps(field_tree_to_dict(tree))


def load_schema_document(text: str | bytes | dict | None) -> FieldTree:
    """Parse a stored schema document; raises FieldTreeError on any malformation."""
    if text is None or text == "":
        raise FieldTreeError("schema document is empty")
    if isinstance(text, dict):
        return parse_field_tree(text)
    try:
        raw = canonical_loads(text)
    except ValueError as exc:
        raise FieldTreeError(f"schema document is not valid JSON: {exc}") from exc
    return parse_field_tree(raw)


def merge_core_fields(kind: str, data_type: str, options: Mapping[str, Any], declared: Mapping[str, Any]) -> dict:
    """Return raw field dicts with core fields injected under the declared ones.

    A declared entry that shares a core field's name is merged key by key over the core
    entry, so a partial override such as ``{"hidden": True}`` keeps the core type.
    """
    if kind == "block":
        core = BLOCK_CORE_FIELDS
    elif kind == "global" and data_type == "flat":
        core = {}
    else:
        core = CORE_FIELDS

    merged: dict = {name: copy.deepcopy(fdef) for name, fdef in core.items()}
    if kind == "collection" and options.get("seo"):
        for name, fdef in SEO_FIELDS.items():
            merged[name] = copy.deepcopy(fdef)
    for name, fdef in declared.items():
        if name in merged and isinstance(fdef, dict):
            merged[name] = {**merged[name], **copy.deepcopy(fdef)}
        else:
            merged[name] = copy.deepcopy(fdef)
    return merged


@dataclass(frozen=True)
class TemplateDefinition:
    kind: str
    slug: str
    name: str
    data_type: str
    options: Mapping[str, Any]
    fields: FieldTree
    declared: Tuple[str, ...] = ()
    description: str = ""

    @property
    def table_name(self) -> str:
        return base_table(self.kind, self.slug)

    @property
    def foreign_key(self) -> str:
        return owner_foreign_key(self.kind)

    @property
    def has_blocks(self) -> bool:
        return self.kind == "collection" and bool(self.options.get("blocks"))

    def schema_document(self) -> str:
        return dump_schema_document(self.fields)


def _template_name(raw: dict, slug: str) -> str:
    name = raw.get("name")
    if isinstance(name, dict):
        return str(name.get("plural") or name.get("singular") or slug)
    if isinstance(name, str) and name:
        return name
    return slug


def parse_template(kind: str, slug: str, raw: Mapping[str, Any]) -> TemplateDefinition:
    if kind not in CONTENT_KINDS:
        raise FieldTreeError(f"unknown content kind: {kind!r}")
    options = raw.get("options") if isinstance(raw.get("options"), dict) else {}
    data_type = raw.get("dataType") or "repeatable"
    declared = raw.get("fields") or {}
    if not isinstance(declared, dict):
        raise FieldTreeError("fields must be an object keyed by field name", f"{kind}.{slug}.fields")
    merged = merge_core_fields(kind, data_type, options, declared)
    return TemplateDefinition(
        kind=kind,
        slug=slug,
        name=_template_name(dict(raw), slug),
        data_type=data_type,
        options=MappingProxyType(copy.deepcopy(dict(options))),
        fields=parse_field_tree(merged, f"{kind}.{slug}.fields"),
        declared=tuple(declared.keys()),
        description=str(raw.get("description") or ""),
    )


def template_options_json(template: TemplateDefinition) -> str:
    return canonical_dumps(dict(template.options))
