"""Template normalization for legacy and canonical template shapes."""

from __future__ import annotations

from typing import Any, Dict


BUCKETS = ("collections", "globals", "blocks")


def _title_case(value: str) -> str:
    parts = [p for p in value.replace("-", "_").split("_") if p]
    return " ".join(p[:1].upper() + p[1:] for p in parts) if parts else value


def _normalize_options(options: Any) -> Any:
    if isinstance(options, list) and options and all(isinstance(opt, str) for opt in options):
        return [{"value": opt, "label": _title_case(opt)} for opt in options]
    return options


def _normalize_field(fdef: Any) -> Any:
    if not isinstance(fdef, dict):
        return fdef
    item = dict(fdef)
    ftype = item.get("type")
    if ftype == "select" and "options" in item:
        item["options"] = _normalize_options(item.get("options"))
    if ftype == "relation" and isinstance(item.get("relation"), dict):
        relation = dict(item["relation"])
        if "kind" not in relation and "type" in relation:
            relation["kind"] = relation.pop("type")
        item["relation"] = relation
    if ftype == "file":
        file_cfg = dict(item.get("file")) if isinstance(item.get("file"), dict) else {}
        items = item.get("items")
        if "multiple" not in file_cfg and isinstance(items, dict) and "multiple" in items:
            file_cfg["multiple"] = bool(items.get("multiple"))
        file_cfg.setdefault("multiple", False)
        item["file"] = file_cfg
        item.pop("items", None)
    elif isinstance(item.get("items"), dict):
        item["items"] = _normalize_field(item["items"])
    if isinstance(item.get("properties"), (dict, list)):
        item["properties"] = normalize_fields(item["properties"])
    return item


def normalize_fields(fields: Any) -> Any:
    """Accept a mapping (canonical) or a list of ``{id|name, ...}`` entries."""
    if isinstance(fields, dict):
        return {fid: _normalize_field(fdef) for fid, fdef in fields.items()}
    if isinstance(fields, list):
        normalized: Dict[str, Any] = {}
        for f in fields:
            if not isinstance(f, dict):
                continue
            fid = f.get("id") or f.get("name")
            if not isinstance(fid, str) or not fid:
                continue
            item = {k: v for k, v in f.items() if k not in ("id", "name")}
            normalized[fid] = _normalize_field(item)
        return normalized
    return fields


def normalize_template(raw: Any, slug: str | None = None) -> dict:
    if not isinstance(raw, dict):
        return {}
    item = dict(raw)
    if slug is not None:
        item["slug"] = slug
    name = item.get("name")
    if not name and isinstance(item.get("slug"), str):
        item["name"] = _title_case(item["slug"])
    item["dataType"] = item.get("dataType") or item.get("data_type") or "repeatable"
    item.pop("data_type", None)
    if not isinstance(item.get("options"), dict):
        item["options"] = {}
    item["fields"] = normalize_fields(item.get("fields") if item.get("fields") is not None else {})
    return item


def _normalize_bucket(bucket: Any) -> dict:
    if isinstance(bucket, dict):
        return {slug: normalize_template(tpl, slug) for slug, tpl in bucket.items() if isinstance(tpl, dict)}
    if isinstance(bucket, list):
        normalized = {}
        for tpl in bucket:
            if not isinstance(tpl, dict):
                continue
            slug = tpl.get("slug") or tpl.get("id")
            if isinstance(slug, str) and slug:
                normalized[slug] = normalize_template(tpl, slug)
        return normalized
    return {}


def normalize_template_set(raw: Any) -> dict:
    if not isinstance(raw, dict):
        return {bucket: {} for bucket in BUCKETS}
    return {bucket: _normalize_bucket(raw.get(bucket)) for bucket in BUCKETS}
