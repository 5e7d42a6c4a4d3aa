"""Group accumulated relation records into emission buckets."""

from __future__ import annotations

from typing import Dict, Iterable, List

from field_tree import junction_table
from metadata_registry import FILE_RELATION, JUNCTION_RELATION, MetadataRegistry, RelationRecord


class RelationGenerator:
    def __init__(self, registry: MetadataRegistry) -> None:
        self._registry = registry

    def generate_organized_relations(self, relations: Iterable[RelationRecord] | None = None) -> Dict[str, List[dict]]:
        records = list(self._registry.relations if relations is None else relations)
        standard: List[dict] = []
        files: List[dict] = []
        junctions: List[dict] = []
        for rel in records:
            if rel.kind == FILE_RELATION:
                files.append(
                    {
                        "table": rel.target_table,
                        "parent": rel.source_table,
                        "field": rel.field_name,
                        "parentKey": rel.foreign_key_column,
                        "typeKey": "parent_type",
                        "fileKey": "file_id",
                        "target": "files",
                    }
                )
            elif rel.kind == JUNCTION_RELATION:
                source_kind = rel.source_table.split("_", 1)[0]
                junctions.append(
                    {
                        "table": junction_table(rel.source_table, rel.field_name),
                        "from": rel.source_table,
                        "to": rel.target_table,
                        "field": rel.field_name,
                        "sourceKey": f"{source_kind}_id",
                        "targetKey": rel.foreign_key_column,
                    }
                )
            else:
                standard.append(rel.to_dict())
        key = lambda item: (item.get("sourceTable") or item.get("parent") or item.get("from"), item.get("fieldName") or item.get("field"))
        return {
            "standard": sorted(standard, key=key),
            "files": sorted(files, key=key),
            "junctions": sorted(junctions, key=key),
        }
