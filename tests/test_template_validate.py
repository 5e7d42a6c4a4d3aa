import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.template_normalize import normalize_template_set
from app.template_validate import compile_templates, validate_template_set_raw
from schema_errors import SchemaCompileError


def _codes(issues):
    return {issue["code"] for issue in issues}


class TestTemplateNormalize(unittest.TestCase):
    def test_list_shapes_become_mappings(self) -> None:
        raw = {
            "collections": [
                {
                    "slug": "posts",
                    "fields": [
                        {"name": "status_note", "type": "select", "options": ["needs_review", "done"]},
                        {"id": "cover", "type": "file", "items": {"multiple": True}},
                        {"id": "author_ref", "type": "relation", "relation": {"type": "one-to-one", "targetCollection": "people"}},
                    ],
                }
            ]
        }
        normalized = normalize_template_set(raw)
        posts = normalized["collections"]["posts"]
        self.assertEqual(posts["dataType"], "repeatable")
        self.assertEqual(posts["name"], "Posts")
        fields = posts["fields"]
        self.assertEqual(list(fields.keys()), ["status_note", "cover", "author_ref"])
        self.assertEqual(fields["status_note"]["options"][0], {"value": "needs_review", "label": "Needs Review"})
        self.assertEqual(fields["cover"]["file"], {"multiple": True})
        self.assertNotIn("items", fields["cover"])
        self.assertEqual(fields["author_ref"]["relation"]["kind"], "one-to-one")
        self.assertEqual(normalized["globals"], {})
        self.assertEqual(normalized["blocks"], {})


class TestTemplateValidate(unittest.TestCase):
    def test_valid_set_has_no_errors(self) -> None:
        raw = {
            "collections": {
                "posts": {"fields": {"body": {"type": "richText"}, "tags": {"type": "relation", "relation": {"kind": "many-to-many", "targetCollection": "tags"}}}},
                "tags": {"fields": {}},
            }
        }
        _, errors, warnings = validate_template_set_raw(raw)
        self.assertEqual(errors, [])
        self.assertEqual(warnings, [])

    def test_error_codes(self) -> None:
        raw = {
            "collections": {
                "Bad-Slug": {"fields": {}},
                "posts": {
                    "dataType": "nested",
                    "fields": {
                        "broken": "string",
                        "list": {"type": "array"},
                        "meta": {"type": "object"},
                        "owner": {"type": "relation", "relation": {"kind": "one-to-one"}},
                        "weird": {"type": "relation", "relation": {"kind": "sideways", "targetCollection": "posts"}},
                    },
                },
            },
            "blocks": [{"slug": "hero"}, {"slug": "hero"}],
        }
        _, errors, _ = validate_template_set_raw(raw)
        self.assertEqual(
            _codes(errors),
            {
                "TEMPLATE_SLUG_INVALID",
                "TEMPLATE_DATA_TYPE_INVALID",
                "TEMPLATE_FIELD_INVALID",
                "TEMPLATE_ARRAY_ITEMS_MISSING",
                "TEMPLATE_OBJECT_PROPERTIES_INVALID",
                "TEMPLATE_RELATION_TARGET_MISSING",
                "TEMPLATE_RELATION_KIND_INVALID",
                "TEMPLATE_SLUG_DUPLICATE",
            },
        )

    def test_warnings(self) -> None:
        raw = {
            "collections": {
                "posts": {
                    "options": {"blocks": True},
                    "fields": {
                        "rating": {"type": "stars"},
                        "blocks": {"type": "string"},
                        "created_at": {"type": "date"},
                        "writer": {"type": "relation", "relation": {"kind": "one-to-one", "targetCollection": "people"}},
                    },
                }
            }
        }
        _, errors, warnings = validate_template_set_raw(raw)
        self.assertEqual(errors, [])
        self.assertEqual(_codes(warnings), {"TEMPLATE_FIELD_TYPE_UNKNOWN", "TEMPLATE_FIELD_RESERVED", "TEMPLATE_RELATION_TARGET_UNKNOWN"})
        reserved = [w["path"] for w in warnings if w["code"] == "TEMPLATE_FIELD_RESERVED"]
        self.assertEqual(sorted(reserved), ["collections.posts.fields.blocks", "collections.posts.fields.created_at"])

    def test_nested_item_fields_are_checked(self) -> None:
        raw = {
            "blocks": {
                "faq": {
                    "fields": {
                        "entries": {
                            "type": "array",
                            "items": {"type": "object", "properties": {"sort": {"type": "number"}, "answer": {"type": "array"}}},
                        }
                    }
                }
            }
        }
        _, errors, warnings = validate_template_set_raw(raw)
        self.assertEqual([e["path"] for e in errors], ["blocks.faq.fields.entries.items.properties.answer.items"])
        self.assertEqual([w["code"] for w in warnings], ["TEMPLATE_FIELD_RESERVED"])

    def test_blocks_link_table_name_is_checked(self) -> None:
        slug = "a" * 50
        _, errors, _ = validate_template_set_raw({"collections": {slug: {"options": {"blocks": True}, "fields": {}}}})
        self.assertEqual([(e["code"], e["path"]) for e in errors], [("TEMPLATE_TABLE_NAME_TOO_LONG", f"collections.{slug}.options.blocks")])
        self.assertEqual(errors[0]["detail"], {"table": f"collection_{slug}_blocks"})
        _, errors, _ = validate_template_set_raw({"collections": {slug: {"fields": {}}}})
        self.assertEqual(errors, [])

    def test_compile_templates_raises_with_issues(self) -> None:
        with self.assertRaises(SchemaCompileError) as ctx:
            compile_templates({"collections": {"posts": {"fields": {"list": {"type": "array"}}}}})
        self.assertEqual(ctx.exception.code, "TEMPLATE_INVALID")
        self.assertEqual(_codes(ctx.exception.issues), {"TEMPLATE_ARRAY_ITEMS_MISSING"})

    def test_compile_templates_returns_schema_and_warnings(self) -> None:
        compiled, warnings = compile_templates(
            {
                "collections": {
                    "posts": {"fields": {"writer": {"type": "relation", "relation": {"kind": "one-to-one", "targetCollection": "people"}}}}
                }
            },
            strict=False,
        )
        self.assertIn("collection_posts", compiled.table_names())
        self.assertIn("TEMPLATE_RELATION_TARGET_UNKNOWN", _codes(warnings))
        self.assertIn("SCHEMA_RELATION_TARGET_MISSING", _codes(warnings))


if __name__ == "__main__":
    unittest.main()
