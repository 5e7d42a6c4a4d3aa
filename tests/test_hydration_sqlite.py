import os
import sys
import unittest
from functools import partial

import anyio


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app import db
from app.stores_db import DbContentStore, DbTypeStore, apply_schema
from hydration import HydrationEngine
from schema_compiler import SchemaCompiler
from schema_errors import MissingTableWarning
from table_registry import TableRegistry
from type_registry import TypeRegistry


TEMPLATES = {
    "collections": {
        "posts": {
            "fields": {
                "featured": {"type": "boolean"},
                "links": {"type": "array", "items": {"type": "object", "properties": {"label": {"type": "string"}}}},
                "categories": {"type": "relation", "relation": {"kind": "many-to-many", "targetCollection": "categories"}},
            }
        },
        "categories": {"fields": {}},
    },
    "blocks": {"gallery": {"fields": {"images": {"type": "file", "file": {"multiple": True}}}}},
}


def _insert(table: str, row: dict) -> None:
    cols = ", ".join(f'"{name}"' for name in row)
    marks = ", ".join(["%s"] * len(row))
    with db.get_conn() as conn:
        db.execute(conn, f'insert into "{table}" ({cols}) values ({marks})', list(row.values()), query_name="test.insert")


class TestSqliteHydration(unittest.TestCase):
    def setUp(self) -> None:
        self._env = {key: os.environ.get(key) for key in ("DATABASE_PROVIDER", "DATABASE_URL")}
        os.environ["DATABASE_PROVIDER"] = "sqlite"
        os.environ["DATABASE_URL"] = "file::memory:"
        db.close_pool()
        self.compiled = SchemaCompiler(TEMPLATES, strict=True).compile()
        self.statement_count = apply_schema(None, self.compiled, "sqlite")
        self.types = DbTypeStore("sqlite")
        self.types.sync_types(self.compiled.type_documents)
        self.content = DbContentStore("sqlite")
        self.engine = HydrationEngine(self.content, TypeRegistry(self.types), TableRegistry.from_compiled(self.compiled))

        for file_id in ("f1", "f2", "f3"):
            _insert(
                "files",
                {"id": file_id, "name": file_id, "mime_type": "image/jpeg", "path": f"/p/{file_id}", "url": f"/u/{file_id}", "alt": file_id},
            )

    def tearDown(self) -> None:
        db.close_pool()
        for key, value in self._env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def test_schema_applies_twice(self) -> None:
        self.assertEqual(apply_schema(None, self.compiled, "sqlite"), self.statement_count)
        names = self.content.table_names()
        for table in ("files", "block_gallery_images", "collection_posts_links", "junction_collection_posts_categories"):
            self.assertIn(table, names)

    def test_gallery_files(self) -> None:
        _insert("block_gallery", {"id": "b1", "title": "Gallery"})
        for file_id, sort, alt in (("f2", 1, "custom"), ("f3", 2, None), ("f1", 0, None)):
            _insert(
                "block_gallery_images",
                {"parent_id": "b1", "parent_type": "block", "file_id": file_id, "sort": sort, "alt_override": alt},
            )
        row = self.content.get_row("block_gallery", "b1")
        self.assertIsInstance(row["created_at"], int)
        result = anyio.run(self.engine.hydrate, row, "block", "gallery")
        self.assertEqual(result["images"], ["f1", "f2", "f3"])
        full = anyio.run(partial(self.engine.hydrate, row, "block", "gallery", load_full_objects=True))
        self.assertEqual([f["alt"] for f in full["images"]], ["f1", "custom", "f3"])

    def test_post_relations(self) -> None:
        _insert("collection_posts", {"id": "p1", "title": "Hello", "slug": "hello", "featured": 1})
        _insert("collection_categories", {"id": "c1", "title": "News", "slug": "news"})
        _insert("collection_categories", {"id": "c2", "title": "Tech", "slug": "tech"})
        _insert("junction_collection_posts_categories", {"collection_id": "p1", "target_id": "c2"})
        _insert("junction_collection_posts_categories", {"collection_id": "p1", "target_id": "c1"})
        for label, sort in (("second", 1), ("first", 0)):
            _insert("collection_posts_links", {"collection_id": "p1", "label": label, "sort": sort})

        item = anyio.run(self.engine.load, "collection", "posts", "p1")
        self.assertIs(item["featured"], True)
        self.assertEqual(item["status"], "draft")
        self.assertEqual([link["label"] for link in item["links"]], ["first", "second"])
        self.assertEqual({c["slug"] for c in item["categories"]}, {"news", "tech"})

    def test_dropped_table_empties_field(self) -> None:
        _insert("collection_posts", {"id": "p1", "title": "Hello", "slug": "hello"})
        with db.get_conn() as conn:
            db.execute(conn, 'drop table "collection_posts_links"', query_name="test.drop")
        with self.assertLogs("sailor.hydration", level="WARNING"):
            items = anyio.run(self.engine.list, "collection", "posts")
        self.assertEqual(len(items), 1)
        self.assertEqual(items[0]["links"], [])
        self.assertEqual(items[0]["categories"], [])

    def test_missing_table_is_translated(self) -> None:
        with self.assertRaises(MissingTableWarning) as ctx:
            self.content.get_row("collection_ghosts", "x")
        self.assertEqual(ctx.exception.table, "collection_ghosts")

    def test_type_store_sync(self) -> None:
        doc = self.types.get_type("block", "gallery")
        self.assertEqual(doc["version"], self.compiled.type_document("block", "gallery")["version"])
        self.assertIn('"images"', doc["schema"])
        result = self.types.sync_types([self.compiled.type_document("block", "gallery")])
        self.assertEqual(result["upserted"], ["block:gallery"])
        self.assertEqual(sorted(result["removed"]), ["collection:categories", "collection:posts"])
        self.assertEqual([t["slug"] for t in self.types.list_types("collection")], [])


if __name__ == "__main__":
    unittest.main()
