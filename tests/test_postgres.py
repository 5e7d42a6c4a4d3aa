import os
import sys
import unittest
import uuid

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


def _pg_configured() -> bool:
    return os.getenv("USE_DB") == "1" and os.getenv("DATABASE_PROVIDER", "").lower() in ("postgres", "postgresql") and bool(os.getenv("DATABASE_URL"))


@unittest.skipUnless(_pg_configured(), "postgres not configured (USE_DB=1, DATABASE_PROVIDER=postgres, DATABASE_URL)")
class TestPostgresHydration(unittest.TestCase):
    def setUp(self) -> None:
        # unique slug so repeated runs do not collide with earlier tables
        self.slug = f"gallery_{uuid.uuid4().hex[:8]}"
        self.compiled = SchemaCompiler(
            {"blocks": {self.slug: {"fields": {"images": {"type": "file", "file": {"multiple": True}}}}}},
            strict=True,
        ).compile()
        apply_schema(None, self.compiled, "postgres")
        self.types = DbTypeStore("postgres")
        self.types.upsert_type(self.compiled.type_document("block", self.slug))
        self.content = DbContentStore("postgres")
        self.block_table = f"block_{self.slug}"
        self.images_table = f"block_{self.slug}_images"

    def tearDown(self) -> None:
        with db.get_conn() as conn:
            db.execute(conn, f'drop table if exists "{self.images_table}"', query_name="test.drop")
            db.execute(conn, f'drop table if exists "{self.block_table}"', query_name="test.drop")
            db.execute(conn, "delete from block_types where slug=%s", [self.slug], query_name="test.cleanup")
            db.execute(conn, "delete from files where path like %s", ["/test/%"], query_name="test.cleanup")
        db.close_pool()

    def test_gallery_hydrates(self) -> None:
        with db.get_conn() as conn:
            file_ids = []
            for n in range(3):
                row = db.fetch_one(
                    conn,
                    "insert into files (name, mime_type, path, url) values (%s,%s,%s,%s) returning id",
                    [f"f{n}", "image/png", f"/test/f{n}", f"/u/f{n}"],
                    query_name="test.file",
                )
                file_ids.append(row["id"])
            block = db.fetch_one(conn, f'insert into "{self.block_table}" (title) values (%s) returning id', ["G"], query_name="test.block")
            for sort, file_id in reversed(list(enumerate(file_ids))):
                db.execute(
                    conn,
                    f'insert into "{self.images_table}" (parent_id, parent_type, file_id, sort) values (%s,%s,%s,%s)',
                    [block["id"], "block", file_id, sort],
                    query_name="test.link",
                )
        engine = HydrationEngine(self.content, TypeRegistry(self.types), TableRegistry.from_compiled(self.compiled))
        item = anyio.run(engine.load, "block", self.slug, block["id"])
        self.assertEqual(item["images"], file_ids)

    def test_missing_table_is_translated(self) -> None:
        with self.assertRaises(MissingTableWarning):
            self.content.get_row("block_never_created_table", "x")


if __name__ == "__main__":
    unittest.main()
