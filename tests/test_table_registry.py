import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from schema_compiler import SchemaCompiler
from schema_errors import MissingTableWarning
from table_registry import TableRegistry


class TestTableRegistry(unittest.TestCase):
    def test_from_compiled(self) -> None:
        compiled = SchemaCompiler({"blocks": {"gallery": {"fields": {"images": {"type": "file", "file": {"multiple": True}}}}}}).compile()
        registry = TableRegistry.from_compiled(compiled)
        self.assertEqual(len(registry), len(compiled.tables))
        self.assertEqual(registry.names(), sorted(compiled.table_names()))
        self.assertIn("block_gallery_images", registry)
        handle = registry.require("block_gallery_images")
        self.assertEqual(handle.owner_type, "relation")
        self.assertIn("file_id", handle.columns)

    def test_require_unknown_table(self) -> None:
        registry = TableRegistry.from_names(["collection_posts"])
        self.assertNotIn("collection_pages", registry)
        self.assertEqual(registry.require("collection_posts").owner_type, "unknown")
        with self.assertRaises(MissingTableWarning) as ctx:
            registry.require("collection_pages")
        self.assertEqual(ctx.exception.table, "collection_pages")


if __name__ == "__main__":
    unittest.main()
