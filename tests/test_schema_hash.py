import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from sailor.canonical_json import canonical_dumps
from sailor.schema_hash import schema_hash


class TestSchemaHash(unittest.TestCase):
    def test_hash_ignores_key_order(self) -> None:
        a = {"title": {"type": "string"}, "sort": {"type": "number"}}
        b = {"sort": {"type": "number"}, "title": {"type": "string"}}
        self.assertEqual(schema_hash(a), schema_hash(b))

    def test_hash_of_stored_text_matches_document(self) -> None:
        doc = {"images": {"type": "file", "file": {"multiple": True}}}
        self.assertEqual(schema_hash(canonical_dumps(doc)), schema_hash(doc))

    def test_hash_differs_for_different_schema(self) -> None:
        self.assertNotEqual(schema_hash({"a": {"type": "string"}}), schema_hash({"a": {"type": "text"}}))

    def test_hash_format(self) -> None:
        h = schema_hash({"a": 1})
        self.assertTrue(h.startswith("sha256:"))
        self.assertEqual(len(h), len("sha256:") + 64)

    def test_hash_rejects_nan(self) -> None:
        with self.assertRaises(ValueError):
            schema_hash({"bad": float("nan")})


if __name__ == "__main__":
    unittest.main()
