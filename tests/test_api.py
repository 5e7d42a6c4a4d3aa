import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

os.environ["USE_DB"] = "0"
os.environ.setdefault("SAILOR_TEMPLATES_PATH", os.path.join(ROOT, "tests", "no-such-templates.json"))

from fastapi.testclient import TestClient

import app.main as main


TEMPLATES = {
    "collections": {
        "posts": {
            "name": "Posts",
            "fields": [
                {"id": "cover", "type": "file", "items": {"multiple": False}},
                {"id": "tags", "type": "relation", "relation": {"type": "many-to-many", "targetCollection": "topics"}},
            ],
        },
        "topics": {"name": "Topics", "fields": {}},
    },
    "blocks": {"gallery": {"fields": {"images": {"type": "file", "file": {"multiple": True}}}}},
}


class TestApi(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.client = TestClient(main.app)

    def _compile(self, body: dict):
        return self.client.post("/schema/compile", json=body)

    def setUp(self) -> None:
        res = self._compile({**TEMPLATES, "apply": True, "strict": True})
        self.assertEqual(res.status_code, 200, res.text)

    def test_health(self) -> None:
        res = self.client.get("/health")
        self.assertEqual(res.json(), {"ok": True, "db": False, "provider": "memory"})
        self.assertTrue(res.headers["x-request-id"])
        echoed = self.client.get("/health", headers={"x-request-id": "req-123"})
        self.assertEqual(echoed.headers["x-request-id"], "req-123")

    def test_compile_returns_schema_and_sql(self) -> None:
        res = self._compile({**TEMPLATES, "dialect": "postgres"})
        body = res.json()
        self.assertTrue(body["ok"])
        self.assertIsNone(body["applied"])
        names = [table["name"] for table in body["schema"]["tables"]]
        self.assertIn("block_gallery_images", names)
        self.assertIn("junction_collection_posts_tags", names)
        self.assertIn("-- dialect: postgres", body["sql"])
        self.assertIn("timestamptz", body["sql"])
        self.assertEqual(body["summary"]["types"], 3)

    def test_compile_apply_reports_sync(self) -> None:
        body = self._compile({**TEMPLATES, "apply": True}).json()
        self.assertEqual(sorted(body["applied"]["upserted"]), ["block:gallery", "collection:posts", "collection:topics"])
        self.assertEqual(body["applied"]["removed"], [])

    def test_compile_errors(self) -> None:
        res = self._compile({"collections": {"posts": {"fields": {"list": {"type": "array"}}}}})
        self.assertEqual(res.status_code, 400)
        body = res.json()
        self.assertFalse(body["ok"])
        self.assertEqual([e["code"] for e in body["errors"]], ["TEMPLATE_ARRAY_ITEMS_MISSING"])

    def test_strict_compile_error(self) -> None:
        res = self._compile(
            {
                "strict": True,
                "collections": {
                    "posts": {"fields": {"writer": {"type": "relation", "relation": {"kind": "one-to-one", "targetCollection": "people"}}}}
                },
            }
        )
        self.assertEqual(res.status_code, 400)
        self.assertEqual([e["code"] for e in res.json()["errors"]], ["SCHEMA_RELATION_TARGET_MISSING"])

    def test_lenient_compile_warns(self) -> None:
        res = self._compile(
            {"collections": {"posts": {"fields": {"writer": {"type": "relation", "relation": {"kind": "one-to-one", "targetCollection": "people"}}}}}, "strict": False}
        )
        self.assertEqual(res.status_code, 200)
        codes = {w["code"] for w in res.json()["warnings"]}
        self.assertEqual(codes, {"TEMPLATE_RELATION_TARGET_UNKNOWN", "SCHEMA_RELATION_TARGET_MISSING"})

    def test_body_must_be_object(self) -> None:
        res = self.client.post("/schema/compile", json=[1, 2])
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "BODY_INVALID")

    def test_get_type(self) -> None:
        body = self.client.get("/types/block/gallery").json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["type"]["schema"]["images"]["file"], {"multiple": True})
        self.assertTrue(body["type"]["version"].startswith("sha256:"))
        self.assertEqual(self.client.get("/types/block/nope").status_code, 404)
        self.assertEqual(self.client.get("/types/widget/x").json()["errors"][0]["code"], "KIND_INVALID")

    def test_invalidate(self) -> None:
        self.client.get("/types/block/gallery")
        body = self.client.post("/types/invalidate", json={"kind": "block"}).json()
        self.assertEqual(body["invalidated"], 1)
        self.assertEqual(self.client.post("/types/invalidate").json()["invalidated"], 0)

    def test_content_reads(self) -> None:
        store = main.content_store
        store.insert("files", {"id": "f1", "url": "/u/f1.jpg"})
        store.insert("collection_topics", {"id": "t1", "title": "Topic", "slug": "topic"})
        store.insert("collection_posts", {"id": "p1", "title": "Hello", "slug": "hello", "sort": 0})
        store.insert("collection_posts_cover", {"parent_id": "p1", "parent_type": "collection", "file_id": "f1", "sort": 0})
        store.insert("junction_collection_posts_tags", {"collection_id": "p1", "target_id": "t1"})

        listing = self.client.get("/content/collection/posts").json()
        self.assertGreaterEqual(listing["count"], 1)
        item = self.client.get("/content/collection/posts/p1").json()["item"]
        self.assertEqual(item["cover"], "f1")
        self.assertEqual([t["slug"] for t in item["tags"]], ["topic"])
        full = self.client.get("/content/collection/posts/p1", params={"full": "1"}).json()["item"]
        self.assertEqual(full["cover"]["url"], "/u/f1.jpg")

        missing = self.client.get("/content/collection/posts/nope")
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json()["errors"][0]["code"], "CONTENT_NOT_FOUND")
        self.assertEqual(self.client.get("/content/collection/ghosts").status_code, 404)


if __name__ == "__main__":
    unittest.main()
