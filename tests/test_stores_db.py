import os
import sys
import unittest
import uuid


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from doc_store import DocumentConflict, DocumentNotFound, Replication, docs_from_rows
from trellis.doc_ids import APP_METADATA_ID, DocumentType, get_doc_params


@unittest.skipUnless(os.getenv("DATABASE_URL"), "DATABASE_URL not set")
class TestDbDocumentStore(unittest.TestCase):
    def setUp(self) -> None:
        from app.stores_db import DbDocumentStore

        self.store = DbDocumentStore()
        suffix = uuid.uuid4().hex[:8]
        self.dev_id = f"app_dev_test{suffix}"
        self.prod_id = f"app_test{suffix}"
        self.db = self.store.db(self.dev_id)

    def tearDown(self) -> None:
        for name in (self.dev_id, self.prod_id):
            if self.store.exists(name):
                self.store.db(name).destroy()

    def test_revision_conflicts(self) -> None:
        first = self.db.put({"_id": "ta_1", "name": "Jobs"})
        with self.assertRaises(DocumentConflict):
            self.db.put({"_id": "ta_1", "name": "Stale"})
        self.db.put({"_id": "ta_1", "_rev": first["rev"], "name": "Jobs 2"})
        self.assertEqual(self.db.get("ta_1")["name"], "Jobs 2")

    def test_range_and_remove(self) -> None:
        self.db.bulk_docs([{"_id": "au_1"}, {"_id": "au_2"}, {"_id": "ta_1"}])
        rows = docs_from_rows(self.db.all_docs(**get_doc_params(DocumentType.AUTOMATION)))
        self.assertEqual([d["_id"] for d in rows], ["au_1", "au_2"])
        doc = self.db.get("au_1")
        self.db.remove("au_1", doc["_rev"])
        with self.assertRaises(DocumentNotFound):
            self.db.get("au_1")

    def test_replication_skips_app_metadata(self) -> None:
        prod = self.store.db(self.prod_id)
        prod.put({"_id": APP_METADATA_ID, "name": "Prod"})
        prod.put({"_id": "ta_1", "name": "Jobs"})
        self.db.put({"_id": APP_METADATA_ID, "name": "Dev"})

        replication = Replication(self.store, self.prod_id, self.dev_id)
        try:
            replication.replicate(replication.app_replicate_opts())
        finally:
            replication.close()
        self.assertEqual(self.db.get("ta_1")["name"], "Jobs")
        self.assertEqual(self.db.get(APP_METADATA_ID)["name"], "Dev")

    def test_replication_keeps_newer_target_revision(self) -> None:
        prod = self.store.db(self.prod_id)
        prod.put({"_id": "screen_home", "title": "v1"})
        first = self.db.put({"_id": "screen_home", "title": "v1"})
        self.db.put({"_id": "screen_home", "_rev": first["rev"], "title": "v2"})

        replication = Replication(self.store, self.prod_id, self.dev_id)
        try:
            replication.replicate(replication.app_replicate_opts())
        finally:
            replication.close()
        self.assertEqual(self.db.get("screen_home")["title"], "v2")


if __name__ == "__main__":
    unittest.main()
