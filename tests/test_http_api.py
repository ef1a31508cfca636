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
os.environ.pop("TRELLIS_WORKER_URL", None)

from fastapi.testclient import TestClient

import app.main as main
from service_fixtures import event_names, make_services
from trellis.doc_ids import APP_METADATA_ID, get_prod_app_id


class TestApplicationRoutes(unittest.TestCase):
    def setUp(self) -> None:
        main.services = make_services()
        self.client = TestClient(main.app)

    def _create(self, **body) -> dict:
        res = self.client.post("/applications", json={"name": "Shop", **body})
        self.assertEqual(res.status_code, 200, res.text)
        return res.json()["application"]

    def test_health(self) -> None:
        self.assertEqual(self.client.get("/health").json(), {"ok": True})

    def test_create_and_list(self) -> None:
        app = self._create()
        res = self.client.get("/applications", params={"status": "development"})
        body = res.json()
        self.assertTrue(body["ok"])
        self.assertEqual([a["appId"] for a in body["applications"]], [app["appId"]])
        self.assertEqual(body["errors"], [])

    def test_duplicate_name_is_400(self) -> None:
        self._create()
        res = self.client.post("/applications", json={"name": "Shop"})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "NAME_IN_USE")

    def test_create_with_uploaded_export(self) -> None:
        dump = '{"docs": [{"_id": "ro_ta_1_a", "tableId": "ta_1"}]}\n'
        res = self.client.post(
            "/applications",
            data={"name": "Imported", "useTemplate": "true"},
            files={"templateFile": ("export.txt", dump.encode("utf-8"), "text/plain")},
        )
        self.assertEqual(res.status_code, 200, res.text)
        app_id = res.json()["application"]["appId"]
        self.assertEqual(main.services.app_db(app_id).get("ro_ta_1_a")["tableId"], "ta_1")
        self.assertEqual(event_names(main.services), ["app.file_imported", "app.created"])

    def test_tenant_header_scopes_apps(self) -> None:
        res = self.client.post("/applications", json={"name": "Shop"}, headers={"x-trellis-tenant-id": "acme"})
        self.assertEqual(res.status_code, 200, res.text)
        self.assertEqual(res.json()["application"]["tenantId"], "acme")
        self.assertEqual(self.client.get("/applications", params={"status": "development"}).json()["applications"], [])

    def test_update_and_package(self) -> None:
        app = self._create()
        app_id = app["appId"]
        res = self.client.put(f"/applications/{app_id}", json={"name": "Crew"})
        self.assertEqual(res.json()["application"]["url"], "/crew")

        package = self.client.get(f"/applications/{app_id}/package", headers={"x-trellis-user-id": "u1", "x-trellis-role": "ADMIN"})
        self.assertEqual(package.status_code, 200)
        self.assertEqual(package.json()["application"]["name"], "Crew")
        self.assertEqual(self.client.get(f"/applications/{app_id}/definition").status_code, 200)

    def test_actor_recorded_on_events(self) -> None:
        self.client.post("/applications", json={"name": "Shop"}, headers={"x-trellis-user-id": "u1", "x-trellis-role": "ADMIN"})
        event = main.services.events.outbox.pending(name="app.created")[0]
        self.assertEqual(event["meta"]["actor"]["id"], "u1")

    def test_client_revert_without_version(self) -> None:
        app = self._create()
        res = self.client.post(f"/applications/{app['appId']}/client/revert")
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "NO_REVERTABLE_VERSION")
        res = self.client.post(f"/applications/{app['appId']}/client/update")
        self.assertEqual(res.status_code, 200)

    def test_unpublish_then_delete(self) -> None:
        app = self._create()
        app_id = app["appId"]
        prod_id = get_prod_app_id(app_id)
        main.services.app_db(prod_id).put({"_id": APP_METADATA_ID, "appId": prod_id, "status": "published"})

        res = self.client.delete(f"/applications/{app_id}", params={"unpublish": "true"})
        self.assertEqual(res.status_code, 200, res.text)
        self.assertTrue(main.services.documents.exists(app_id))
        res = self.client.delete(f"/applications/{app_id}")
        self.assertEqual(res.status_code, 200, res.text)
        self.assertFalse(main.services.documents.exists(app_id))
        self.assertEqual(self.client.delete(f"/applications/{app_id}").status_code, 404)

    def test_sync_without_deployment(self) -> None:
        app = self._create()
        res = self.client.post(f"/applications/{app['appId']}/sync")
        self.assertEqual(res.json()["message"], "App sync not required, app not deployed.")


class TestAutomationRoutes(unittest.TestCase):
    APP_ID = "app_dev_routes"

    def setUp(self) -> None:
        main.services = make_services()
        self.client = TestClient(main.app)
        self.headers = {"x-trellis-app-id": self.APP_ID}

    def _body(self) -> dict:
        return {
            "name": "Log it",
            "definition": {
                "trigger": {"id": "t1", "stepId": "APP", "type": "TRIGGER", "inputs": {}},
                "steps": [{"id": "s1", "stepId": "SERVER_LOG", "type": "ACTION", "inputs": {"text": "hi"}}],
            },
        }

    def _create(self) -> dict:
        res = self.client.post("/automations", json=self._body(), headers=self.headers)
        self.assertEqual(res.status_code, 200, res.text)
        return res.json()["automation"]

    def test_app_header_required(self) -> None:
        res = self.client.get("/automations")
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "APP_ID_REQUIRED")

    def test_empty_body_rejected(self) -> None:
        res = self.client.post("/automations", json={}, headers=self.headers)
        self.assertEqual(res.json()["errors"][0]["code"], "AUTOMATION_REQUIRED")

    def test_create_fetch_find(self) -> None:
        auto = self._create()
        listed = self.client.get("/automations", headers=self.headers).json()["automations"]
        self.assertEqual([a["_id"] for a in listed], [auto["_id"]])
        found = self.client.get(f"/automations/{auto['_id']}", headers=self.headers)
        self.assertEqual(found.json()["automation"]["name"], "Log it")
        self.assertEqual(self.client.get("/automations/au_missing", headers=self.headers).status_code, 404)

    def test_post_with_rev_updates(self) -> None:
        auto = self._create()
        auto["name"] = "Renamed"
        res = self.client.post("/automations", json=auto, headers=self.headers)
        self.assertEqual(res.status_code, 200, res.text)
        self.assertEqual(res.json()["automation"]["_id"], auto["_id"])

    def test_stale_rev_is_409(self) -> None:
        auto = self._create()
        self.client.put("/automations", json=dict(auto, name="first"), headers=self.headers)
        res = self.client.put("/automations", json=dict(auto, name="second"), headers=self.headers)
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.json()["errors"][0]["code"], "CONFLICT")

    def test_delete(self) -> None:
        auto = self._create()
        res = self.client.delete(f"/automations/{auto['_id']}/{auto['_rev']}", headers=self.headers)
        self.assertEqual(res.status_code, 200, res.text)
        self.assertEqual(self.client.get(f"/automations/{auto['_id']}", headers=self.headers).status_code, 404)

    def test_trigger_and_test(self) -> None:
        auto = self._create()
        res = self.client.post(f"/automations/{auto['_id']}/trigger", json={"fields": {"a": 1}}, headers=self.headers)
        self.assertEqual(res.json()["message"], f"Automation {auto['_id']} has been triggered.")

        res = self.client.post(f"/automations/{auto['_id']}/test", json={"fields": {"a": 1}}, headers=self.headers)
        self.assertEqual(res.status_code, 200, res.text)
        self.assertEqual(res.json()["result"]["status"], "success")

        logs = self.client.post("/automations/logs/search", json={"automationId": auto["_id"]}, headers=self.headers)
        self.assertEqual(len(logs.json()["data"]), 1)

    def test_definition_lists(self) -> None:
        self.assertIn("SERVER_LOG", self.client.get("/automations/action/list").json()["actions"])
        self.assertIn("WEBHOOK", self.client.get("/automations/trigger/list").json()["triggers"])
        both = self.client.get("/automations/definitions/list").json()
        self.assertIn("trigger", both)
        self.assertIn("action", both)

    def test_clear_log_error_route(self) -> None:
        prod = main.services.app_db("app_routes")
        prod.put({"_id": APP_METADATA_ID, "appId": "app_routes", "automationErrors": {"au_1": ["l1"]}})
        res = self.client.request("DELETE", "/automations/logs/error", json={"automationId": "au_1"}, headers=self.headers)
        self.assertEqual(res.status_code, 200, res.text)
        self.assertEqual(prod.get(APP_METADATA_ID)["automationErrors"], {})

    def test_metadata_routes(self) -> None:
        res = self.client.put("/metadata/automationTestInput/au_1", json={"row": {"a": 1}}, headers=self.headers)
        self.assertEqual(res.status_code, 200, res.text)
        res = self.client.get("/metadata/automationTestInput/au_1", headers=self.headers)
        self.assertEqual(res.json()["metadata"]["row"], {"a": 1})
        self.assertEqual(self.client.get("/metadata/automationTestInput/au_2", headers=self.headers).json()["metadata"], {})
        self.assertEqual(self.client.get("/metadata/bogus/au_1", headers=self.headers).status_code, 400)


if __name__ == "__main__":
    unittest.main()
