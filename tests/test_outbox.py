import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from event_bus import make_event
from outbox import Outbox


class TestOutbox(unittest.TestCase):
    def _meta(self, app_id: str | None = None) -> dict:
        return {"tenant_id": "default", "app_id": app_id, "actor": None}

    def test_enqueue_pending_order(self) -> None:
        outbox = Outbox()
        outbox.enqueue(make_event("app.created", {"x": 1}, self._meta()))
        outbox.enqueue(make_event("app.updated", {"x": 2}, self._meta()))
        self.assertEqual([p["name"] for p in outbox.pending()], ["app.created", "app.updated"])

    def test_pending_filters(self) -> None:
        outbox = Outbox()
        outbox.enqueue(make_event("app.created", {}, self._meta("app_dev_1")))
        outbox.enqueue(make_event("app.created", {}, self._meta("app_dev_2")))
        outbox.enqueue(make_event("app.deleted", {}, self._meta("app_dev_1")))
        self.assertEqual(len(outbox.pending(name="app.created")), 2)
        self.assertEqual(len(outbox.pending(app_id="app_dev_1")), 2)
        self.assertEqual(len(outbox.pending(name="app.created", app_id="app_dev_2")), 1)

    def test_max_events_drops_oldest(self) -> None:
        outbox = Outbox(max_events=2)
        for name in ("app.created", "app.updated", "app.deleted"):
            outbox.enqueue(make_event(name, {}, self._meta()))
        self.assertEqual(outbox.names(), ["app.updated", "app.deleted"])
        event = outbox.pending()[0]
        self.assertTrue(outbox.ack(event["meta"]["event_id"]))
        self.assertEqual(outbox.names(), ["app.deleted"])

    def test_ack(self) -> None:
        outbox = Outbox()
        event = make_event("app.created", {"x": 1}, self._meta())
        outbox.enqueue(event)
        event_id = event["meta"]["event_id"]
        self.assertTrue(outbox.ack(event_id))
        self.assertEqual(outbox.pending(), [])
        self.assertFalse(outbox.ack(event_id))


if __name__ == "__main__":
    unittest.main()
