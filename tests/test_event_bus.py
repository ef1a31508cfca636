import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from event_bus import EventBus, EventValidationError, make_event
from outbox import Outbox


class TestEventBus(unittest.TestCase):
    def _base_meta(self) -> dict:
        return {
            "tenant_id": "default",
            "app_id": "app_dev_1",
            "actor": {"id": "u1", "roles": ["ADMIN"]},
        }

    def test_publish_enqueues_to_outbox(self) -> None:
        outbox = Outbox()
        bus = EventBus(outbox=outbox)
        event = make_event("app.created", {"appId": "app_dev_1"}, self._base_meta())
        bus.publish(event)
        self.assertEqual(len(outbox.pending()), 1)

    def test_handlers_called_in_order(self) -> None:
        bus = EventBus()
        calls = []

        def h1(evt: dict) -> None:
            calls.append("h1")

        def h2(evt: dict) -> None:
            calls.append("h2")

        bus.subscribe("app.created", h1)
        bus.subscribe("app.created", h2)
        bus.publish(make_event("app.created", {"appId": "app_dev_1"}, self._base_meta()))
        self.assertEqual(calls, ["h1", "h2"])

    def test_failing_handler_does_not_stop_others(self) -> None:
        bus = EventBus()
        calls = []

        def broken(evt: dict) -> None:
            raise RuntimeError("boom")

        bus.subscribe("app.created", broken)
        bus.subscribe("app.created", lambda evt: calls.append(evt["name"]))
        with self.assertLogs("trellis.events", level="ERROR"):
            bus.publish(make_event("app.created", {}, self._base_meta()))
        self.assertEqual(calls, ["app.created"])

    def test_unsubscribe(self) -> None:
        bus = EventBus()
        calls = []

        def h1(evt: dict) -> None:
            calls.append("h1")

        bus.subscribe("app.created", h1)
        self.assertTrue(bus.unsubscribe("app.created", h1))
        self.assertFalse(bus.unsubscribe("app.created", h1))
        bus.publish(make_event("app.created", {}, self._base_meta()))
        self.assertEqual(calls, [])

    def test_emit_builds_envelope(self) -> None:
        outbox = Outbox()
        bus = EventBus(outbox)
        event = bus.emit("automation.created", {"automationId": "au_1"}, tenant_id="acme", app_id="app_dev_1")
        self.assertEqual(event["meta"]["tenant_id"], "acme")
        self.assertTrue(event["meta"]["occurred_at"].endswith("Z"))
        self.assertEqual(outbox.names(), ["automation.created"])

    def test_emit_rejects_unknown_event(self) -> None:
        outbox = Outbox()
        bus = EventBus(outbox)
        with self.assertRaises(EventValidationError):
            bus.emit("app.renamed", {}, tenant_id="acme")
        self.assertEqual(outbox.pending(), [])

    def test_invalid_envelope_missing_name(self) -> None:
        bus = EventBus()
        event = make_event("app.created", {}, self._base_meta())
        event.pop("name")
        with self.assertRaises(EventValidationError):
            bus.publish(event)

    def test_invalid_occurred_at(self) -> None:
        bus = EventBus()
        event = make_event("app.created", {}, self._base_meta())
        event["meta"]["occurred_at"] = "2026-01-29T01:23:45"
        with self.assertRaises(EventValidationError):
            bus.publish(event)

    def test_tenant_required(self) -> None:
        meta = self._base_meta()
        meta.pop("tenant_id")
        with self.assertRaises(EventValidationError):
            make_event("app.created", {}, meta)

    def test_payload_rejects_nan_inf(self) -> None:
        bus = EventBus()
        event = make_event("app.created", {"value": 1.0}, self._base_meta())
        event["payload"]["value"] = float("nan")
        with self.assertRaises(EventValidationError):
            bus.publish(event)


if __name__ == "__main__":
    unittest.main()
