"""In-memory platform event bus with strict envelope validation."""

from __future__ import annotations

import copy
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List


Event = Dict[str, Any]
Handler = Callable[[Event], None]

logger = logging.getLogger("trellis.events")

PLATFORM_EVENTS = frozenset(
    {
        "app.created",
        "app.updated",
        "app.deleted",
        "app.unpublished",
        "app.template_imported",
        "app.file_imported",
        "app.version_updated",
        "app.version_reverted",
        "automation.created",
        "automation.deleted",
        "automation.tested",
        "automation.trigger_updated",
        "automation.step_created",
        "automation.step_deleted",
    }
)


@dataclass
class EventError(Exception):
    message: str

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return self.message


@dataclass
class EventValidationError(EventError):
    code: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


def _raise(code: str, message: str, path: str | None = None) -> None:
    raise EventValidationError(code=code, message=message, path=path)


def _validate_payload(payload: Any) -> None:
    if not isinstance(payload, dict):
        _raise("PAYLOAD_INVALID", "payload must be an object", "payload")
    try:
        json.dumps(payload, allow_nan=False)
    except (TypeError, ValueError) as exc:
        _raise("PAYLOAD_INVALID", str(exc), "payload")


def _validate_actor(actor: Any) -> None:
    if actor is None:
        return
    if not isinstance(actor, dict):
        _raise("META_ACTOR_INVALID", "actor must be object or null", "meta.actor")
    if not isinstance(actor.get("id"), str):
        _raise("META_ACTOR_INVALID", "actor.id must be string", "meta.actor.id")


def _validate_occurred_at(value: Any) -> None:
    if not isinstance(value, str) or not value.endswith("Z"):
        _raise("META_OCCURRED_AT_INVALID", "occurred_at must be an ISO8601 string ending with 'Z'", "meta.occurred_at")
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        _raise("META_OCCURRED_AT_INVALID", "occurred_at must be ISO8601", "meta.occurred_at")


def validate_event(event: Any) -> None:
    if not isinstance(event, dict):
        _raise("EVENT_INVALID", "event must be object")
    name = event.get("name")
    if not isinstance(name, str) or "." not in name:
        _raise("EVENT_NAME_INVALID", "name must look like '<group>.<action>'", "name")

    _validate_payload(event.get("payload"))

    meta = event.get("meta")
    if not isinstance(meta, dict):
        _raise("META_INVALID", "meta must be object", "meta")
    if not isinstance(meta.get("event_id"), str):
        _raise("META_EVENT_ID_INVALID", "event_id must be string", "meta.event_id")
    _validate_occurred_at(meta.get("occurred_at"))
    if not isinstance(meta.get("tenant_id"), str):
        _raise("META_TENANT_ID_INVALID", "tenant_id must be string", "meta.tenant_id")
    app_id = meta.get("app_id")
    if app_id is not None and not isinstance(app_id, str):
        _raise("META_APP_ID_INVALID", "app_id must be string or null", "meta.app_id")
    _validate_actor(meta.get("actor"))


def make_event(name: str, payload: dict, meta: dict) -> Event:
    if not isinstance(meta, dict):
        _raise("META_INVALID", "meta must be object", "meta")

    meta_out = copy.deepcopy(meta)
    meta_out.setdefault("event_id", str(uuid.uuid4()))
    if "occurred_at" not in meta_out:
        meta_out["occurred_at"] = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

    event = {
        "name": name,
        "payload": copy.deepcopy(payload),
        "meta": meta_out,
    }
    validate_event(event)
    return event


class EventBus:
    def __init__(self, outbox: "Outbox | None" = None) -> None:
        self._outbox = outbox
        self._subs: Dict[str, List[Handler]] = {}

    @property
    def outbox(self) -> "Outbox | None":
        return self._outbox

    def subscribe(self, name: str, handler: Handler) -> None:
        self._subs.setdefault(name, []).append(handler)

    def unsubscribe(self, name: str, handler: Handler) -> bool:
        handlers = self._subs.get(name)
        if not handlers or handler not in handlers:
            return False
        handlers.remove(handler)
        if not handlers:
            del self._subs[name]
        return True

    def publish(self, event: dict) -> None:
        validate_event(event)
        if self._outbox is not None:
            self._outbox.enqueue(event)
        for handler in self._subs.get(event["name"], []):
            try:
                handler(event)
            except Exception:
                logger.exception("event_handler_failed event=%s", event["name"])

    def emit(self, name: str, payload: dict, tenant_id: str, app_id: str | None = None, actor: dict | None = None) -> Event:
        if name not in PLATFORM_EVENTS:
            _raise("EVENT_NAME_UNKNOWN", f"unknown platform event: {name}", "name")
        event = make_event(name, payload, {"tenant_id": tenant_id, "app_id": app_id, "actor": actor})
        self.publish(event)
        logger.info("event_emitted event=%s app_id=%s tenant_id=%s", name, app_id, tenant_id)
        return event
