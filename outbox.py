"""In-memory outbox of published platform events."""

from __future__ import annotations

import copy
from collections import deque
from typing import Deque

from event_bus import Event, validate_event


class Outbox:
    """Holds events until acked; with ``max_events`` the oldest are dropped first."""

    def __init__(self, max_events: int | None = None) -> None:
        self._events: Deque[Event] = deque(maxlen=max_events)

    def enqueue(self, event: dict) -> None:
        validate_event(event)
        self._events.append(copy.deepcopy(event))

    def pending(self, name: str | None = None, app_id: str | None = None) -> list[dict]:
        events = list(self._events)
        if name is not None:
            events = [e for e in events if e.get("name") == name]
        if app_id is not None:
            events = [e for e in events if e.get("meta", {}).get("app_id") == app_id]
        return [copy.deepcopy(e) for e in events]

    def names(self) -> list[str]:
        return [e["name"] for e in self._events]

    def ack(self, event_id: str) -> bool:
        for idx, event in enumerate(self._events):
            if event.get("meta", {}).get("event_id") == event_id:
                del self._events[idx]
                return True
        return False

    def clear(self) -> None:
        self._events.clear()
