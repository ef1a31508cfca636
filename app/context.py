"""Request context (tenant, actor) and the service container controllers run against."""

from __future__ import annotations

import os
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any

from event_bus import EventBus

DEFAULT_TENANT_ID = os.getenv("TRELLIS_DEFAULT_TENANT", "default").strip() or "default"

_TENANT_ID: ContextVar[str] = ContextVar("trellis_tenant_id", default=DEFAULT_TENANT_ID)
_ACTOR: ContextVar[dict | None] = ContextVar("trellis_actor", default=None)


def get_tenant_id() -> str:
    return _TENANT_ID.get()


def set_tenant_id(value: str):
    return _TENANT_ID.set(value)


def reset_tenant_id(token) -> None:
    _TENANT_ID.reset(token)


def get_actor() -> dict | None:
    return _ACTOR.get()


def set_actor(value: dict | None):
    return _ACTOR.set(value)


def reset_actor(token) -> None:
    _ACTOR.reset(token)


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes")


@dataclass
class Settings:
    disable_auto_prod_app_sync: bool = False
    multi_tenancy: bool = False
    client_version: str = "0.0.0"
    component_libraries: list[str] = field(default_factory=lambda: ["@trellis/standard-components"])

    @classmethod
    def from_env(cls) -> "Settings":
        from trellis import __version__

        return cls(
            disable_auto_prod_app_sync=_env_flag("DISABLE_AUTO_PROD_APP_SYNC"),
            multi_tenancy=_env_flag("TRELLIS_MULTI_TENANCY"),
            client_version=os.getenv("TRELLIS_CLIENT_VERSION", "").strip() or __version__,
        )


@dataclass
class Services:
    """Everything a controller talks to.

    ``documents`` is the per-app document store; the remaining members stand in
    for platform services (lock service, quota service, metadata cache, ...).
    """

    documents: Any
    events: EventBus
    locks: Any
    quotas: Any
    cache: Any
    flags: Any
    logs: Any
    runner: Any
    worker: Any
    client_library: Any
    templates: Any
    settings: Settings = field(default_factory=Settings)

    def emit(self, name: str, payload: dict, app_id: str | None = None) -> None:
        self.events.emit(name, payload, tenant_id=get_tenant_id(), app_id=app_id, actor=get_actor())

    def app_db(self, app_id: str, skip_setup: bool = False):
        return self.documents.db(app_id, skip_setup=skip_setup)

    def tenant_for_new_app(self) -> str | None:
        return get_tenant_id() if self.settings.multi_tenancy else None
