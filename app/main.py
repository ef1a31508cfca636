"""FastAPI app for the Trellis application service."""

from __future__ import annotations

import os
import sys
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.datastructures import UploadFile
from starlette.middleware.base import BaseHTTPMiddleware

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


_load_env_file(ROOT / "app" / ".env")

import contextvars
import logging
import time

import anyio

from app import applications, automations
from app.automation_definitions import action_list, definition_list, trigger_list
from app.automations_runtime import TriggerRunner
from app.context import Services, Settings, reset_actor, reset_tenant_id, set_actor, set_tenant_id
from app.db import get_db_ms, get_db_stats, reset_db_ms
from app.metadata import METADATA_TYPES, get_entity_metadata, save_entity_metadata
from app.results import first_error
from app.stores import (
    MemoryAutomationLogStore,
    MemoryClientLibraryStore,
    MemoryFlagStore,
    MemoryJobStore,
    MemoryLockStore,
    MemoryMetadataCache,
    MemoryQuotaStore,
    MemoryTemplateRepository,
    MemoryWorkerClient,
)
from app.stores_db import DbDocumentStore
from app.templates import HttpTemplateRepository
from app.worker_client import WorkerClient, WorkerRequestError
from doc_store import DocumentConflict, DocumentNotFound, DocumentStore
from event_bus import EventBus
from outbox import Outbox


app = FastAPI(title="Trellis")
logger = logging.getLogger("trellis")
logging.basicConfig(level=logging.INFO)
_LOCAL_CORS_ORIGINS = {
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:3000",
    "http://127.0.0.1:3000",
}
_EXTRA_CORS_ORIGINS = {
    origin.strip().rstrip("/")
    for origin in os.getenv("TRELLIS_CORS_ORIGINS", "").split(",")
    if origin.strip()
}
_CORS_ORIGINS = _LOCAL_CORS_ORIGINS | _EXTRA_CORS_ORIGINS

TENANT_HEADER = "x-trellis-tenant-id"
USER_HEADER = "x-trellis-user-id"
ROLE_HEADER = "x-trellis-role"
BUILDER_HEADER = "x-trellis-builder"
APP_HEADER = "x-trellis-app-id"

REQ_SLOW_MS = float(os.getenv("TRELLIS_REQ_SLOW_MS", "250"))


def _env_int(name: str) -> int | None:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else None


USE_DB = os.getenv("USE_DB", "").strip() == "1"
WORKER_URL = os.getenv("TRELLIS_WORKER_URL", "").strip()
TEMPLATE_REPOSITORY_URL = os.getenv("TRELLIS_TEMPLATE_REPOSITORY_URL", "").strip()

if USE_DB:
    documents = DbDocumentStore()
else:
    documents = DocumentStore()

if WORKER_URL:
    worker = WorkerClient(WORKER_URL, os.getenv("TRELLIS_INTERNAL_API_KEY", "").strip() or None)
else:
    worker = MemoryWorkerClient()

if TEMPLATE_REPOSITORY_URL:
    template_repository = HttpTemplateRepository(TEMPLATE_REPOSITORY_URL)
else:
    template_repository = MemoryTemplateRepository()

outbox = Outbox(max_events=_env_int("TRELLIS_OUTBOX_MAX") or 1000)
event_bus = EventBus(outbox)
job_store = MemoryJobStore()
automation_logs = MemoryAutomationLogStore(retention_days=_env_int("TRELLIS_AUTOMATION_LOG_RETENTION_DAYS") or 30)

services = Services(
    documents=documents,
    events=event_bus,
    locks=MemoryLockStore(),
    quotas=MemoryQuotaStore(_env_int("TRELLIS_QUOTA_MAX_APPS"), _env_int("TRELLIS_QUOTA_MAX_ROWS")),
    cache=MemoryMetadataCache(),
    flags=MemoryFlagStore(),
    logs=automation_logs,
    runner=TriggerRunner(job_store, automation_logs),
    worker=worker,
    client_library=MemoryClientLibraryStore(),
    templates=template_repository,
    settings=Settings.from_env(),
)
logger.info("trellis_started use_db=%s worker=%s multi_tenancy=%s", USE_DB, bool(WORKER_URL), services.settings.multi_tenancy)


@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    reset_db_ms()
    start = time.perf_counter()
    response = await call_next(request)
    total_ms = (time.perf_counter() - start) * 1000
    db_ms = get_db_ms()
    route = request.scope.get("route")
    route_name = getattr(route, "name", None) or "unknown"
    logger.info(
        "%s %s %s route=%s total_ms=%.1f db_ms=%.1f db_q=%s",
        request.method,
        request.url.path,
        response.status_code,
        route_name,
        total_ms,
        db_ms,
        get_db_stats().get("queries", 0),
    )
    if total_ms >= REQ_SLOW_MS:
        logger.warning(
            "slow_request method=%s path=%s route=%s total_ms=%.1f db_ms=%.1f status=%s",
            request.method,
            request.url.path,
            route_name,
            total_ms,
            db_ms,
            response.status_code,
        )
    return response


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _result_response(result: dict) -> JSONResponse:
    if result.get("ok"):
        payload = {k: v for k, v in result.items() if k not in ("ok", "errors", "warnings")}
        return _ok_response(payload, result.get("warnings"))
    error = first_error(result) or {}
    return _error_response(
        error.get("code") or "ERROR",
        error.get("message") or "Request failed",
        error.get("path"),
        error.get("detail"),
        status=result.get("status") or 400,
    )


@app.exception_handler(DocumentNotFound)
async def not_found_handler(request: Request, exc: DocumentNotFound):
    return _error_response("NOT_FOUND", exc.message, detail={"doc_id": exc.doc_id}, status=404)


@app.exception_handler(DocumentConflict)
async def conflict_handler(request: Request, exc: DocumentConflict):
    return _error_response("CONFLICT", exc.message, "_rev", {"doc_id": exc.doc_id}, status=409)


@app.exception_handler(WorkerRequestError)
async def worker_error_handler(request: Request, exc: WorkerRequestError):
    return _error_response("UPSTREAM_UNAVAILABLE", str(exc), detail={"status_code": exc.status_code}, status=502)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error path=%s", request.url.path)
    return _error_response("INTERNAL_ERROR", "Unexpected server error", detail={"error": str(exc)}, status=500)


def _header_flag(value: str | None) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes")


def _actor_from_headers(request: Request) -> dict | None:
    user_id = (request.headers.get(USER_HEADER) or "").strip()
    if not user_id:
        return None
    role = (request.headers.get(ROLE_HEADER) or "").strip() or None
    return {
        "id": user_id,
        "role": role,
        "roles": [role] if role else [],
        "builder": _header_flag(request.headers.get(BUILDER_HEADER)),
    }


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tenant and caller identity forwarded by the authenticating gateway."""

    async def dispatch(self, request: Request, call_next):
        actor = _actor_from_headers(request)
        request.state.actor = actor
        tenant = (request.headers.get(TENANT_HEADER) or "").strip()
        tenant_token = set_tenant_id(tenant) if tenant else None
        actor_token = set_actor(actor)
        try:
            return await call_next(request)
        finally:
            reset_actor(actor_token)
            if tenant_token is not None:
                reset_tenant_id(tenant_token)


app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted(_CORS_ORIGINS),
    allow_origin_regex=r"http://localhost:\d+|http://127\.0\.0\.1:\d+",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestContextMiddleware)


async def _safe_json(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


async def _in_thread(fn, *args):
    ctx = contextvars.copy_context()
    return await anyio.to_thread.run_sync(ctx.run, fn, *args)


def _role_id(request: Request) -> str | None:
    actor = getattr(request.state, "actor", None)
    return actor.get("role") if isinstance(actor, dict) else None


def _is_builder(request: Request) -> bool:
    actor = getattr(request.state, "actor", None)
    return bool(actor.get("builder")) if isinstance(actor, dict) else False


def _require_app_id(request: Request) -> str | JSONResponse:
    app_id = (request.headers.get(APP_HEADER) or "").strip()
    if not app_id:
        return _error_response("APP_ID_REQUIRED", f"{APP_HEADER} header required", APP_HEADER, status=400)
    return app_id


@app.get("/health")
async def health() -> dict:
    return {"ok": True}


# -------- applications --------


@app.get("/applications")
async def list_applications(status: str | None = None):
    return _result_response(applications.list_apps(services, status))


@app.get("/applications/{app_id}/definition")
async def application_definition(app_id: str, request: Request):
    return _result_response(applications.definition(services, app_id, _role_id(request)))


@app.get("/applications/{app_id}/package")
async def application_package(app_id: str, request: Request):
    return _result_response(applications.package(services, app_id, _role_id(request), _is_builder(request)))


@app.post("/applications")
async def create_application(request: Request):
    template_file = None
    content_type = request.headers.get("content-type") or ""
    if content_type.startswith("multipart/form-data"):
        form = await request.form()
        body = {}
        for key, value in form.items():
            if isinstance(value, UploadFile):
                if key == "templateFile":
                    template_file = await value.read()
                continue
            body[key] = value
    else:
        body = await _safe_json(request)
    result = await _in_thread(applications.create, services, body, template_file)
    return _result_response(result)


@app.put("/applications/{app_id}")
async def update_application(app_id: str, request: Request):
    body = await _safe_json(request)
    return _result_response(applications.update(services, app_id, body))


@app.post("/applications/{app_id}/client/update")
async def update_application_client(app_id: str):
    return _result_response(applications.update_client(services, app_id))


@app.post("/applications/{app_id}/client/revert")
async def revert_application_client(app_id: str):
    return _result_response(applications.revert_client(services, app_id))


@app.delete("/applications/{app_id}")
async def delete_application(app_id: str, unpublish: bool = False):
    return _result_response(applications.destroy(services, app_id, unpublish=unpublish))


@app.post("/applications/{app_id}/sync")
async def sync_application(app_id: str):
    result = await _in_thread(applications.sync, services, app_id)
    return _result_response(result)


# -------- automations --------


@app.get("/automations/action/list")
async def list_actions():
    return _ok_response({"actions": action_list()})


@app.get("/automations/trigger/list")
async def list_triggers():
    return _ok_response({"triggers": trigger_list()})


@app.get("/automations/definitions/list")
async def list_definitions():
    return _ok_response(definition_list())


@app.post("/automations/logs/search")
async def search_automation_logs(request: Request):
    body = await _safe_json(request)
    app_id = (request.headers.get(APP_HEADER) or "").strip()
    if app_id and not body.get("appId"):
        body["appId"] = app_id
    return _result_response(automations.log_search(services, body))


@app.delete("/automations/logs/error")
async def clear_automation_log_error(request: Request):
    app_id = _require_app_id(request)
    if isinstance(app_id, JSONResponse):
        return app_id
    body = await _safe_json(request)
    return _result_response(automations.clear_log_error(services, app_id, body.get("automationId")))


@app.get("/automations")
async def list_automations(request: Request):
    app_id = _require_app_id(request)
    if isinstance(app_id, JSONResponse):
        return app_id
    return _result_response(automations.fetch(services, app_id))


@app.get("/automations/{automation_id}")
async def get_automation(automation_id: str, request: Request):
    app_id = _require_app_id(request)
    if isinstance(app_id, JSONResponse):
        return app_id
    return _result_response(automations.find(services, app_id, automation_id))


@app.post("/automations")
async def create_automation(request: Request):
    app_id = _require_app_id(request)
    if isinstance(app_id, JSONResponse):
        return app_id
    body = await _safe_json(request)
    if not body:
        return _error_response("AUTOMATION_REQUIRED", "Automation body required", None, status=400)
    return _result_response(automations.save(services, app_id, automations.resolve_intent(body)))


@app.put("/automations")
async def update_automation(request: Request):
    app_id = _require_app_id(request)
    if isinstance(app_id, JSONResponse):
        return app_id
    body = await _safe_json(request)
    return _result_response(automations.update(services, app_id, body))


@app.delete("/automations/{automation_id}/{rev}")
async def delete_automation(automation_id: str, rev: str, request: Request):
    app_id = _require_app_id(request)
    if isinstance(app_id, JSONResponse):
        return app_id
    return _result_response(automations.destroy(services, app_id, automation_id, rev))


@app.post("/automations/{automation_id}/trigger")
async def trigger_automation(automation_id: str, request: Request):
    app_id = _require_app_id(request)
    if isinstance(app_id, JSONResponse):
        return app_id
    body = await _safe_json(request)
    return _result_response(automations.trigger(services, app_id, automation_id, body))


@app.post("/automations/{automation_id}/test")
async def test_automation(automation_id: str, request: Request):
    app_id = _require_app_id(request)
    if isinstance(app_id, JSONResponse):
        return app_id
    body = await _safe_json(request)
    result = await _in_thread(automations.test, services, app_id, automation_id, body)
    return _result_response(result)


# -------- entity metadata --------


@app.get("/metadata/{metadata_type}/{entity_id}")
async def get_metadata(metadata_type: str, entity_id: str, request: Request):
    app_id = _require_app_id(request)
    if isinstance(app_id, JSONResponse):
        return app_id
    if metadata_type not in METADATA_TYPES:
        return _error_response("METADATA_TYPE_INVALID", "Invalid metadata type", "metadata_type", status=400)
    metadata = get_entity_metadata(services.app_db(app_id), metadata_type, entity_id)
    return _ok_response({"metadata": metadata or {}})


@app.put("/metadata/{metadata_type}/{entity_id}")
async def save_metadata(metadata_type: str, entity_id: str, request: Request):
    app_id = _require_app_id(request)
    if isinstance(app_id, JSONResponse):
        return app_id
    if metadata_type not in METADATA_TYPES:
        return _error_response("METADATA_TYPE_INVALID", "Invalid metadata type", "metadata_type", status=400)
    body = await _safe_json(request)
    metadata = save_entity_metadata(services.app_db(app_id), metadata_type, entity_id, body)
    return _ok_response({"metadata": metadata})
