"""Application lifecycle: create, update, client version, destroy and sync."""

from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from app.context import get_tenant_id
from app.results import FailureKind, fail, ok
from app.sample_data import USERS_TABLE_SCHEMA, build_default_docs
from app.stores import QuotaExceededError
from app.templates import TemplateImportError, import_app
from doc_store import DocumentConflict, DocumentNotFound, Replication, docs_from_rows
from trellis.doc_ids import (
    APP_METADATA_ID,
    APP_PREFIX,
    DESIGN_DOC_ID,
    DocumentType,
    generate_app_id,
    get_dev_app_id,
    get_doc_params,
    get_prod_app_id,
    get_row_params,
    is_app_id,
    is_dev_app_id,
)
from trellis.roles import BuiltinRole, filter_screens

logger = logging.getLogger("trellis.applications")


class AppStatus:
    DEV = "development"
    PUBLISHED = "published"
    ALL = "all"


URL_SEPARATORS = re.compile(r"[/\\]")
PRIVATE_LAYOUT_ID = "layout_private_master"
CHECKLIST_CACHE_KEY = "checklist"
COPY_FORWARD_KEYS = ("_rev", "navigation", "theme", "customTheme", "icon")

SYNC_DISABLED_MESSAGE = "App sync disabled. You can reenable with the DISABLE_AUTO_PROD_APP_SYNC environment variable."
SYNC_NOT_DEPLOYED_MESSAGE = "App sync not required, app not deployed."
SYNC_COMPLETE_MESSAGE = "App sync completed successfully."

# indexes every app namespace starts with
DESIGN_DOC = {
    "_id": DESIGN_DOC_ID,
    "views": {
        "by_link": {"type": "link", "emit": ["tableId", "fieldName", "id"]},
        "screen_routes": {"type": "screen", "emit": ["routing.route", "routing.roleId"]},
    },
    "indexes": {"search": {"type": "row", "fields": "*"}},
}


def _now() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def _is_true(value: Any) -> bool:
    return value is True or (isinstance(value, str) and value.strip().lower() == "true")


def client_library_path(app_id: str, version: str | None) -> str:
    return f"/api/assets/{app_id}/client?version={version}"


# -------- validation --------


def get_app_url(body: dict) -> str | None:
    url = body.get("url") or body.get("name")
    if not url:
        return None
    return f"/{URL_SEPARATORS.sub('', str(url))}".lower()


def check_app_name(apps: list[dict], name: Any, current_app_id: str | None = None) -> dict | None:
    if not name:
        return fail(FailureKind.VALIDATION, "NAME_REQUIRED", "Name is required", "name")
    if current_app_id:
        apps = [a for a in apps if a.get("appId") != current_app_id]
    if any(a.get("name") == name for a in apps):
        return fail(FailureKind.VALIDATION, "NAME_IN_USE", "App name is already in use.", "name")
    return None


def check_app_url(apps: list[dict], url: str | None, current_app_id: str | None = None) -> dict | None:
    if current_app_id:
        apps = [a for a in apps if a.get("appId") != current_app_id]
    if any(a.get("url") == url for a in apps):
        return fail(FailureKind.VALIDATION, "URL_IN_USE", "App URL is already in use.", "url")
    return None


# -------- reads --------


def get_all_apps(services, dev: bool = False, include_all: bool = False) -> list[dict]:
    """App metadata of the current tenant, development or published namespaces."""
    tenant_id = get_tenant_id()
    apps = []
    for name in services.documents.list_databases(APP_PREFIX):
        is_dev = is_dev_app_id(name)
        if not include_all and is_dev != dev:
            continue
        try:
            app = services.app_db(name).get(APP_METADATA_ID)
        except DocumentNotFound:
            continue
        if app.get("tenantId") not in (None, tenant_id):
            continue
        apps.append(app)
    return apps


def _annotate_locks(services, apps: list[dict]) -> None:
    dev_ids = [a.get("appId") for a in apps if a.get("status") == AppStatus.DEV]
    try:
        locks = services.locks.get_locks_by_id(dev_ids)
    except Exception as exc:
        logger.warning("app_lock_lookup_failed apps=%s error=%s", len(dev_ids), exc)
        locks = {}
    for app in apps:
        lock = locks.get(app.get("appId"))
        if lock:
            app["lockedBy"] = lock
        else:
            app.pop("lockedBy", None)


def list_apps(services, status: str | None = None) -> dict:
    dev = status == AppStatus.DEV
    include_all = status == AppStatus.ALL
    apps = get_all_apps(services, dev=dev, include_all=include_all)
    if dev or include_all:
        _annotate_locks(services, apps)
    _prune_automation_errors(services, apps)
    return ok(applications=apps)


def _prune_automation_errors(services, apps: list[dict]) -> None:
    """Drop error entries whose automation logs have aged out of the log store."""
    for app in apps:
        errors = app.get("automationErrors")
        if not isinstance(errors, dict) or not errors:
            continue
        live = services.logs.existing_ids(log_id for ids in errors.values() for log_id in ids or [])
        pruned = {}
        for automation_id, ids in errors.items():
            kept = [log_id for log_id in ids or [] if log_id in live]
            if kept:
                pruned[automation_id] = kept
        if pruned == errors:
            continue
        app["automationErrors"] = pruned
        stored = {k: v for k, v in app.items() if k != "lockedBy"}
        try:
            result = services.app_db(app["appId"]).put(stored)
        except DocumentConflict:
            logger.warning("automation_errors_prune_conflict app_id=%s", app.get("appId"))
            continue
        app["_rev"] = result["rev"]
        services.cache.invalidate_app_metadata(app["appId"])


def _docs_of_type(db, doc_type: DocumentType) -> list[dict]:
    return docs_from_rows(db.all_docs(**get_doc_params(doc_type)))


def _load_app(db) -> dict | None:
    try:
        return db.get(APP_METADATA_ID)
    except DocumentNotFound:
        return None


def _app_not_found(app_id: str) -> dict:
    return fail(FailureKind.NOT_FOUND, "APP_NOT_FOUND", f"App {app_id} not found", "appId")


def definition(services, app_id: str, role_id: str | None = None) -> dict:
    db = services.app_db(app_id)
    return ok(
        layouts=_docs_of_type(db, DocumentType.LAYOUT),
        screens=filter_screens(_docs_of_type(db, DocumentType.SCREEN), role_id or BuiltinRole.PUBLIC),
        libraries=list(services.settings.component_libraries),
    )


def package(services, app_id: str, role_id: str | None = None, builder: bool = False) -> dict:
    db = services.app_db(app_id)
    application = services.cache.get_app_metadata(app_id)
    if application is None:
        application = _load_app(db)
        if application is None:
            return _app_not_found(app_id)
        services.cache.invalidate_app_metadata(app_id, application)
    screens = _docs_of_type(db, DocumentType.SCREEN)
    # global builders see every screen
    if not builder:
        screens = filter_screens(screens, role_id or BuiltinRole.PUBLIC)
    return ok(
        application=application,
        screens=screens,
        layouts=_docs_of_type(db, DocumentType.LAYOUT),
        clientLibPath=client_library_path(app_id, application.get("version")),
    )


def get_unique_rows(services, app_ids: list[str]) -> set[str]:
    """Row ids across the development and production namespaces of the given apps."""
    rows: set[str] = set()
    for app_id in app_ids:
        if not is_app_id(app_id):
            continue
        for name in {get_dev_app_id(app_id), get_prod_app_id(app_id)}:
            if not services.documents.exists(name):
                continue
            result = services.app_db(name).all_docs(**get_row_params(include_docs=False))
            rows.update(row["id"] for row in result.get("rows", []))
    return rows


# -------- create --------


@dataclass
class InstanceTemplate:
    """Where the new app's documents come from; exactly one source applies."""

    use_template: bool = False
    key: str | None = None
    template_string: str | None = None
    file: Any = None

    @classmethod
    def from_request(cls, body: dict, template_file: Any = None) -> "InstanceTemplate":
        return cls(
            use_template=_is_true(body.get("useTemplate")),
            key=body.get("templateKey"),
            template_string=body.get("templateString"),
            file=template_file,
        )

    @property
    def imports_data(self) -> bool:
        return bool(self.template_string) or self.use_template


def create_instance(services, template: InstanceTemplate, include_sample_data: bool) -> dict:
    app_id = get_dev_app_id(generate_app_id(services.tenant_for_new_app()))
    db = services.app_db(app_id)
    db.put(copy.deepcopy(DESIGN_DOC))

    try:
        if template.template_string:
            try:
                result = db.load(template.template_string)
            except ValueError as exc:
                raise TemplateImportError(f"Error loading database dump from memory: {exc}") from exc
            if not result.get("ok"):
                raise TemplateImportError("Error loading database dump from memory.")
        elif template.use_template:
            import_app(db, services.templates, {"file": template.file, "key": template.key})
        else:
            db.put(USERS_TABLE_SCHEMA)
            if include_sample_data:
                db.bulk_docs(build_default_docs())
    except TemplateImportError:
        db.destroy()
        raise
    return {"_id": app_id}


def migrate_app_navigation(db, existing: dict) -> dict | None:
    """Move shared layout settings onto screens; derive app navigation from the private layout."""
    layouts = _docs_of_type(db, DocumentType.LAYOUT)
    by_id = {layout.get("_id"): layout for layout in layouts}

    for screen in _docs_of_type(db, DocumentType.SCREEN):
        if not screen.get("layoutId"):
            continue
        props = (by_id.get(screen["layoutId"]) or {}).get("props") or {}
        screen.pop("layoutId")
        screen["showNavigation"] = props.get("navigation") != "None"
        screen["width"] = props.get("width") or "Large"
        db.put(screen)

    layout = by_id.get(PRIVATE_LAYOUT_ID)
    if layout is None or existing.get("navigation"):
        return None
    props = layout.get("props") or {}
    name = existing.get("name")
    custom_theme = existing.get("customTheme") or {}
    navigation = {
        "navigation": props.get("navigation") or "Top",
        "title": props.get("title") or name,
        "navWidth": props.get("width") or "Large",
        "navBackground": custom_theme.get("navBackground") or "var(--spectrum-global-color-gray-50)",
        "navTextColor": custom_theme.get("navTextColor") or "var(--spectrum-global-color-gray-800)",
        "hideLogo": props.get("hideLogo"),
        "hideTitle": props.get("hideTitle"),
        "logoUrl": props.get("logoUrl"),
        "links": props.get("links"),
        "sticky": props.get("sticky"),
    }
    if navigation["navigation"] == "None":
        navigation["navigation"] = "Top"
    return navigation


def _new_application(services, app_id: str, name: str, url: str | None, template: InstanceTemplate) -> dict:
    now = _now()
    return {
        "_id": APP_METADATA_ID,
        "appId": app_id,
        "type": "app",
        "version": services.settings.client_version,
        "componentLibraries": list(services.settings.component_libraries),
        "name": name,
        "url": url,
        "template": template.key,
        "instance": {"_id": app_id},
        "tenantId": get_tenant_id(),
        "updatedAt": now,
        "createdAt": now,
        "status": AppStatus.DEV,
        "navigation": {
            "navigation": "Top",
            "title": name,
            "navWidth": "Large",
            "navBackground": "var(--spectrum-global-color-gray-100)",
            "links": [{"url": "/home", "text": "Home"}],
        },
        "theme": "spectrum--light",
        "customTheme": {"buttonBorderRadius": "16px"},
    }


def _perform_create(services, name: str, url: str | None, template: InstanceTemplate, include_sample_data: bool) -> dict:
    instance = create_instance(services, template, include_sample_data)
    app_id = instance["_id"]
    db = services.app_db(app_id)
    application = _new_application(services, app_id, name, url, template)

    # imports bring their own app metadata
    try:
        existing = db.get(APP_METADATA_ID)
    except DocumentNotFound:
        existing = None
    if existing:
        for key in COPY_FORWARD_KEYS:
            if existing.get(key):
                application[key] = existing[key]
        navigation = migrate_app_navigation(db, existing)
        if navigation:
            application["navigation"] = navigation

    response = db.put(application, force=True)
    application["_rev"] = response["rev"]
    services.client_library.create(app_id, application["version"])
    services.cache.invalidate_app_metadata(app_id, application)
    logger.info("app_created app_id=%s tenant_id=%s", app_id, application["tenantId"])
    return application


def _app_event_payload(app: dict, **extra: Any) -> dict:
    return {"appId": app.get("appId"), "name": app.get("name"), "version": app.get("version"), **extra}


def _creation_events(services, template: InstanceTemplate, app: dict) -> None:
    app_id = app.get("appId")
    if template.use_template:
        if template.key and template.key != "undefined":
            services.emit("app.template_imported", _app_event_payload(app, templateKey=template.key), app_id)
        elif template.file is not None:
            services.emit("app.file_imported", _app_event_payload(app), app_id)
        else:
            logger.error("app_creation_event_unknown app_id=%s", app_id)
    services.emit("app.created", _app_event_payload(app), app_id)


def _post_create(services, template: InstanceTemplate, include_sample_data: bool, app: dict) -> dict | None:
    _creation_events(services, template, app)
    if not (template.imports_data or include_sample_data):
        return None
    row_count = len(get_unique_rows(services, [app["appId"]]))
    if not row_count:
        return None
    try:
        services.quotas.add_rows(row_count)
    except QuotaExceededError as exc:
        # rows were never counted, so no quota steps around the delete
        logger.warning("app_import_over_quota app_id=%s rows=%s limit=%s", app["appId"], row_count, exc.limit)
        destroy_app(services, app["appId"])
        return _quota_failure(exc)
    return None


def _quota_failure(exc: QuotaExceededError) -> dict:
    return fail(
        FailureKind.QUOTA_EXCEEDED,
        exc.code,
        str(exc),
        exc.resource,
        {"limit": exc.limit, "requested": exc.requested},
    )


def create(services, body: dict, template_file: Any = None) -> dict:
    apps = get_all_apps(services, dev=True)
    name = body.get("name")
    failure = check_app_name(apps, name)
    if failure:
        return failure
    url = get_app_url(body)
    failure = check_app_url(apps, url)
    if failure:
        return failure

    template = InstanceTemplate.from_request(body, template_file)
    include_sample_data = _is_true(body.get("sampleData"))
    try:
        application = services.quotas.add_app(
            lambda: _perform_create(services, name, url, template, include_sample_data)
        )
    except QuotaExceededError as exc:
        return _quota_failure(exc)
    except TemplateImportError as exc:
        return fail(FailureKind.VALIDATION, "TEMPLATE_IMPORT_FAILED", str(exc), "template")

    failure = _post_create(services, template, include_sample_data, application)
    if failure:
        return failure
    services.cache.bust_cache(CHECKLIST_CACHE_KEY)
    return ok(application=application)


# -------- update --------


def update_app_package(services, app_package: dict, app_id: str) -> dict | None:
    db = services.app_db(app_id)
    application = _load_app(db)
    if application is None:
        return None
    updated = {**application, **app_package}
    if app_package.get("_rev") != application.get("_rev"):
        updated["_rev"] = application["_rev"]
    # lock holders come from the lock service
    updated.pop("lockedBy", None)
    response = db.put(updated)
    updated["_rev"] = response["rev"]
    services.cache.invalidate_app_metadata(app_id)
    return updated


def update(services, app_id: str, patch: dict) -> dict:
    patch = copy.deepcopy(patch or {})
    apps = get_all_apps(services, dev=True)
    if patch.get("name"):
        failure = check_app_name(apps, patch["name"], app_id)
        if failure:
            return failure
    url = get_app_url(patch)
    if url:
        failure = check_app_url(apps, url, app_id)
        if failure:
            return failure
        patch["url"] = url
    patch["updatedAt"] = _now()

    app = update_app_package(services, patch, app_id)
    if app is None:
        return _app_not_found(app_id)
    services.emit("app.updated", _app_event_payload(app), app_id)
    return ok(application=app)


def update_client(services, app_id: str) -> dict:
    application = _load_app(services.app_db(app_id))
    if application is None:
        return _app_not_found(app_id)
    current_version = application.get("version")
    updated_to = services.settings.client_version

    services.client_library.backup(app_id)
    services.client_library.update(app_id, updated_to)

    app = update_app_package(services, {"version": updated_to, "revertableVersion": current_version}, app_id)
    services.emit("app.version_updated", _app_event_payload(app, fromVersion=current_version, toVersion=updated_to), app_id)
    return ok(application=app)


def revert_client(services, app_id: str) -> dict:
    application = _load_app(services.app_db(app_id))
    if application is None:
        return _app_not_found(app_id)
    if not application.get("revertableVersion"):
        return fail(FailureKind.VALIDATION, "NO_REVERTABLE_VERSION", "There is no version to revert to", "revertableVersion")

    current_version = application.get("version")
    reverted_to = application["revertableVersion"]
    services.client_library.revert(app_id, reverted_to)
    app = update_app_package(services, {"version": reverted_to, "revertableVersion": None}, app_id)
    services.emit("app.version_reverted", _app_event_payload(app, fromVersion=current_version, toVersion=reverted_to), app_id)
    return ok(application=app)


# -------- destroy --------


def destroy_app(services, app_id: str, unpublish: bool = False) -> dict:
    if unpublish:
        app_id = get_prod_app_id(app_id)
    db = services.app_db(app_id)
    app = _load_app(db)
    if app is None:
        return _app_not_found(app_id)
    result = db.destroy()

    if unpublish:
        services.emit("app.unpublished", _app_event_payload(app), app_id)
        # automations only run in production
        services.runner.cleanup_app(app_id)
    else:
        services.quotas.remove_app()
        services.emit("app.deleted", _app_event_payload(app), app_id)
        services.client_library.delete(app_id)
        services.worker.remove_app_from_user_roles(app_id)
    services.cache.invalidate_app_metadata(app_id)
    logger.info("app_destroyed app_id=%s unpublish=%s", app_id, unpublish)
    return ok(**result)


def destroy(services, app_id: str, unpublish: bool = False) -> dict:
    row_count = len(get_unique_rows(services, [app_id]))
    result = destroy_app(services, app_id, unpublish=unpublish)
    if not result["ok"] or unpublish:
        return result
    services.worker.cleanup_app_groups(app_id)
    if row_count:
        services.quotas.remove_rows(row_count)
    return result


# -------- sync --------


def sync(services, app_id: str) -> dict:
    if services.settings.disable_auto_prod_app_sync:
        return ok(message=SYNC_DISABLED_MESSAGE)
    if not is_dev_app_id(app_id):
        return fail(FailureKind.VALIDATION, "PROD_APP_SYNC", "This action cannot be performed for production apps", "appId")

    prod_app_id = get_prod_app_id(app_id)
    if not services.app_db(prod_app_id, skip_setup=True).exists():
        return ok(message=SYNC_NOT_DEPLOYED_MESSAGE)

    replication = Replication(services.documents, prod_app_id, app_id)
    error = None
    try:
        replication.replicate(replication.app_replicate_opts())
    except Exception as exc:
        logger.warning("app_sync_failed app_id=%s error=%s", app_id, exc)
        error = exc
    finally:
        replication.close()

    services.worker.sync_global_users(app_id)

    if error is not None:
        return fail(FailureKind.UPSTREAM_UNAVAILABLE, "APP_SYNC_FAILED", str(error), "appId", status=400)
    return ok(message=SYNC_COMPLETE_MESSAGE)
