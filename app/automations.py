"""Automation CRUD, manual triggering and test runs."""

from __future__ import annotations

import copy
import logging
import time
from dataclasses import dataclass
from typing import Any, Union

from app.metadata import delete_entity_metadata, update_test_history
from app.results import FailureKind, fail, ok
from app.webhooks import check_for_webhooks
from doc_store import DocumentNotFound, docs_from_rows
from trellis.doc_ids import (
    APP_METADATA_ID,
    DocumentType,
    MetadataType,
    generate_automation_id,
    get_doc_params,
    get_prod_app_id,
)

logger = logging.getLogger("trellis.automations")

LEGACY_FIELDS = ("live",)


@dataclass
class CreateAutomation:
    automation: dict


@dataclass
class UpdateAutomation:
    automation: dict


AutomationIntent = Union[CreateAutomation, UpdateAutomation]


def resolve_intent(body: dict) -> AutomationIntent:
    """A body that already names a stored revision is an update, anything else a create."""
    automation = copy.deepcopy(body)
    if automation.get("_id") and automation.get("_rev"):
        return UpdateAutomation(automation)
    return CreateAutomation(automation)


def _is_empty_input(value: Any) -> bool:
    return value is None or value == ""


def clean_automation_inputs(automation: dict) -> dict:
    for legacy in LEGACY_FIELDS:
        automation.pop(legacy, None)
    definition = automation.get("definition") or {}
    steps = list(definition.get("steps") or [])
    for step in [*steps, definition.get("trigger")]:
        if not isinstance(step, dict) or not isinstance(step.get("inputs"), dict):
            continue
        step["inputs"] = {name: value for name, value in step["inputs"].items() if not _is_empty_input(value)}
    return automation


def _steps(automation: dict | None) -> list[dict]:
    definition = (automation or {}).get("definition") or {}
    return [s for s in definition.get("steps") or [] if isinstance(s, dict)]


def _trigger(automation: dict | None) -> dict | None:
    trigger = ((automation or {}).get("definition") or {}).get("trigger")
    return trigger if isinstance(trigger, dict) else None


def step_diff(old_ids: list, new_ids: list) -> tuple[list, list]:
    """Return (created, deleted) step ids between two step id sequences."""
    old_set, new_set = set(old_ids), set(new_ids)
    created = [step_id for step_id in new_ids if step_id not in old_set]
    deleted = [step_id for step_id in old_ids if step_id not in new_set]
    return created, deleted


def get_new_steps(old_automation: dict, automation: dict) -> list[dict]:
    old_ids = {s.get("id") for s in _steps(old_automation)}
    return [s for s in _steps(automation) if s.get("id") not in old_ids]


def get_deleted_steps(old_automation: dict, automation: dict) -> list[dict]:
    new_ids = {s.get("id") for s in _steps(automation)}
    return [s for s in _steps(old_automation) if s.get("id") not in new_ids]


def _event_payload(automation: dict) -> dict:
    trigger = _trigger(automation) or {}
    return {
        "automationId": automation.get("_id"),
        "appId": automation.get("appId"),
        "triggerId": trigger.get("id"),
        "triggerType": trigger.get("stepId"),
    }


def _step_payload(automation: dict, step: dict) -> dict:
    return {**_event_payload(automation), "stepId": step.get("id"), "stepType": step.get("stepId")}


def _handle_step_events(services, app_id: str, old_automation: dict, automation: dict) -> None:
    for step in get_new_steps(old_automation, automation):
        services.emit("automation.step_created", _step_payload(automation, step), app_id)
    for step in get_deleted_steps(old_automation, automation):
        services.emit("automation.step_deleted", _step_payload(automation, step), app_id)


def _load(db, automation_id: str) -> dict | None:
    try:
        return db.get(automation_id)
    except DocumentNotFound:
        return None


def _not_found(automation_id: str | None) -> dict:
    return fail(FailureKind.NOT_FOUND, "AUTOMATION_NOT_FOUND", f"Automation {automation_id} not found", "automation_id")


def save(services, app_id: str, intent: AutomationIntent) -> dict:
    if isinstance(intent, UpdateAutomation):
        return update(services, app_id, intent.automation)
    return create(services, app_id, intent.automation)


def create(services, app_id: str, automation: dict) -> dict:
    db = services.app_db(app_id)
    automation = copy.deepcopy(automation)
    automation["appId"] = app_id
    automation["_id"] = generate_automation_id()
    automation.pop("_rev", None)
    automation["type"] = "automation"
    automation = clean_automation_inputs(automation)
    automation = check_for_webhooks(db, app_id, new_auto=automation)
    response = db.put(automation)
    automation["_rev"] = response["rev"]
    services.emit("automation.created", _event_payload(automation), app_id)
    for step in _steps(automation):
        services.emit("automation.step_created", _step_payload(automation, step), app_id)
    logger.info("automation_created automation_id=%s app_id=%s steps=%s", automation["_id"], app_id, len(_steps(automation)))
    return ok(message="Automation created successfully", automation=automation)


def update(services, app_id: str, automation: dict) -> dict:
    db = services.app_db(app_id)
    automation = copy.deepcopy(automation)
    automation["appId"] = app_id
    old_automation = _load(db, automation.get("_id")) if automation.get("_id") else None
    if old_automation is None:
        return _not_found(automation.get("_id"))
    automation = clean_automation_inputs(automation)
    automation = check_for_webhooks(db, app_id, old_auto=old_automation, new_auto=automation)
    response = db.put(automation)
    automation["_rev"] = response["rev"]

    old_trigger = _trigger(old_automation)
    new_trigger = _trigger(automation) or {}
    if old_trigger and old_trigger.get("id") != new_trigger.get("id"):
        services.emit("automation.trigger_updated", _event_payload(automation), app_id)
        delete_entity_metadata(db, MetadataType.AUTOMATION_TEST_INPUT.value, automation["_id"])

    _handle_step_events(services, app_id, old_automation, automation)
    logger.info("automation_updated automation_id=%s app_id=%s rev=%s", automation["_id"], app_id, response["rev"])
    return ok(message=f"Automation {automation['_id']} updated successfully.", automation=automation)


def fetch(services, app_id: str) -> dict:
    db = services.app_db(app_id)
    params = get_doc_params(DocumentType.AUTOMATION)
    return ok(automations=docs_from_rows(db.all_docs(**params)))


def find(services, app_id: str, automation_id: str) -> dict:
    automation = _load(services.app_db(app_id), automation_id)
    if automation is None:
        return _not_found(automation_id)
    return ok(automation=automation)


def cleanup_automation_metadata(db, automation_id: str) -> None:
    delete_entity_metadata(db, MetadataType.AUTOMATION_TEST_INPUT.value, automation_id)
    delete_entity_metadata(db, MetadataType.AUTOMATION_TEST_HISTORY.value, automation_id)


def destroy(services, app_id: str, automation_id: str, rev: str) -> dict:
    db = services.app_db(app_id)
    old_automation = _load(db, automation_id)
    if old_automation is None:
        return _not_found(automation_id)
    check_for_webhooks(db, app_id, old_auto=old_automation)
    cleanup_automation_metadata(db, automation_id)
    result = db.remove(automation_id, rev)
    services.emit("automation.deleted", _event_payload(old_automation), app_id)
    logger.info("automation_deleted automation_id=%s app_id=%s", automation_id, app_id)
    return ok(**result)


def trigger(services, app_id: str, automation_id: str, body: dict) -> dict:
    automation = _load(services.app_db(app_id), automation_id)
    if automation is None:
        return _not_found(automation_id)
    services.runner.external_trigger(automation, {**(body or {}), "appId": app_id})
    return ok(message=f"Automation {automation['_id']} has been triggered.", automation=automation)


def prepare_test_input(test_input: dict) -> dict:
    row = test_input.get("row")
    if isinstance(row, dict):
        if test_input.get("id"):
            row["_id"] = test_input["id"]
        if test_input.get("revision"):
            row["_rev"] = test_input["revision"]
    return test_input


def test(services, app_id: str, automation_id: str, body: dict) -> dict:
    db = services.app_db(app_id)
    automation = _load(db, automation_id)
    if automation is None:
        return _not_found(automation_id)
    services.flags.set_test_flag(automation_id)
    try:
        test_input = prepare_test_input(copy.deepcopy(body or {}))
        response = services.runner.external_trigger(automation, {**test_input, "appId": app_id}, get_responses=True)
        update_test_history(db, automation_id, {**(body or {}), "occurredAt": int(time.time() * 1000)})
    finally:
        services.flags.clear_test_flag(automation_id)
    services.emit("automation.tested", _event_payload(automation), app_id)
    return ok(result=response)


def log_search(services, query: dict) -> dict:
    return ok(**services.logs.search(query or {}))


def clear_log_error(services, app_id: str, automation_id: str | None = None) -> dict:
    prod_app_id = get_prod_app_id(app_id)
    db = services.app_db(prod_app_id)
    try:
        metadata = db.get(APP_METADATA_ID)
    except DocumentNotFound:
        return fail(FailureKind.NOT_FOUND, "APP_NOT_FOUND", "App has not been published", "appId")
    errors = metadata.get("automationErrors")
    if not automation_id:
        metadata.pop("automationErrors", None)
    elif isinstance(errors, dict) and automation_id in errors:
        del errors[automation_id]
    response = db.put(metadata)
    metadata["_rev"] = response["rev"]
    services.cache.invalidate_app_metadata(metadata.get("appId") or prod_app_id, metadata)
    return ok(message="Error logs cleared.")
