"""Trigger and action step definitions offered to the automation builder."""

from __future__ import annotations

import copy


def _definition(step_id: str, kind: str, name: str, tagline: str, inputs: dict, outputs: dict, **extra) -> dict:
    return {
        "stepId": step_id,
        "type": kind,
        "name": name,
        "tagline": tagline,
        "icon": extra.pop("icon", "Workflow"),
        "description": extra.pop("description", tagline),
        "inputs": {},
        "schema": {
            "inputs": {"properties": inputs, "required": extra.pop("required", [])},
            "outputs": {"properties": outputs},
        },
        **extra,
    }


_ROW_OUTPUTS = {"row": {"type": "object", "description": "The row"}, "id": {"type": "string"}, "revision": {"type": "string"}}

TRIGGER_DEFINITIONS = {
    "ROW_SAVED": _definition(
        "ROW_SAVED", "TRIGGER", "Row Created", "Row is added to {{inputs.enriched.table.name}}",
        {"tableId": {"type": "string", "customType": "table"}}, _ROW_OUTPUTS, required=["tableId"], icon="TableRowAddBottom",
    ),
    "ROW_UPDATED": _definition(
        "ROW_UPDATED", "TRIGGER", "Row Updated", "Row is updated in {{inputs.enriched.table.name}}",
        {"tableId": {"type": "string", "customType": "table"}}, _ROW_OUTPUTS, required=["tableId"], icon="Refresh",
    ),
    "ROW_DELETED": _definition(
        "ROW_DELETED", "TRIGGER", "Row Deleted", "Row is deleted from {{inputs.enriched.table.name}}",
        {"tableId": {"type": "string", "customType": "table"}}, {"row": {"type": "object"}}, required=["tableId"], icon="TableRowRemoveCenter",
    ),
    "WEBHOOK": _definition(
        "WEBHOOK", "TRIGGER", "Webhook", "Webhook endpoint is hit",
        {"schemaUrl": {"type": "string", "customType": "webhookUrl"}, "triggerUrl": {"type": "string", "customType": "webhookUrl"}},
        {"body": {"type": "object"}}, required=["schemaUrl", "triggerUrl"], icon="Send",
    ),
    "APP": _definition(
        "APP", "TRIGGER", "App Action", "Automation fired from the frontend",
        {"fields": {"type": "object", "customType": "triggerSchema"}}, {"fields": {"type": "object"}}, icon="Apps",
    ),
    "CRON": _definition(
        "CRON", "TRIGGER", "Cron Trigger", "Cron Trigger (<b>{{inputs.cron}}</b>)",
        {"cron": {"type": "string", "customType": "cron"}}, {"timestamp": {"type": "number"}}, required=["cron"], icon="Clock",
    ),
}

ACTION_DEFINITIONS = {
    "CREATE_ROW": _definition(
        "CREATE_ROW", "ACTION", "Create Row", "Create a {{inputs.enriched.table.name}} row",
        {"row": {"type": "object", "customType": "row"}}, _ROW_OUTPUTS, required=["row"], icon="TableRowAddBottom",
    ),
    "UPDATE_ROW": _definition(
        "UPDATE_ROW", "ACTION", "Update Row", "Update a {{inputs.enriched.table.name}} row",
        {"rowId": {"type": "string"}, "row": {"type": "object", "customType": "row"}}, _ROW_OUTPUTS, required=["row", "rowId"],
    ),
    "DELETE_ROW": _definition(
        "DELETE_ROW", "ACTION", "Delete Row", "Delete a {{inputs.enriched.table.name}} row",
        {"tableId": {"type": "string", "customType": "table"}, "id": {"type": "string"}}, {"success": {"type": "boolean"}},
        required=["tableId", "id"],
    ),
    "SERVER_LOG": _definition(
        "SERVER_LOG", "ACTION", "Backend log", "Console log a value in the backend",
        {"text": {"type": "string"}}, {"success": {"type": "boolean"}, "message": {"type": "string"}}, required=["text"], icon="Monitoring",
    ),
    "DELAY": _definition(
        "DELAY", "LOGIC", "Delay", "Delay for {{inputs.time}} milliseconds",
        {"time": {"type": "number"}}, {"success": {"type": "boolean"}}, required=["time"], icon="Clock",
    ),
    "FILTER": _definition(
        "FILTER", "LOGIC", "Condition", "{{inputs.field}} {{inputs.condition}} {{inputs.value}}",
        {"field": {"type": "string"}, "condition": {"type": "string", "enum": ["EQUAL", "NOT_EQUAL", "GREATER_THAN", "LESS_THAN"]},
         "value": {"type": "string"}},
        {"success": {"type": "boolean"}, "result": {"type": "boolean"}}, required=["field", "condition", "value"], icon="Branch2",
    ),
    "OUTGOING_WEBHOOK": _definition(
        "OUTGOING_WEBHOOK", "ACTION", "Outgoing webhook", "Send a {{inputs.requestMethod}} request",
        {"url": {"type": "string"}, "requestMethod": {"type": "string"}}, {"response": {"type": "object"}},
        icon="Send", deprecated=True,
    ),
}


def remove_deprecated(definitions: dict) -> dict:
    return {key: copy.deepcopy(d) for key, d in definitions.items() if not d.get("deprecated")}


def action_list() -> dict:
    return remove_deprecated(ACTION_DEFINITIONS)


def trigger_list() -> dict:
    return remove_deprecated(TRIGGER_DEFINITIONS)


def definition_list() -> dict:
    return {"trigger": trigger_list(), "action": action_list()}
