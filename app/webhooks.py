"""Webhook registrations backing webhook-triggered automations."""

from __future__ import annotations

import logging

from doc_store import DocumentNotFound
from trellis.doc_ids import generate_webhook_id, get_dev_app_id, get_prod_app_id

logger = logging.getLogger("trellis.webhooks")

WEBHOOK_STEP_ID = "WEBHOOK"
WEBHOOK_ACTION_AUTOMATION = "automation"


def _trigger(automation: dict | None) -> dict | None:
    if not isinstance(automation, dict):
        return None
    trigger = (automation.get("definition") or {}).get("trigger")
    return trigger if isinstance(trigger, dict) else None


def is_webhook_trigger(automation: dict | None) -> bool:
    trigger = _trigger(automation)
    return bool(trigger) and trigger.get("stepId") == WEBHOOK_STEP_ID


def new_webhook_doc(automation_id: str) -> dict:
    return {
        "_id": generate_webhook_id(),
        "name": "Automation webhook",
        "action": {"type": WEBHOOK_ACTION_AUTOMATION, "target": automation_id},
        "bodySchema": {},
    }


def check_for_webhooks(db, app_id: str, old_auto: dict | None = None, new_auto: dict | None = None) -> dict | None:
    """Create, drop or keep the webhook document for an automation's trigger.

    ``new_auto`` is updated in place (``webhookId`` and webhook URLs) and returned.
    """
    old_trigger = _trigger(old_auto)
    new_trigger = _trigger(new_auto)
    trigger_changed = bool(old_trigger and new_trigger and old_trigger.get("id") != new_trigger.get("id"))

    if (
        is_webhook_trigger(old_auto)
        and (not is_webhook_trigger(new_auto) or trigger_changed)
        and old_trigger.get("webhookId")
    ):
        if new_trigger is not None:
            new_trigger.pop("webhookId", None)
            new_trigger["inputs"] = {}
        try:
            webhook = db.get(old_trigger["webhookId"])
            db.remove(webhook["_id"], webhook["_rev"])
            logger.info("webhook_deleted webhook_id=%s app_id=%s", webhook["_id"], app_id)
        except DocumentNotFound:
            logger.info("webhook_already_gone webhook_id=%s app_id=%s", old_trigger["webhookId"], app_id)

    if (not is_webhook_trigger(old_auto) or trigger_changed) and is_webhook_trigger(new_auto):
        webhook = new_webhook_doc(new_auto.get("_id"))
        db.put(webhook)
        webhook_id = webhook["_id"]
        new_trigger["webhookId"] = webhook_id
        # schema discovery runs against the dev app, live triggers hit production
        new_trigger["inputs"] = {
            "schemaUrl": f"api/webhooks/schema/{get_dev_app_id(app_id)}/{webhook_id}",
            "triggerUrl": f"api/webhooks/trigger/{get_prod_app_id(app_id)}/{webhook_id}",
        }
        logger.info("webhook_created webhook_id=%s automation_id=%s app_id=%s", webhook_id, new_auto.get("_id"), app_id)

    return new_auto
