from __future__ import annotations

import copy
import logging
from typing import Any, Callable

logger = logging.getLogger("trellis.automations_runtime")

AUTOMATION_RUN_JOB = "automation.run"


def _as_number(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _filter_step(inputs: dict, context: dict) -> dict:
    field, condition, value = inputs.get("field"), inputs.get("condition"), inputs.get("value")
    if condition in ("GREATER_THAN", "LESS_THAN"):
        left, right = _as_number(field), _as_number(value)
        if left is None or right is None:
            return {"success": False, "result": False}
        result = left > right if condition == "GREATER_THAN" else left < right
    elif condition == "NOT_EQUAL":
        result = str(field) != str(value)
    else:
        result = str(field) == str(value)
    return {"success": True, "result": result}


def _server_log_step(inputs: dict, context: dict) -> dict:
    message = f"App {context.get('appId')} - {inputs.get('text')}"
    logger.info("automation_server_log %s", message)
    return {"success": True, "message": message}


def _delay_step(inputs: dict, context: dict) -> dict:
    # test runs never sleep
    return {"success": True}


STEP_HANDLERS: dict[str, Callable[[dict, dict], dict]] = {
    "FILTER": _filter_step,
    "SERVER_LOG": _server_log_step,
    "DELAY": _delay_step,
}


class TriggerRunner:
    """Hands automations to the automation worker, or runs simple steps inline.

    Queued runs are picked up by the worker; ``get_responses=True`` (manual
    tests) executes the steps this process knows and reports the rest as
    unsupported.
    """

    def __init__(self, job_store: Any, logs: Any) -> None:
        self.jobs = job_store
        self.logs = logs

    def external_trigger(self, automation: dict, params: dict, get_responses: bool = False) -> dict:
        definition = automation.get("definition") or {}
        trigger = definition.get("trigger") or {}
        app_id = params.get("appId")
        payload = copy.deepcopy(params)
        if trigger.get("stepId") == "APP" and isinstance(params.get("fields"), dict):
            payload = {"fields": copy.deepcopy(params["fields"]), "appId": app_id}
        if not get_responses:
            job = self.jobs.enqueue(
                {
                    "type": AUTOMATION_RUN_JOB,
                    "app_id": app_id,
                    "payload": {"automation_id": automation.get("_id"), "event": payload},
                }
            )
            logger.info("automation_enqueued automation_id=%s app_id=%s job_id=%s", automation.get("_id"), app_id, job.get("id"))
            return {"job": job}
        return self._run_inline(automation, payload)

    def _run_inline(self, automation: dict, payload: dict) -> dict:
        context = {"appId": payload.get("appId"), "trigger": payload, "steps": []}
        results = []
        status = "success"
        for step in (automation.get("definition") or {}).get("steps") or []:
            handler = STEP_HANDLERS.get(step.get("stepId"))
            inputs = copy.deepcopy(step.get("inputs") or {})
            if handler is None:
                outputs = {"success": False, "message": f"Step {step.get('stepId')} runs on the automation worker"}
                status = "error"
            else:
                outputs = handler(inputs, context)
            results.append({"id": step.get("id"), "stepId": step.get("stepId"), "inputs": inputs, "outputs": outputs})
            context["steps"].append(outputs)
            if step.get("stepId") == "FILTER" and not outputs.get("result"):
                status = "stopped"
                break
        self.logs.add(
            {
                "automationId": automation.get("_id"),
                "appId": payload.get("appId"),
                "status": status,
                "trigger": {"outputs": payload},
                "steps": results,
            }
        )
        logger.info("automation_ran_inline automation_id=%s status=%s steps=%s", automation.get("_id"), status, len(results))
        return {"trigger": {"outputs": payload}, "steps": results, "status": status}

    def cleanup_app(self, app_id: str) -> int:
        removed = self.jobs.delete_for_app(app_id)
        logger.info("automation_jobs_cleaned app_id=%s removed=%s", app_id, removed)
        return removed
