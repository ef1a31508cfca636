"""Result dicts returned by controllers.

A controller returns ``ok(...)`` or ``fail(...)``; nothing above the HTTP layer
needs to catch exceptions to learn that a request was invalid.
"""

from __future__ import annotations

from typing import Any


class FailureKind:
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    QUOTA_EXCEEDED = "quota_exceeded"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"


FAILURE_STATUS = {
    FailureKind.VALIDATION: 400,
    FailureKind.NOT_FOUND: 404,
    FailureKind.CONFLICT: 409,
    FailureKind.QUOTA_EXCEEDED: 400,
    FailureKind.UPSTREAM_UNAVAILABLE: 502,
}


def issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> dict:
    return {"code": code, "message": message, "path": path, "detail": detail}


def ok(**payload: Any) -> dict:
    return {"ok": True, **payload, "errors": [], "warnings": []}


def fail(
    kind: str,
    code: str,
    message: str,
    path: str | None = None,
    detail: dict | None = None,
    status: int | None = None,
) -> dict:
    return {
        "ok": False,
        "kind": kind,
        "status": status or FAILURE_STATUS.get(kind, 400),
        "errors": [issue(code, message, path, detail)],
        "warnings": [],
    }


def first_error(result: dict) -> dict | None:
    errors = result.get("errors") or []
    return errors[0] if errors else None
