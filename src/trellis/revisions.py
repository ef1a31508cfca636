"""Revision markers for optimistic concurrency."""

from __future__ import annotations

import hashlib
import json
from typing import Any


def rev_number(rev: str | None) -> int:
    if not isinstance(rev, str) or "-" not in rev:
        return 0
    head = rev.split("-", 1)[0]
    return int(head) if head.isascii() and head.isdigit() else 0


def next_rev(current: str | None, doc: Any) -> str:
    """Return the revision that follows ``current`` for the given document body.

    Revisions look like ``<n>-<digest>`` where ``n`` counts writes.
    """
    body = {k: v for k, v in (doc or {}).items() if k != "_rev"}
    digest = hashlib.md5(json.dumps(body, sort_keys=True, default=str).encode("utf-8")).hexdigest()
    return f"{rev_number(current) + 1}-{digest}"
