"""In-memory stand-ins for the platform services the controllers call."""

from __future__ import annotations

import copy
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List

from app.context import get_tenant_id
from app.templates import TemplateImportError

logger = logging.getLogger("trellis.stores")

USAGE_LIMIT_EXCEEDED = "USAGE_LIMIT_EXCEEDED"


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class QuotaExceededError(RuntimeError):
    code = USAGE_LIMIT_EXCEEDED

    def __init__(self, resource: str, limit: int, requested: int) -> None:
        super().__init__(f"Usage limit exceeded for {resource}: {requested} > {limit}")
        self.resource = resource
        self.limit = limit
        self.requested = requested


class MemoryLockStore:
    """Builder edit locks keyed by app id (read-only from the controllers)."""

    def __init__(self) -> None:
        self._locks: Dict[str, dict] = {}

    def set_lock(self, app_id: str, user: dict) -> None:
        self._locks[app_id] = copy.deepcopy(user)

    def clear_lock(self, app_id: str) -> None:
        self._locks.pop(app_id, None)

    def get_locks_by_id(self, app_ids: list[str]) -> dict[str, dict]:
        return {app_id: copy.deepcopy(self._locks[app_id]) for app_id in app_ids if app_id in self._locks}


class MemoryQuotaStore:
    """Per-tenant app and row usage with optional hard limits."""

    def __init__(self, max_apps: int | None = None, max_rows: int | None = None) -> None:
        self.max_apps = max_apps
        self.max_rows = max_rows
        self._usage: Dict[str, Dict[str, int]] = {}

    def _bucket(self) -> Dict[str, int]:
        return self._usage.setdefault(get_tenant_id(), {"apps": 0, "rows": 0})

    def usage(self) -> dict:
        return dict(self._bucket())

    def add_app(self, create: Callable[[], Any]) -> Any:
        bucket = self._bucket()
        if self.max_apps is not None and bucket["apps"] + 1 > self.max_apps:
            raise QuotaExceededError("apps", self.max_apps, bucket["apps"] + 1)
        result = create()
        bucket["apps"] += 1
        return result

    def remove_app(self) -> None:
        bucket = self._bucket()
        bucket["apps"] = max(bucket["apps"] - 1, 0)

    def add_rows(self, count: int) -> None:
        bucket = self._bucket()
        requested = bucket["rows"] + count
        if self.max_rows is not None and requested > self.max_rows:
            raise QuotaExceededError("rows", self.max_rows, requested)
        bucket["rows"] = requested

    def remove_rows(self, count: int) -> None:
        bucket = self._bucket()
        bucket["rows"] = max(bucket["rows"] - count, 0)


class MemoryMetadataCache:
    """App metadata and builder cache entries, keyed like the shared cache."""

    def __init__(self) -> None:
        self._entries: Dict[str, Any] = {}

    @staticmethod
    def _app_key(app_id: str) -> str:
        return f"app_metadata:{app_id}"

    def get_app_metadata(self, app_id: str) -> dict | None:
        item = self._entries.get(self._app_key(app_id))
        return copy.deepcopy(item) if item else None

    def invalidate_app_metadata(self, app_id: str, new_doc: dict | None = None) -> None:
        if new_doc is None:
            self._entries.pop(self._app_key(app_id), None)
        else:
            self._entries[self._app_key(app_id)] = copy.deepcopy(new_doc)

    def bust_cache(self, key: str) -> None:
        self._entries.pop(key, None)


class MemoryFlagStore:
    def __init__(self) -> None:
        self._test_flags: set[str] = set()

    def set_test_flag(self, automation_id: str) -> None:
        self._test_flags.add(automation_id)

    def clear_test_flag(self, automation_id: str) -> None:
        self._test_flags.discard(automation_id)

    def is_test_flagged(self, automation_id: str) -> bool:
        return automation_id in self._test_flags


class MemoryAutomationLogStore:
    PAGE_SIZE = 20

    def __init__(self, retention_days: int = 30) -> None:
        self.retention_days = retention_days
        self._logs: List[dict] = []

    def _live(self) -> List[dict]:
        cutoff = (datetime.now(timezone.utc) - timedelta(days=self.retention_days)).strftime("%Y-%m-%dT%H:%M:%SZ")
        self._logs = [i for i in self._logs if i.get("createdAt", "") >= cutoff]
        return self._logs

    def existing_ids(self, log_ids) -> set:
        """The subset of ``log_ids`` still inside the retention window."""
        wanted = set(log_ids)
        return {i["_id"] for i in self._live() if i["_id"] in wanted}

    def add(self, log: dict) -> dict:
        item = copy.deepcopy(log)
        item.setdefault("_id", f"log_{uuid.uuid4().hex}")
        item.setdefault("createdAt", _now())
        item.setdefault("status", "success")
        self._logs.append(item)
        return copy.deepcopy(item)

    def search(self, query: dict) -> dict:
        query = query or {}
        items = list(self._live())
        if query.get("automationId"):
            items = [i for i in items if i.get("automationId") == query["automationId"]]
        if query.get("status"):
            items = [i for i in items if i.get("status") == query["status"]]
        if query.get("appId"):
            items = [i for i in items if i.get("appId") == query["appId"]]
        items.sort(key=lambda i: i.get("createdAt", ""), reverse=True)
        page = int(query.get("page") or 0)
        start = page * self.PAGE_SIZE
        chunk = items[start : start + self.PAGE_SIZE]
        result: dict = {"data": [copy.deepcopy(i) for i in chunk], "hasNextPage": start + self.PAGE_SIZE < len(items)}
        if result["hasNextPage"]:
            result["nextPage"] = page + 1
        return result


class MemoryJobStore:
    def __init__(self) -> None:
        self._jobs: Dict[str, dict] = {}

    def enqueue(self, job: dict) -> dict:
        record = copy.deepcopy(job)
        idem = record.get("idempotency_key")
        if idem:
            for existing in self._jobs.values():
                if existing.get("idempotency_key") == idem and existing.get("type") == record.get("type"):
                    return copy.deepcopy(existing)
        record.setdefault("id", str(uuid.uuid4()))
        record.setdefault("status", "queued")
        record.setdefault("attempt", 0)
        record.setdefault("created_at", _now())
        record.setdefault("updated_at", _now())
        self._jobs[record["id"]] = record
        return copy.deepcopy(record)

    def get(self, job_id: str) -> dict | None:
        job = self._jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    def list(self, app_id: str | None = None, status: str | None = None, job_type: str | None = None) -> list[dict]:
        items = list(self._jobs.values())
        if app_id:
            items = [j for j in items if j.get("app_id") == app_id]
        if status:
            items = [j for j in items if j.get("status") == status]
        if job_type:
            items = [j for j in items if j.get("type") == job_type]
        items.sort(key=lambda j: j.get("created_at", ""), reverse=True)
        return [copy.deepcopy(j) for j in items]

    def delete_for_app(self, app_id: str) -> int:
        doomed = [job_id for job_id, job in self._jobs.items() if job.get("app_id") == app_id]
        for job_id in doomed:
            del self._jobs[job_id]
        return len(doomed)


class MemoryClientLibraryStore:
    """Tracks which client library build each app serves, plus one backup."""

    def __init__(self) -> None:
        self._libs: Dict[str, dict] = {}

    def get(self, app_id: str) -> dict:
        return copy.deepcopy(self._libs.get(app_id) or {})

    def create(self, app_id: str, version: str) -> None:
        self._libs[app_id] = {"current": version, "backup": None}

    def backup(self, app_id: str) -> None:
        lib = self._libs.setdefault(app_id, {"current": None, "backup": None})
        lib["backup"] = lib.get("current")

    def update(self, app_id: str, version: str) -> None:
        self._libs.setdefault(app_id, {"current": None, "backup": None})["current"] = version

    def revert(self, app_id: str, version: str) -> None:
        """Restore the backup build, or ``version`` when no backup survived."""
        lib = self._libs.setdefault(app_id, {"current": None, "backup": None})
        if not lib.get("backup"):
            logger.info("client_library_backup_missing app_id=%s version=%s", app_id, version)
        lib["current"], lib["backup"] = lib.get("backup") or version, None

    def delete(self, app_id: str) -> None:
        self._libs.pop(app_id, None)


class MemoryWorkerClient:
    """Records calls that would go to the worker / user directory service."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []

    def remove_app_from_user_roles(self, app_id: str) -> None:
        self.calls.append(("remove_app_roles", app_id))

    def sync_global_users(self, app_id: str) -> None:
        self.calls.append(("sync_global_users", app_id))

    def cleanup_app_groups(self, app_id: str) -> None:
        self.calls.append(("cleanup_app_groups", app_id))


class MemoryTemplateRepository:
    def __init__(self, templates: dict[str, bytes] | None = None) -> None:
        self._templates = dict(templates or {})

    def add(self, key: str, package: bytes) -> None:
        self._templates[key] = package

    def download(self, key: str) -> bytes:
        if key not in self._templates:
            raise TemplateImportError(f"Template not found: {key}")
        return self._templates[key]
