"""HTTP client for the worker service (user directory, roles, groups)."""

from __future__ import annotations

import logging
import os

import httpx

from app.context import get_tenant_id
from trellis.doc_ids import get_prod_app_id

logger = logging.getLogger("trellis.worker_client")


class WorkerRequestError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class WorkerClient:
    def __init__(self, base_url: str, api_key: str | None = None, timeout: float | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key or ""
        self.timeout = timeout if timeout is not None else float(os.getenv("TRELLIS_HTTP_TIMEOUT", "30"))

    def _headers(self) -> dict:
        headers = {"x-trellis-tenant-id": get_tenant_id()}
        if self.api_key:
            headers["x-trellis-api-key"] = self.api_key
        return headers

    def _request(self, method: str, path: str, json_body: dict | None = None) -> dict:
        url = f"{self.base_url}{path}"
        try:
            resp = httpx.request(method, url, json=json_body, headers=self._headers(), timeout=self.timeout)
        except httpx.HTTPError as exc:
            logger.warning("worker_request_failed method=%s path=%s error=%s", method, path, exc)
            raise WorkerRequestError(f"Worker unreachable: {exc}") from exc
        if resp.status_code >= 400:
            logger.warning("worker_request_error method=%s path=%s status=%s", method, path, resp.status_code)
            raise WorkerRequestError(f"Worker error: {resp.status_code} {resp.text}", resp.status_code)
        logger.info("worker_request method=%s path=%s status=%s", method, path, resp.status_code)
        return resp.json() if resp.content else {}

    def remove_app_from_user_roles(self, app_id: str) -> None:
        self._request("DELETE", f"/api/global/roles/{get_prod_app_id(app_id)}")

    def sync_global_users(self, app_id: str) -> None:
        self._request("POST", "/api/global/users/sync", {"appId": app_id})

    def cleanup_app_groups(self, app_id: str) -> None:
        self._request("DELETE", f"/api/global/groups/apps/{get_prod_app_id(app_id)}")
