"""Importing app templates: uploaded exports, template packages, raw dumps."""

from __future__ import annotations

import io
import logging
import os
import tarfile

import httpx

logger = logging.getLogger("trellis.templates")

DB_EXPORT_FILE = "db.txt"
_GZIP_MAGIC = b"\x1f\x8b"


class TemplateImportError(RuntimeError):
    pass


def read_template_package(data: bytes) -> str:
    """Return the database dump inside an exported app.

    Exports are either a gzipped tarball holding ``db.txt`` or the bare dump.
    """
    if not data.startswith(_GZIP_MAGIC):
        return data.decode("utf-8")
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
        for member in tar.getmembers():
            if member.isfile() and os.path.basename(member.name) == DB_EXPORT_FILE:
                handle = tar.extractfile(member)
                if handle is None:
                    break
                return handle.read().decode("utf-8")
    raise TemplateImportError(f"Template package has no {DB_EXPORT_FILE}")


class HttpTemplateRepository:
    def __init__(self, base_url: str, timeout: float = 60.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def download(self, key: str) -> bytes:
        url = f"{self.base_url}/templates/{key}.tar.gz"
        try:
            resp = httpx.get(url, timeout=self.timeout, follow_redirects=True)
        except httpx.HTTPError as exc:
            logger.warning("template_download_failed key=%s error=%s", key, exc)
            raise TemplateImportError(f"Template download failed: {key}") from exc
        if resp.status_code >= 400:
            raise TemplateImportError(f"Template download failed: {resp.status_code} {key}")
        logger.info("template_downloaded key=%s bytes=%s", key, len(resp.content))
        return resp.content


def import_app(db, repository, template: dict) -> dict:
    """Load a template (uploaded file or repository key) into ``db``."""
    upload = template.get("file")
    key = template.get("key")
    if upload is not None:
        data = upload if isinstance(upload, (bytes, bytearray)) else upload.read()
        source = "file"
    elif key:
        data = repository.download(key)
        source = f"template:{key}"
    else:
        raise TemplateImportError("Template import needs a file or a template key")
    try:
        result = db.load(read_template_package(bytes(data)))
    except (ValueError, tarfile.TarError) as exc:
        raise TemplateImportError(f"Template package is not a valid export: {exc}") from exc
    if not result.get("ok"):
        raise TemplateImportError("Error loading database dump.")
    logger.info("template_imported db=%s source=%s docs=%s", db.name, source, result.get("docs_written"))
    return result
